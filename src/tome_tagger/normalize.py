from __future__ import annotations

import hashlib
import re
import unicodedata
from dataclasses import dataclass

# Release/rip noise found in audiobook titles and filenames
JUNK_RE = re.compile(
    r"\b(?:un)?abridged\b|\bretail\b|\b\d{2,3}\s*kbps\b|\baudiobook\b|\b(?:mp3|m4b|aac)\b",
    re.IGNORECASE,
)
BRACKETED_JUNK_RE = re.compile(
    r"\s*[\(\[]\s*(?:(?:un)?abridged|retail|\d{2,3}\s*kbps|audiobook|mp3|m4b|aac)\s*[\)\]]",
    re.IGNORECASE,
)

PART_RE = re.compile(
    r"(?:^|[\s_\-.(\[])(?:part|pt\.?|disc|disk|cd|chapter|ch\.?|track)\s*0*(\d{1,4})\b",
    re.IGNORECASE,
)
PART_SUFFIX_RE = re.compile(
    r"[\s_\-,]*[\(\[]?\s*(?:part|pt\.?|disc|disk|cd|chapter|ch\.?|track)\s*\d{1,4}\s*[\)\]]?\s*$",
    re.IGNORECASE,
)
LEADING_INDEX_RE = re.compile(r"^\s*0*(\d{1,3})(?:\s*[-_.]\s*|\s+)(?=\S)")

BOOK_NUMBER_RE = re.compile(r"[\(\[]\s*book\s*#?\s*(\d+(?:\.\d+)?)\s*[\)\]]", re.IGNORECASE)
BOOK_WORD_RE = re.compile(r"(?:^|[\s,\-])book\s*#?\s*(\d+(?:\.\d+)?)\b", re.IGNORECASE)
GROUPING_RE = re.compile(
    r"^(?P<series>.+?)\s*(?:#|,?\s+book\s+#?|,?\s+vol(?:ume|\.)?\s*)(?P<seq>\d+(?:\.\d+)?)\s*$",
    re.IGNORECASE,
)
YEAR_RE = re.compile(r"(?<!\d)(\d{4})(?!\d)")
NATURAL_RE = re.compile(r"(\d+)")


@dataclass(frozen=True)
class FilenameHints:
    """Hints parsed from a file or folder name."""

    title: str | None
    part: int | None = None
    sequence: str | None = None


class Normalizer:
    """
    Deterministic text normalizer for title/author matching.

    The normalized form is casefolded, stripped of diacritics, punctuation and
    release noise, and whitespace-compacted. It is idempotent.
    """

    def normalize_title(self, title: str | None) -> str:
        if not title:
            return ""
        s = self._apply_unicode_whitespace(title)
        s = self._apply_casefold(s)
        s = self._apply_punctuation_canonicalization(s)
        s = self._strip_diacritics(s)
        s = self._strip_punctuation(s)
        s = self._strip_junk(s)
        return self._final_compaction(s)

    def normalize_author(self, author: str | None) -> str:
        """Author form: like titles, but "J.R.R. Tolkien" and "J R R Tolkien" agree."""
        if not author:
            return ""
        s = self._apply_unicode_whitespace(author)
        s = self._apply_casefold(s)
        s = self._apply_punctuation_canonicalization(s)
        s = self._strip_diacritics(s)
        s = self._strip_punctuation(s)
        return self._final_compaction(s)

    def _apply_unicode_whitespace(self, s: str) -> str:
        s = unicodedata.normalize("NFC", s)
        s = re.sub(r"[\u200b-\u200d\ufeff]", "", s)
        return re.sub(r"\s+", " ", s).strip()

    def _apply_casefold(self, s: str) -> str:
        return s.casefold()

    def _apply_punctuation_canonicalization(self, s: str) -> str:
        s = s.replace("\u2018", "'").replace("\u2019", "'")
        s = s.replace("\u201c", '"').replace("\u201d", '"')
        s = s.replace("\u2013", "-").replace("\u2014", "-")
        return s.replace("&", " and ")

    def _strip_diacritics(self, s: str) -> str:
        nfd = unicodedata.normalize("NFD", s)
        return "".join(c for c in nfd if unicodedata.category(c) != "Mn")

    def _strip_punctuation(self, s: str) -> str:
        s = s.replace("'", "")
        return re.sub(r"[^\w\s]|_", " ", s)

    def _strip_junk(self, s: str) -> str:
        while True:
            stripped = JUNK_RE.sub(" ", s)
            if stripped == s:
                return s
            s = stripped

    def _final_compaction(self, s: str) -> str:
        return re.sub(r"\s+", " ", s).strip()


_normalizer = Normalizer()


def normalize_title(title: str | None) -> str:
    return _normalizer.normalize_title(title)


def normalize_author(author: str | None) -> str:
    return _normalizer.normalize_author(author)


def query_fingerprint(provider: str, title: str | None, author: str | None) -> str:
    """SHA-256 of provider name, normalized title and normalized author."""
    key = f"{provider}|{normalize_title(title)}|{normalize_author(author)}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def parse_part(text: str | None) -> int | None:
    """Part number from ``Part 2``, ``Disc 2``, ``CD2``, ``Chapter 02``, ``Track 2`` or ``02 - ...``."""
    if not text:
        return None
    match = PART_RE.search(text)
    if match:
        return int(match.group(1))
    match = LEADING_INDEX_RE.match(text)
    if match:
        return int(match.group(1))
    return None


def parse_book_number(text: str | None) -> str | None:
    """Series sequence from ``(Book #3)``, ``[Book 3]`` or ``Series Book 3``."""
    if not text:
        return None
    match = BOOK_NUMBER_RE.search(text) or BOOK_WORD_RE.search(text)
    return match.group(1) if match else None


def parse_grouping(grouping: str | None) -> tuple[str | None, str | None]:
    """Split a grouping tag like ``Series #3`` into (series, sequence)."""
    if not grouping:
        return None, None
    text = grouping.strip()
    match = GROUPING_RE.match(text)
    if match:
        return match.group("series").strip(" ,-") or None, match.group("seq")
    return text or None, None


def format_grouping(series: str, sequence: str | None) -> str:
    return f"{series} #{sequence}" if sequence else series


def clean_title(text: str | None) -> str | None:
    """Strip release noise, part markers, book markers and track prefixes from a title."""
    if not text:
        return None
    s = text.replace("_", " ")
    s = BRACKETED_JUNK_RE.sub("", s)
    s = BOOK_NUMBER_RE.sub("", s)
    s = PART_SUFFIX_RE.sub("", s)
    if len(LEADING_INDEX_RE.sub("", s).strip()) > 0:
        s = LEADING_INDEX_RE.sub("", s)
    s = re.sub(r"\s+", " ", s).strip(" -_.,")
    return s or None


def parse_filename(stem: str) -> FilenameHints:
    """Title, part and series sequence hints from a filename stem."""
    return FilenameHints(
        title=clean_title(stem),
        part=parse_part(stem),
        sequence=parse_book_number(stem),
    )


def reliable_year(value: str | None) -> str | None:
    """First four-digit run of a date-ish string (``2021-01-02`` → ``2021``)."""
    if not value:
        return None
    match = YEAR_RE.search(str(value))
    return match.group(1) if match else None


def natural_sort_key(text: str) -> tuple[tuple[int, int | str], ...]:
    """Sort key ordering ``part2`` before ``part10``."""
    return tuple(
        (0, int(chunk)) if chunk.isdecimal() else (1, chunk.casefold())
        for chunk in NATURAL_RE.split(text)
        if chunk
    )


def sequence_sort_key(sequence: str | None) -> tuple[int, float, str]:
    if sequence is None:
        return (1, 0.0, "")
    try:
        return (0, float(sequence), sequence)
    except ValueError:
        return (0, float("inf"), sequence)


## Tests


def test_normalize_title_strips_noise():
    assert normalize_title("The Hobbit (Unabridged)") == "the hobbit"
    assert normalize_title("Café  Stories [Retail] 320kbps") == "cafe stories"
    assert normalize_title(None) == ""


def test_normalize_author_initials():
    assert normalize_author("J.R.R. Tolkien") == normalize_author("J R R Tolkien")
    assert normalize_author("Brontë & Co") == "bronte and co"


def test_query_fingerprint_stable():
    a = query_fingerprint("audible", "BookA (Unabridged)", "Jane Doe")
    b = query_fingerprint("audible", "booka", "JANE DOE")
    assert a == b
    assert a != query_fingerprint("google_books", "booka", "jane doe")


def test_parse_part():
    assert parse_part("BookA Part1") == 1
    assert parse_part("BookA - Disc 02") == 2
    assert parse_part("03 - The Beginning") == 3
    assert parse_part("BookA") is None


def test_parse_book_number():
    assert parse_book_number("Magic Tree House (Book #3)") == "3"
    assert parse_book_number("Dune Book 2") == "2"
    assert parse_book_number("Dune") is None


def test_parse_grouping():
    assert parse_grouping("Dune #2") == ("Dune", "2")
    assert parse_grouping("Discworld, Book 12") == ("Discworld", "12")
    assert parse_grouping("Standalone") == ("Standalone", None)


def test_clean_title():
    assert clean_title("BookA Part1") == "BookA"
    assert clean_title("01 - BookA (Unabridged)") == "BookA"
    assert clean_title("BookA - Part 2") == "BookA"
    assert clean_title("Dinosaurs Before Dark (Book #1)") == "Dinosaurs Before Dark"


def test_reliable_year():
    assert reliable_year("2021-01-02") == "2021"
    assert reliable_year("May 1999") == "1999"
    assert reliable_year("n/a") is None


def test_natural_sort_key():
    names = ["part10.mp3", "part2.mp3", "part1.mp3"]
    assert sorted(names, key=natural_sort_key) == ["part1.mp3", "part2.mp3", "part10.mp3"]
