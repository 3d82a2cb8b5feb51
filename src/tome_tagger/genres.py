from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping

log = logging.getLogger(__name__)

APPROVED_GENRES: tuple[str, ...] = (
    "Action",
    "Adventure",
    "Biography",
    "Business",
    "Children's",
    "Classics",
    "Comedy",
    "Crime",
    "Drama",
    "Dystopian",
    "Education",
    "Fantasy",
    "Fiction",
    "Health",
    "Historical Fiction",
    "History",
    "Horror",
    "LGBTQ+",
    "Literary Fiction",
    "Memoir",
    "Mystery",
    "Nonfiction",
    "Paranormal",
    "Philosophy",
    "Poetry",
    "Politics",
    "Psychology",
    "Religion",
    "Romance",
    "Science",
    "Science Fiction",
    "Self-Help",
    "Short Stories",
    "Sports",
    "Suspense",
    "Technology",
    "Thriller",
    "Travel",
    "True Crime",
    "War",
    "Western",
    "Young Adult",
)

# Lower-cased provider/category spellings folded onto an approved genre
GENRE_ALIASES: dict[str, str] = {
    "sci-fi": "Science Fiction",
    "scifi": "Science Fiction",
    "sf": "Science Fiction",
    "science fiction & fantasy": "Science Fiction",
    "mystery & detective": "Mystery",
    "mysteries": "Mystery",
    "detective": "Mystery",
    "thrillers": "Thriller",
    "thriller & suspense": "Thriller",
    "mystery, thriller & suspense": "Thriller",
    "literature & fiction": "Fiction",
    "general fiction": "Fiction",
    "literary": "Literary Fiction",
    "historical": "Historical Fiction",
    "biography & autobiography": "Biography",
    "biographies & memoirs": "Biography",
    "autobiography": "Memoir",
    "non-fiction": "Nonfiction",
    "non fiction": "Nonfiction",
    "juvenile fiction": "Children's",
    "children's audiobooks": "Children's",
    "kids": "Children's",
    "teen & young adult": "Young Adult",
    "ya": "Young Adult",
    "young adult fiction": "Young Adult",
    "self help": "Self-Help",
    "self-development": "Self-Help",
    "personal development": "Self-Help",
    "health & wellness": "Health",
    "religion & spirituality": "Religion",
    "business & economics": "Business",
    "money & finance": "Business",
    "computers": "Technology",
    "computers & technology": "Technology",
    "science & engineering": "Science",
    "politics & social sciences": "Politics",
    "humor": "Comedy",
    "humour": "Comedy",
    "romantic": "Romance",
    "military": "War",
    "horror fiction": "Horror",
    "true-crime": "True Crime",
}

# Hierarchical categories ("Fiction / Science Fiction / General")
_CATEGORY_SPLIT_RE = re.compile(r"\s*/\s*|\s*>\s*")
_IGNORED_SEGMENTS = frozenset({"general", "audiobooks", "audible", "books", "other"})


class GenrePolicy:
    """
    Folds provider genre strings onto the approved vocabulary.

    Unknown genres are dropped when enforcement is on and kept verbatim when
    it is off. The result is de-duplicated, order-preserving and optionally
    capped.
    """

    def __init__(
        self,
        approved: Iterable[str] = (),
        aliases: Mapping[str, str] | None = None,
        max_genres: int | None = None,
        enforce: bool = True,
    ):
        self.approved = {g.casefold(): g for g in (*APPROVED_GENRES, *approved)}
        self.aliases = dict(GENRE_ALIASES)
        self.aliases.update({k.casefold(): v for k, v in (aliases or {}).items()})
        self.max_genres = max_genres
        self.enforce = enforce

    def canonical(self, genre: str) -> str | None:
        """Approved spelling of one genre string, or None if it is not approved."""
        key = genre.strip().casefold()
        if not key:
            return None
        if key in self.aliases:
            return self.aliases[key]
        return self.approved.get(key)

    def is_approved(self, genre: str) -> bool:
        return genre.strip().casefold() in self.approved

    def expand(self, genre: str) -> list[str]:
        """Approved genres found in one (possibly hierarchical) category string."""
        whole = self.canonical(genre)
        if whole:
            return [whole]
        found = []
        for segment in _CATEGORY_SPLIT_RE.split(genre):
            if segment.strip().casefold() in _IGNORED_SEGMENTS:
                continue
            canonical = self.canonical(segment)
            if canonical:
                found.append(canonical)
        return found

    def normalize(self, genres: Iterable[str]) -> tuple[str, ...]:
        return self.cap(self.fold(genres))

    def fold(self, genres: Iterable[str]) -> tuple[str, ...]:
        """Fold onto the vocabulary without capping."""
        result: list[str] = []
        for genre in genres:
            folded = self.expand(genre)
            if not folded:
                if self.enforce:
                    log.debug(f"Dropping unapproved genre {genre!r}")
                    continue
                folded = [genre.strip()]
            for value in folded:
                if value and value not in result:
                    result.append(value)
        return tuple(result)

    def cap(self, genres: Iterable[str]) -> tuple[str, ...]:
        genres = tuple(genres)
        if self.max_genres is None:
            return genres
        return genres[: self.max_genres]

    def all_approved(self, genres: Iterable[str]) -> bool:
        """True when there is at least one genre and every one is approved."""
        genres = list(genres)
        return bool(genres) and all(self.is_approved(g) for g in genres)


## Tests


def test_genre_aliases_fold():
    policy = GenrePolicy()
    assert policy.normalize(["Sci-Fi", "Mysteries", "sci-fi"]) == ("Science Fiction", "Mystery")


def test_genre_hierarchical_category():
    policy = GenrePolicy()
    assert policy.normalize(["Fiction / Science Fiction / General"]) == ("Fiction", "Science Fiction")


def test_genre_enforcement_drops_unknown():
    assert GenrePolicy().normalize(["Cozy Vampire Baking"]) == ()
    assert GenrePolicy(enforce=False).normalize(["Cozy Vampire Baking"]) == ("Cozy Vampire Baking",)


def test_genre_cap():
    policy = GenrePolicy(max_genres=2)
    assert policy.normalize(["Mystery", "Thriller", "Crime"]) == ("Mystery", "Thriller")


def test_genre_custom_vocabulary():
    policy = GenrePolicy(approved=["Cozy Mystery"], aliases={"cosy": "Cozy Mystery"})
    assert policy.normalize(["cosy", "cozy mystery"]) == ("Cozy Mystery",)
    assert policy.all_approved(["Cozy Mystery", "Mystery"])
    assert not policy.all_approved([])
