"""Log hygiene for tome-tagger.

Audiobook libraries live in home directories and provider calls carry API
keys in URLs and headers. Log lines therefore show book paths relative to the
library root (or as opaque hashes), and never show credentials.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from tome_tagger.codec import SUPPORTED_EXTENSIONS

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Config and payload keys whose values are credentials
REDACT_FIELDS = frozenset({"api_key", "apikey", "api_token", "token", "authorization", "password"})

_CREDENTIAL_PATTERNS = (
    (re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.I), r"\1***"),
    (re.compile(r"([?&](?:key|api_key|token)=)[^&\s]+", re.I), r"\1***"),
    (re.compile(r"(\bsk-)[A-Za-z0-9_-]{8,}"), r"\1***"),
)
_AUDIO_SUFFIXES = "|".join(sorted(ext.lstrip(".") for ext in SUPPORTED_EXTENSIONS))


def hash_path(file_path: Path | str, length: int = 12) -> str:
    return hashlib.sha256(str(file_path).encode()).hexdigest()[:length]


def book_relative(file_path: Path | str, library_root: Path | None = None) -> str:
    """
    Short display form of an audiobook path.

    Inside the library root this is the path below the root
    (``Jane Doe/BookA/part1.m4b``). Elsewhere it is the book folder plus the
    file name, which is enough to identify a book without exposing the home
    directory.
    """
    path = Path(file_path)
    if library_root is not None:
        try:
            return path.relative_to(library_root).as_posix()
        except ValueError:
            pass
    return f"{path.parent.name}/{path.name}" if path.parent.name else path.name


def redact_value(value: str, visible_chars: int = 4) -> str:
    if len(value) <= visible_chars:
        return "***"
    return f"{value[:visible_chars]}***"


def _is_secret_key(key: str, redact_fields: frozenset[str]) -> bool:
    key_lower = key.lower()
    return any(f in key_lower for f in redact_fields)


def redact_dict(
    data: Mapping[str, Any], redact_fields: frozenset[str] = REDACT_FIELDS
) -> dict[str, Any]:
    """Copy of a nested mapping (a config dump) with credential values masked."""

    def redact(key: str, value: Any) -> Any:
        if isinstance(value, str) and value and _is_secret_key(key, redact_fields):
            return redact_value(value)
        if isinstance(value, Mapping):
            return redact_dict(value, redact_fields)
        if isinstance(value, list):
            return [redact_dict(v, redact_fields) if isinstance(v, Mapping) else v for v in value]
        return value

    return {key: redact(key, value) for key, value in data.items()}


def strip_credentials(text: str) -> str:
    """Mask bearer tokens, ``key=`` URL parameters and OpenAI-style keys."""
    for pattern, replacement in _CREDENTIAL_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SafeLogFormatter(logging.Formatter):
    """
    Formatter that rewrites book paths and masks credentials.

    Messages are mostly f-strings, so paths are rewritten inside the rendered
    text as well as in ``%``-style arguments. With ``hash_paths`` every audio
    path under the library root becomes ``file:<hash>``.
    """

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        hash_paths: bool = False,
        library_root: Path | None = None,
    ):
        super().__init__(fmt, datefmt)
        self.hash_paths = hash_paths
        if library_root is None and os.environ.get("TOME_TAGGER_LIBRARY_ROOT"):
            library_root = Path(os.environ["TOME_TAGGER_LIBRARY_ROOT"])
        self.library_root = library_root.expanduser() if library_root else None
        self._rooted_audio_re: re.Pattern[str] | None = None
        if self.library_root is not None:
            root = re.escape(str(self.library_root).rstrip("/\\"))
            self._rooted_audio_re = re.compile(
                rf"{root}[/\\](?P<rel>.+?\.(?:{_AUDIO_SUFFIXES}))\b", re.IGNORECASE
            )

    def display_path(self, file_path: Path | str) -> str:
        if self.hash_paths:
            return f"file:{hash_path(file_path)}"
        return book_relative(file_path, self.library_root)

    def scrub(self, text: str) -> str:
        text = strip_credentials(text)
        if self._rooted_audio_re is None:
            return text
        return self._rooted_audio_re.sub(
            lambda m: self.display_path(m.group(0)) if self.hash_paths else m.group("rel"),
            text,
        )

    def format(self, record: logging.LogRecord) -> str:
        # Work on a copy so other handlers still see the original record
        record = logging.makeLogRecord(record.__dict__)
        if isinstance(record.args, Mapping):
            record.args = {k: self._scrub_arg(v) for k, v in record.args.items()}
        elif record.args:
            record.args = tuple(self._scrub_arg(arg) for arg in record.args)
        record.msg = self.scrub(str(record.msg))
        return super().format(record)

    def _scrub_arg(self, value: Any) -> Any:
        if isinstance(value, Path):
            return self.display_path(value)
        if isinstance(value, str):
            return self.scrub(value)
        return value


class _SafeHandler(logging.StreamHandler):
    """Marker type so repeated configuration replaces, not stacks, the handler."""


def configure_safe_logging(
    level: int | str = logging.WARNING,
    format_string: str | None = None,
    hash_paths: bool = False,
    library_root: Path | None = None,
) -> None:
    """
    Install the scrubbing stream handler on the root logger.

    Args:
        level: Logging level (int or name such as "INFO")
        format_string: Optional custom format string
        hash_paths: Hash book paths instead of showing them relative to the root
        library_root: Root that book paths are shown relative to
    """
    if isinstance(level, str):
        level = logging.getLevelNamesMapping().get(level.upper(), logging.WARNING)

    handler = _SafeHandler()
    handler.setFormatter(
        SafeLogFormatter(
            fmt=format_string or DEFAULT_FORMAT, hash_paths=hash_paths, library_root=library_root
        )
    )

    root_logger = logging.getLogger()
    for existing in [h for h in root_logger.handlers if isinstance(h, _SafeHandler)]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)


## Tests


def _format(formatter: SafeLogFormatter, msg: str, *args: Any) -> str:
    record = logging.LogRecord("test", logging.INFO, "", 0, msg, args or None, None)
    return formatter.format(record)


def test_book_relative():
    path = Path("/home/reader/Audiobooks/Jane Doe/BookA/part1.m4b")
    assert book_relative(path, Path("/home/reader/Audiobooks")) == "Jane Doe/BookA/part1.m4b"
    assert book_relative(path) == "BookA/part1.m4b"


def test_redact_dict_nested():
    data = {
        "audiobookshelf": {"api_token": "abs-token-123", "base_url": "http://abs.local"},
        "providers": {"google_books": {"api_key": "AIzaSecret"}},
        "max_workers": 10,
    }
    redacted = redact_dict(data)
    assert redacted["audiobookshelf"]["api_token"] == "abs-***"
    assert redacted["audiobookshelf"]["base_url"] == "http://abs.local"
    assert redacted["providers"]["google_books"]["api_key"] == "AIza***"
    assert redacted["max_workers"] == 10


def test_strip_credentials():
    msg = "GET https://www.googleapis.com/books/v1/volumes?q=BookA&key=AIzaSecret failed"
    assert "AIzaSecret" not in strip_credentials(msg)
    assert "Bearer ***" in strip_credentials("Authorization: Bearer abc.def.ghi")
    assert strip_credentials("using sk-abcdef123456") == "using sk-***"


def test_formatter_rewrites_paths_in_fstring_messages():
    formatter = SafeLogFormatter(fmt="%(message)s", library_root=Path("/library"))
    message = _format(formatter, "Wrote 3 tags to /library/Jane Doe/BookA/BookA.m4b")
    assert message == "Wrote 3 tags to Jane Doe/BookA/BookA.m4b"
    assert _format(formatter, "Wrote %s", Path("/library/Jane Doe/BookA.m4b")) == (
        "Wrote Jane Doe/BookA.m4b"
    )


def test_formatter_hash_mode():
    formatter = SafeLogFormatter(fmt="%(message)s", hash_paths=True, library_root=Path("/library"))
    message = _format(formatter, "Renamed /library/Jane Doe/BookA.mp3")
    assert message.startswith("Renamed file:")
    assert "BookA" not in message
