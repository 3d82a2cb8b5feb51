"""Exception hierarchy for tome-tagger.

Components raise these at their seams; batch operations catch them and turn
them into per-item results.
"""

from __future__ import annotations

from pathlib import Path


class TomeTaggerError(Exception):
    """Base class for all tome-tagger errors."""


class ConfigError(TomeTaggerError):
    """Invalid or missing configuration."""


class CodecError(TomeTaggerError):
    """A tag container could not be read or written."""

    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"{message}: {path}")


class UnsupportedFormatError(CodecError):
    """No codec handles this file type."""

    def __init__(self, path: Path):
        super().__init__(path, f"Unsupported audio format '{path.suffix.lower()}'")


class ProviderError(TomeTaggerError):
    """A metadata provider query failed (network, auth, quota, bad payload)."""

    def __init__(self, provider: str, message: str, retryable: bool = True):
        self.provider = provider
        self.retryable = retryable
        super().__init__(f"{provider}: {message}")


class RenameError(TomeTaggerError):
    """A target path could not be derived or applied."""


class RenameCollisionError(RenameError):
    """The target path already exists as a different file."""

    def __init__(self, source: Path, target: Path):
        self.source = source
        self.target = target
        super().__init__(f"Target already exists: {target}")


class SyncError(TomeTaggerError):
    """A remote library request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
