"""Exception types raised by fbhash."""

from __future__ import annotations

from pathlib import Path


class FbhashError(Exception):
    """Base class for all fbhash errors."""


class IoFailure(FbhashError):
    """A file could not be read."""

    def __init__(self, path: Path | str, reason: str) -> None:
        super().__init__(f"Unable to read {path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class FormatError(FbhashError):
    """A persisted corpus model or digest is corrupt or has an unsupported version."""


class CompatibilityError(FbhashError):
    """Two values were produced under incompatible schemes or corpus models."""


class EmptyCorpusError(FbhashError):
    """A corpus build processed zero files."""

    def __init__(self, message: str, failures: list | None = None) -> None:
        super().__init__(message)
        self.failures = failures or []


class BuildCancelled(FbhashError):
    """A corpus build was cancelled before it completed."""
