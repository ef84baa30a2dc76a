"""Utility helpers for working with files."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Iterator

from fbhash.errors import IoFailure


def iter_file_paths(inputs: Iterable[Path]) -> Iterator[Path]:
    """Yield regular files from input paths, descending into directories.

    Symbolic links are neither followed nor yielded.
    """
    for item in inputs:
        item = Path(item)
        if item.is_symlink():
            continue
        if item.is_dir():
            yield from iter_file_paths(sorted(item.iterdir()))
        elif item.is_file():
            yield item


def read_bytes(path: Path) -> bytes:
    """Read a whole file, turning OS errors into :class:`IoFailure`."""
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise IoFailure(path, exc.strerror or str(exc)) from exc
