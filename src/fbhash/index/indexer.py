"""Digest database indexing pipeline."""

from __future__ import annotations

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from fbhash.errors import IoFailure
from fbhash.index.digest import DigestBuilder
from fbhash.index.storage import SQLiteDigestStore
from fbhash.models import Digest, DocumentMetadata
from fbhash.utils.files import iter_file_paths, read_bytes

LOGGER = logging.getLogger(__name__)


def find_files(paths: Sequence[Path]) -> list[Path]:
    """Find all regular files under the given paths."""
    return list(iter_file_paths(paths))


@dataclass(slots=True)
class IndexStats:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    processed_files: list[Path] = field(default_factory=list)

    def increment(self, status: str, path: Path) -> None:
        if status == "inserted":
            self.inserted += 1
        elif status == "updated":
            self.updated += 1
        elif status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
        self.processed_files.append(path)


class Indexer:
    """Hashes files against a corpus model and stores their digests."""

    def __init__(
        self,
        builder: DigestBuilder,
        store: SQLiteDigestStore,
        *,
        workers: int | None = None,
        batch_size: int = 32,
    ) -> None:
        self.builder = builder
        self.store = store
        self.workers = workers
        self.batch_size = batch_size

    def index(
        self, paths: Sequence[Path], *, on_progress: Callable[[int], None] | None = None
    ) -> IndexStats:
        """Index all files found under the given paths."""
        files = find_files(paths)
        if not files:
            LOGGER.warning("No files found")
            return IndexStats()

        stats = IndexStats()
        # Digests are computed concurrently; the SQLite connection is only used
        # from this thread.
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="fbhash-index") as pool:
            for i in range(0, len(files), self.batch_size):
                batch = files[i : i + self.batch_size]
                futures = [pool.submit(self._digest_single, path) for path in batch]
                for path, future in zip(batch, futures):
                    try:
                        document, digest = future.result()
                    except IoFailure as exc:
                        LOGGER.error("Failed to process %s: %s", path, exc.reason)
                        stats.increment("failed", path)
                        continue
                    status = self.store.upsert_digest(document, digest)
                    LOGGER.debug("%s: %s", status, path)
                    stats.increment(status, path)
                if on_progress is not None:
                    on_progress(len(batch))

        return stats

    def _digest_single(self, path: Path) -> tuple[DocumentMetadata, Digest]:
        data = read_bytes(path)
        try:
            stat = path.stat()
        except OSError as exc:
            raise IoFailure(path, exc.strerror or str(exc)) from exc
        document = DocumentMetadata(
            path=path,
            sha256=hashlib.sha256(data).hexdigest(),
            mtime=stat.st_mtime,
            size=stat.st_size,
        )
        return document, self.builder.digest_bytes(data)
