"""Corpus model construction.

Files are split into shards; every worker folds its shard into a partial
document-frequency table and the partials are combined by a pairwise merge
tree. Merging is an exact integer sum keyed by ChunkId, so the resulting
model does not depend on file order, shard size or worker count.
"""

from __future__ import annotations

import itertools
import logging
import os
import threading
from concurrent.futures import (
    FIRST_COMPLETED,
    Executor,
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Sequence, Tuple, Union

import numpy as np

from fbhash.chunking import Chunker
from fbhash.errors import BuildCancelled, EmptyCorpusError, IoFailure
from fbhash.models import ChunkingScheme, CorpusModel
from fbhash.utils.arrays import count_ids, empty_counts, merge_counts
from fbhash.utils.files import read_bytes

LOGGER = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1

ProgressCallback = Callable[[int], None]


class _FileCounter:
    """Counts finished files across worker threads; drained by the calling thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._finished = 0
        self._reported = 0

    def increment(self) -> None:
        with self._lock:
            self._finished += 1

    def drain(self) -> int:
        with self._lock:
            delta = self._finished - self._reported
            self._reported = self._finished
        return delta


@dataclass(slots=True)
class FileSource:
    """A file to add to the corpus; ``content`` is read from ``path`` when missing."""

    path: Path
    content: bytes | None = None

    def read(self) -> bytes:
        if self.content is not None:
            return self.content
        return read_bytes(self.path)


SourceLike = Union[FileSource, Path, str, Tuple[Union[Path, str], bytes]]


@dataclass(slots=True)
class FileFailure:
    path: Path
    reason: str


@dataclass(slots=True)
class BuildStats:
    processed: int = 0
    empty: int = 0
    failed: int = 0
    failures: List[FileFailure] = field(default_factory=list)
    processed_files: List[Path] = field(default_factory=list)

    def record_success(self, path: Path, *, empty: bool = False) -> None:
        self.processed += 1
        if empty:
            self.empty += 1
        self.processed_files.append(path)

    def record_failure(self, path: Path, reason: str) -> None:
        self.failed += 1
        self.failures.append(FileFailure(path=path, reason=reason))

    def merge(self, other: "BuildStats") -> "BuildStats":
        return BuildStats(
            processed=self.processed + other.processed,
            empty=self.empty + other.empty,
            failed=self.failed + other.failed,
            failures=self.failures + other.failures,
            processed_files=self.processed_files + other.processed_files,
        )


@dataclass(slots=True)
class BuildResult:
    model: CorpusModel
    stats: BuildStats


@dataclass(slots=True)
class PartialCounts:
    """Document frequencies of one shard (or of several merged shards)."""

    ids: np.ndarray
    df: np.ndarray
    stats: BuildStats

    @property
    def n_files(self) -> int:
        return self.stats.processed

    def merge(self, other: "PartialCounts") -> "PartialCounts":
        ids, df = merge_counts([(self.ids, self.df), (other.ids, other.df)])
        return PartialCounts(ids=ids, df=df, stats=self.stats.merge(other.stats))


def _as_source(item: SourceLike) -> FileSource:
    if isinstance(item, FileSource):
        return item
    if isinstance(item, tuple):
        path, content = item
        return FileSource(path=Path(path), content=bytes(content))
    return FileSource(path=Path(item))


def reduce_shard(
    sources: Sequence[FileSource],
    scheme: ChunkingScheme,
    on_file: Callable[[], None] | None = None,
) -> PartialCounts:
    """Fold a shard of files into a partial document-frequency table.

    Every file contributes each of its distinct ChunkIds exactly once.
    Unreadable files are recorded as failures and do not count towards N.
    ``on_file`` is called after every file, readable or not.
    """
    chunker = Chunker(scheme)
    stats = BuildStats()
    distinct: list[np.ndarray] = []
    for source in sources:
        try:
            data = source.read()
        except IoFailure as exc:
            LOGGER.warning("Skipping unreadable file %s: %s", source.path, exc.reason)
            stats.record_failure(source.path, exc.reason)
            if on_file is not None:
                on_file()
            continue
        ids = chunker.distinct_ids(data)
        distinct.append(ids)
        stats.record_success(source.path, empty=ids.size == 0)
        if on_file is not None:
            on_file()

    if distinct:
        ids, df = count_ids(np.concatenate(distinct))
    else:
        ids, df = empty_counts()
    return PartialCounts(ids=ids, df=df, stats=stats)


def merge_partials(
    partials: Sequence[PartialCounts],
    mapper: Callable[..., Iterable[PartialCounts]] = map,
) -> PartialCounts:
    """Combine partial tables pairwise until one remains.

    ``mapper`` runs the merges of one tree level, e.g. ``executor.map``.
    """
    level = list(partials)
    if not level:
        ids, df = empty_counts()
        return PartialCounts(ids=ids, df=df, stats=BuildStats())
    while len(level) > 1:
        merged = list(mapper(PartialCounts.merge, level[0:-1:2], level[1::2]))
        if len(level) % 2:
            merged.append(level[-1])
        level = merged
    return level[0]


def _iter_shards(sources: Iterable[SourceLike], shard_size: int) -> Iterator[list[FileSource]]:
    iterator = iter(sources)
    while True:
        shard = [_as_source(item) for item in itertools.islice(iterator, shard_size)]
        if not shard:
            return
        yield shard


class CorpusBuilder:
    """Builds a :class:`CorpusModel` from a set of reference files."""

    def __init__(
        self,
        scheme: ChunkingScheme | None = None,
        *,
        workers: int | None = None,
        shard_size: int = 64,
        use_processes: bool = False,
    ) -> None:
        if shard_size < 1:
            raise ValueError("shard_size must be positive")
        if workers is not None and workers < 1:
            raise ValueError("workers must be positive")
        self.scheme = scheme or ChunkingScheme()
        self.workers = workers
        self.shard_size = shard_size
        self.use_processes = use_processes

    def _executor(self) -> Executor:
        if self.use_processes:
            return ProcessPoolExecutor(max_workers=self.workers)
        return ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="fbhash-corpus")

    def build(
        self,
        sources: Iterable[SourceLike],
        *,
        on_progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BuildResult:
        """Process every source and return the model with per-file statistics.

        ``on_progress`` is called from the calling thread with the number of
        files finished since the previous call: per file while shards run on
        threads, per finished shard with processes. Setting ``cancel_event``
        aborts the build with :class:`BuildCancelled`.
        """
        max_pending = 2 * (self.workers or os.cpu_count() or 1)
        partials: list[PartialCounts] = []

        counter = None if self.use_processes else _FileCounter()
        on_file = None if counter is None else counter.increment

        def collect(done: Iterable[Future]) -> None:
            shard_files = 0
            for future in done:
                partial = future.result()
                partials.append(partial)
                shard_files += partial.stats.processed + partial.stats.failed
            if on_progress is None:
                return
            # Worker processes can only report whole shards.
            finished = shard_files if counter is None else counter.drain()
            if finished:
                on_progress(finished)

        def check_cancelled() -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise BuildCancelled("Corpus build cancelled")

        executor = self._executor()
        pending: set[Future] = set()
        try:
            for shard in _iter_shards(sources, self.shard_size):
                check_cancelled()
                pending.add(executor.submit(reduce_shard, shard, self.scheme, on_file))
                while len(pending) >= max_pending:
                    done, pending = wait(pending, timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                    collect(done)
                    check_cancelled()
            while pending:
                done, pending = wait(pending, timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                collect(done)
                check_cancelled()

            mapper = map if self.use_processes else executor.map
            merged = merge_partials(partials, mapper)
        except BaseException:
            for future in pending:
                future.cancel()
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

        stats = merged.stats
        stats.failures.sort(key=lambda failure: str(failure.path))
        stats.processed_files.sort(key=str)

        if stats.processed == 0:
            raise EmptyCorpusError(
                f"No files could be processed ({stats.failed} failed)", failures=stats.failures
            )

        model = CorpusModel(ids=merged.ids, df=merged.df, n_files=stats.processed, scheme=self.scheme)
        LOGGER.info(
            "Built corpus model %s: %d files, %d distinct chunks, %d failures",
            model.fingerprint,
            model.n_files,
            len(model),
            stats.failed,
        )
        return BuildResult(model=model, stats=stats)

    def build_paths(self, paths: Iterable[Path], **kwargs) -> BuildResult:
        """Build from files on disk; each worker reads its own files."""
        return self.build((FileSource(path=Path(path)) for path in paths), **kwargs)


def build_corpus(
    sources: Iterable[SourceLike], scheme: ChunkingScheme | None = None, **kwargs
) -> CorpusModel:
    """Convenience wrapper returning only the model."""
    return CorpusBuilder(scheme, **kwargs).build(sources).model
