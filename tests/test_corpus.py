"""Tests for corpus model construction."""

from __future__ import annotations

import threading
from pathlib import Path

import numpy as np
import pytest

from fbhash.errors import BuildCancelled, EmptyCorpusError
from fbhash.index.corpus import (
    BuildStats,
    CorpusBuilder,
    FileSource,
    build_corpus,
    merge_partials,
    reduce_shard,
)
from fbhash.index.records import encode_corpus
from fbhash.models import ChunkingScheme


@pytest.fixture
def sources() -> list[tuple[str, bytes]]:
    rng = np.random.default_rng(42)
    shared = rng.bytes(300)
    files = [(f"file{i:02d}.bin", rng.bytes(200) + shared) for i in range(12)]
    files.append(("empty.bin", b""))
    files.append(("tiny.bin", b"z"))
    return files


class _GatedSource(FileSource):
    """A source whose read blocks until ``gate`` is set."""

    def __init__(self, path: Path, content: bytes, gate: threading.Event) -> None:
        FileSource.__init__(self, path, content)
        self.gate = gate

    def read(self) -> bytes:
        self.gate.wait(timeout=5)
        return FileSource.read(self)


class TestBuildStats:
    """Test BuildStats bookkeeping."""

    def test_record_success_and_failure(self) -> None:
        stats = BuildStats()
        stats.record_success(Path("a"))
        stats.record_success(Path("b"), empty=True)
        stats.record_failure(Path("c"), "denied")
        assert stats.processed == 2
        assert stats.empty == 1
        assert stats.failed == 1
        assert stats.failures[0].reason == "denied"

    def test_merge(self) -> None:
        left, right = BuildStats(), BuildStats()
        left.record_success(Path("a"))
        right.record_failure(Path("b"), "gone")
        merged = left.merge(right)
        assert (merged.processed, merged.failed) == (1, 1)


class TestReduceShard:
    """Test per-shard reduction."""

    def test_counts_each_file_once(self) -> None:
        scheme = ChunkingScheme(window_size=2)
        partial = reduce_shard(
            [FileSource(Path("a"), b"aaaa"), FileSource(Path("b"), b"aab")], scheme
        )
        assert partial.n_files == 2
        # "aa" appears in both files, "ab" only in the second
        assert sorted(partial.df.tolist()) == [1, 2]

    def test_unreadable_file_is_recorded(self, tmp_path: Path) -> None:
        partial = reduce_shard([FileSource(tmp_path / "missing")], ChunkingScheme())
        assert partial.n_files == 0
        assert partial.stats.failed == 1
        assert partial.stats.failures[0].path == tmp_path / "missing"

    def test_reports_every_file(self, tmp_path: Path) -> None:
        finished = []
        reduce_shard(
            [
                FileSource(Path("a"), b"abc"),
                FileSource(tmp_path / "missing"),
                FileSource(Path("b"), b""),
            ],
            ChunkingScheme(),
            on_file=lambda: finished.append(1),
        )
        assert len(finished) == 3

    def test_merge_partials_of_nothing(self) -> None:
        merged = merge_partials([])
        assert merged.ids.size == 0
        assert merged.n_files == 0


class TestCorpusBuilder:
    """Test CorpusBuilder."""

    def test_document_frequencies(self, sources) -> None:
        model = build_corpus(sources)
        assert model.n_files == len(sources)
        shared_ids = model.ids[model.df == 12]
        # 300 shared bytes give 300 - 64 + 1 windows present in every non-empty file
        assert shared_ids.size == 237
        assert int(model.df.max()) == 12

    def test_empty_files_count_towards_n(self) -> None:
        result = CorpusBuilder().build([("a", b"abc"), ("b", b"")])
        assert result.model.n_files == 2
        assert result.stats.empty == 1
        assert len(result.model) == 1

    def test_order_and_parallelism_independent(self, sources) -> None:
        """Shard size, worker count and file order do not change the model."""
        reference = encode_corpus(CorpusBuilder(workers=1, shard_size=64).build(sources).model)
        shuffled = list(reversed(sources))
        for workers, shard_size in [(1, 1), (4, 1), (3, 5), (8, 2)]:
            model = CorpusBuilder(workers=workers, shard_size=shard_size).build(shuffled).model
            assert encode_corpus(model) == reference

    def test_process_pool(self, sources) -> None:
        threaded = CorpusBuilder(workers=2, shard_size=4).build(sources).model
        processed = CorpusBuilder(workers=2, shard_size=4, use_processes=True).build(sources).model
        assert processed == threaded

    def test_build_paths(self, tmp_path: Path) -> None:
        for name, content in [("a.bin", b"first file"), ("b.bin", b"second file")]:
            (tmp_path / name).write_bytes(content)
        result = CorpusBuilder().build_paths([tmp_path / "a.bin", tmp_path / "b.bin"])
        assert result.model.n_files == 2
        assert result.stats.processed_files == [tmp_path / "a.bin", tmp_path / "b.bin"]

    def test_failures_are_collected(self, tmp_path: Path) -> None:
        good = tmp_path / "good.bin"
        good.write_bytes(b"content")
        result = CorpusBuilder(shard_size=1).build_paths(
            [tmp_path / "z-missing", good, tmp_path / "a-missing"]
        )
        assert result.model.n_files == 1
        assert result.stats.failed == 2
        assert [f.path.name for f in result.stats.failures] == ["a-missing", "z-missing"]

    def test_all_files_failing(self, tmp_path: Path) -> None:
        with pytest.raises(EmptyCorpusError) as excinfo:
            CorpusBuilder().build_paths([tmp_path / "missing"])
        assert len(excinfo.value.failures) == 1

    def test_no_sources(self) -> None:
        with pytest.raises(EmptyCorpusError):
            CorpusBuilder().build([])

    def test_progress_reports_every_file(self, sources) -> None:
        seen: list[int] = []
        CorpusBuilder(workers=2, shard_size=3).build(sources, on_progress=seen.append)
        assert sum(seen) == len(sources)

    def test_progress_before_shard_completes(self) -> None:
        """Files finished inside a running shard are reported right away."""
        gate = threading.Event()
        seen: list[int] = []

        def on_progress(count: int) -> None:
            seen.append(count)
            gate.set()

        sources = [FileSource(Path("a"), b"first"), _GatedSource(Path("b"), b"second", gate)]
        result = CorpusBuilder(workers=1, shard_size=64).build(sources, on_progress=on_progress)

        assert result.model.n_files == 2
        assert seen == [1, 1]

    def test_progress_with_processes(self, sources) -> None:
        seen: list[int] = []
        CorpusBuilder(workers=2, shard_size=5, use_processes=True).build(
            sources, on_progress=seen.append
        )
        assert sum(seen) == len(sources)

    def test_cancellation(self, sources) -> None:
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(BuildCancelled):
            CorpusBuilder(shard_size=1).build(sources, cancel_event=cancel)

    def test_invalid_settings(self) -> None:
        with pytest.raises(ValueError):
            CorpusBuilder(shard_size=0)
        with pytest.raises(ValueError):
            CorpusBuilder(workers=0)
