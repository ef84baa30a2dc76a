"""Tests for sliding-window chunking."""

from __future__ import annotations

import time

import numpy as np
import pytest
import xxhash

from fbhash.chunking import Chunker, build_feature_set, get_hash_function
from fbhash.chunking.hashes import rabin64, xxh64
from fbhash.models import ChunkingScheme

MASK = 2**64 - 1


def _reference_rabin(window: bytes) -> int:
    value = 0xCBF29CE484222325
    for byte in window:
        value = (value * 0x100000001B3 + byte) & MASK
    for multiplier in (0xFF51AFD7ED558CCD, 0xC4CEB9FE1A85EC53):
        value ^= value >> 33
        value = (value * multiplier) & MASK
    value ^= value >> 33
    return value


@pytest.fixture
def data() -> bytes:
    return np.random.default_rng(7).bytes(500)


class TestHashFunctions:
    """Test the window hash functions."""

    def test_rabin64_matches_reference(self, data: bytes) -> None:
        """Vectorized hash equals a plain integer evaluation."""
        hashes = rabin64(np.frombuffer(data[:40], dtype=np.uint8), 8)
        assert hashes.size == 33
        assert [int(h) for h in hashes] == [_reference_rabin(data[i : i + 8]) for i in range(33)]

    @pytest.mark.parametrize("window", [1, 3, 64, 200])
    def test_rabin64_matches_reference_for_any_window(self, data: bytes, window: int) -> None:
        hashes = rabin64(np.frombuffer(data, dtype=np.uint8), window)
        expected = [_reference_rabin(data[i : i + window]) for i in range(len(data) - window + 1)]
        assert hashes.tolist() == expected

    def test_rabin64_leading_zeros_change_hash(self) -> None:
        """A short file and the same bytes behind NUL padding get different ids."""
        chunker = Chunker()
        assert chunker.chunk_ids(b"x")[0] != chunker.chunk_ids(b"\x00" * 63 + b"x")[0]
        assert chunker.chunk_ids(b"\x00")[0] != chunker.chunk_ids(b"\x00\x00")[0]

    def test_rabin64_cost_does_not_grow_with_window(self) -> None:
        buffer = np.frombuffer(np.random.default_rng(1).bytes(1 << 21), dtype=np.uint8)

        def best_time(window: int) -> float:
            timings = []
            for _ in range(3):
                start = time.perf_counter()
                rabin64(buffer, window)
                timings.append(time.perf_counter() - start)
            return min(timings)

        small, large = best_time(8), best_time(1024)
        assert large < 3 * small + 0.05

    def test_xxh64_matches_library(self, data: bytes) -> None:
        hashes = xxh64(np.frombuffer(data[:20], dtype=np.uint8), 16)
        assert hashes.tolist() == [xxhash.xxh64_intdigest(data[i : i + 16]) for i in range(5)]

    def test_unknown_hash_function(self) -> None:
        with pytest.raises(ValueError, match="Unknown hash function"):
            get_hash_function("md5")


class TestChunker:
    """Test Chunker window enumeration."""

    def test_chunk_count(self) -> None:
        chunker = Chunker(ChunkingScheme(window_size=4))
        assert chunker.chunk_count(0) == 0
        assert chunker.chunk_count(1) == 1
        assert chunker.chunk_count(4) == 1
        assert chunker.chunk_count(10) == 7

    def test_empty_input_yields_nothing(self) -> None:
        chunker = Chunker()
        assert chunker.chunk_ids(b"").size == 0
        assert list(chunker.iter_windows(b"")) == []
        assert len(chunker.feature_set(b"")) == 0

    def test_single_byte_yields_one_chunk(self) -> None:
        """Input shorter than the window is one chunk."""
        chunker = Chunker()
        assert chunker.chunk_ids(b"x").size == 1
        assert [bytes(w) for w in chunker.iter_windows(b"x")] == [b"x"]

    def test_short_input_covers_whole_buffer(self) -> None:
        chunker = Chunker(ChunkingScheme(window_size=64))
        ids = chunker.chunk_ids(b"hello")
        assert ids.tolist() == [_reference_rabin(b"hello")]

    def test_windows_slide_by_one(self, data: bytes) -> None:
        chunker = Chunker(ChunkingScheme(window_size=16))
        windows = [bytes(w) for w in chunker.iter_windows(data)]
        assert len(windows) == len(data) - 15
        assert windows[0] == data[:16]
        assert windows[1] == data[1:17]
        assert windows[-1] == data[-16:]

    def test_deterministic(self, data: bytes) -> None:
        assert np.array_equal(Chunker().chunk_ids(data), Chunker().chunk_ids(data))

    def test_block_size_does_not_change_ids(self, data: bytes) -> None:
        """Block boundaries are invisible in the output."""
        whole = Chunker().chunk_ids(data)
        blocked = Chunker(block_size=7).chunk_ids(data)
        assert np.array_equal(whole, blocked)

    def test_iter_chunk_ids_matches_array(self, data: bytes) -> None:
        chunker = Chunker(block_size=100)
        assert list(chunker.iter_chunk_ids(data)) == chunker.chunk_ids(data).tolist()

    def test_hash_choice_changes_ids(self, data: bytes) -> None:
        rabin = Chunker(ChunkingScheme(hash_name="rabin64")).chunk_ids(data)
        xxh = Chunker(ChunkingScheme(hash_name="xxh64")).chunk_ids(data)
        assert rabin.size == xxh.size
        assert not np.array_equal(rabin, xxh)

    def test_invalid_block_size(self) -> None:
        with pytest.raises(ValueError):
            Chunker(block_size=0)


class TestFeatureSet:
    """Test feature set extraction."""

    def test_counts_repeated_windows(self) -> None:
        scheme = ChunkingScheme(window_size=2)
        features = build_feature_set(b"abababa", scheme)
        # "ab" x3, "ba" x3
        assert len(features) == 2
        assert sorted(features.values()) == [3, 3]
        assert features.total == 6
        assert features.scheme == scheme

    def test_total_equals_chunk_count(self, data: bytes) -> None:
        chunker = Chunker(block_size=64)
        features = chunker.feature_set(data)
        assert features.total == chunker.chunk_count(len(data))

    def test_distinct_ids_are_sorted(self, data: bytes) -> None:
        ids = Chunker().distinct_ids(data + data)
        assert np.all(ids[1:] > ids[:-1])
        assert np.isin(Chunker().distinct_ids(data), ids).all()
