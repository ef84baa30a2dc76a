"""Fixed-window chunking of byte sequences into ChunkIds."""

from __future__ import annotations

import logging
from typing import Iterator, Union

import numpy as np

from fbhash.chunking.hashes import get_hash_function
from fbhash.models import ChunkingScheme, FeatureSet
from fbhash.utils.arrays import ID_DTYPE, count_ids, merge_counts

LOGGER = logging.getLogger(__name__)

BytesLike = Union[bytes, bytearray, memoryview]

# Windows hashed per vectorized block; bounds the temporary arrays to a few
# tens of megabytes regardless of file size.
DEFAULT_BLOCK_SIZE = 1 << 20


class Chunker:
    """Slides a window of ``scheme.window_size`` bytes over data with step 1.

    Data shorter than the window yields a single chunk covering all of it and
    empty data yields no chunks at all.
    """

    def __init__(
        self, scheme: ChunkingScheme | None = None, *, block_size: int = DEFAULT_BLOCK_SIZE
    ) -> None:
        if block_size < 1:
            raise ValueError("block_size must be positive")
        self.scheme = scheme or ChunkingScheme()
        self.block_size = block_size
        self._hash = get_hash_function(self.scheme.hash_name)

    @property
    def window_size(self) -> int:
        return self.scheme.window_size

    def chunk_count(self, length: int) -> int:
        """Number of chunks produced for data of ``length`` bytes."""
        if length <= 0:
            return 0
        return max(length - self.window_size + 1, 1)

    def iter_windows(self, data: BytesLike) -> Iterator[memoryview]:
        """Yield the raw byte windows, in order."""
        view = memoryview(data).cast("B")
        size = min(self.window_size, len(view))
        for start in range(self.chunk_count(len(view))):
            yield view[start : start + size]

    def iter_blocks(self, data: BytesLike) -> Iterator[np.ndarray]:
        """Yield ChunkIds in order, as ``uint64`` arrays of at most ``block_size``."""
        buffer = np.frombuffer(data, dtype=np.uint8)
        if buffer.size == 0:
            return
        window = self.window_size
        if buffer.size <= window:
            yield self._hash(buffer, buffer.size)
            return

        count = buffer.size - window + 1
        for start in range(0, count, self.block_size):
            stop = min(start + self.block_size, count)
            yield self._hash(buffer[start : stop + window - 1], window)

    def iter_chunk_ids(self, data: BytesLike) -> Iterator[int]:
        """Lazily yield every ChunkId of ``data`` in window order."""
        for block in self.iter_blocks(data):
            yield from block.tolist()

    def chunk_ids(self, data: BytesLike) -> np.ndarray:
        blocks = list(self.iter_blocks(data))
        if not blocks:
            return np.empty(0, dtype=ID_DTYPE)
        return np.concatenate(blocks).astype(ID_DTYPE, copy=False)

    def feature_set(self, data: BytesLike) -> FeatureSet:
        """Count every ChunkId of ``data`` in a single pass."""
        ids, counts = merge_counts(count_ids(block) for block in self.iter_blocks(data))
        LOGGER.debug("Extracted %d distinct chunks from %d bytes", ids.size, len(data))
        return FeatureSet(ids=ids, counts=counts, scheme=self.scheme)

    def distinct_ids(self, data: BytesLike) -> np.ndarray:
        """Sorted distinct ChunkIds of ``data``; occurrence counts are dropped."""
        return self.feature_set(data).ids


def build_feature_set(data: BytesLike, scheme: ChunkingScheme | None = None) -> FeatureSet:
    return Chunker(scheme).feature_set(data)
