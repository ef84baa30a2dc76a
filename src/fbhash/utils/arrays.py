"""Helpers for sorted ChunkId/count array pairs."""

from __future__ import annotations

from typing import Iterable, Tuple

import numpy as np

ID_DTYPE = np.dtype("<u8")
COUNT_DTYPE = np.dtype("<u8")

CountPair = Tuple[np.ndarray, np.ndarray]


def empty_counts() -> CountPair:
    return np.empty(0, dtype=ID_DTYPE), np.empty(0, dtype=COUNT_DTYPE)


def count_ids(ids: np.ndarray) -> CountPair:
    """Return the sorted distinct ids and how often each occurs."""
    if ids.size == 0:
        return empty_counts()
    unique, counts = np.unique(ids, return_counts=True)
    return unique.astype(ID_DTYPE, copy=False), counts.astype(COUNT_DTYPE, copy=False)


def merge_counts(pairs: Iterable[CountPair]) -> CountPair:
    """Sum counts of several sorted (ids, counts) pairs keyed by id.

    The result is independent of the order of ``pairs`` and integer-exact.
    """
    pairs = [pair for pair in pairs if pair[0].size]
    if not pairs:
        return empty_counts()
    if len(pairs) == 1:
        return pairs[0]

    ids = np.concatenate([pair[0] for pair in pairs])
    counts = np.concatenate([pair[1] for pair in pairs])
    order = np.argsort(ids, kind="stable")
    ids = ids[order]
    counts = counts[order]
    starts = np.flatnonzero(np.concatenate(([True], ids[1:] != ids[:-1])))
    return ids[starts], np.add.reduceat(counts, starts).astype(COUNT_DTYPE, copy=False)


def frozen(array: np.ndarray) -> np.ndarray:
    """Mark an array read-only and return it."""
    array.flags.writeable = False
    return array
