"""Window hash functions.

Every function takes a ``uint8`` buffer and a window length and returns one
``uint64`` hash per window start, i.e. ``len(buffer) - window + 1`` values.
The functions are part of the persisted scheme tag, so their output must never
change for a given name.
"""

from __future__ import annotations

from typing import Callable, Dict

import numpy as np
import xxhash

HashFunction = Callable[[np.ndarray, int], np.ndarray]

_RABIN_BASE = 0x100000001B3
_RABIN_INVERSE = pow(_RABIN_BASE, -1, 1 << 64)
# Non-zero start value so leading NUL bytes still change the hash.
_RABIN_SEED = 0xCBF29CE484222325
_MASK = (1 << 64) - 1

_SHIFT = np.uint64(33)
_MIX_1 = np.uint64(0xFF51AFD7ED558CCD)
_MIX_2 = np.uint64(0xC4CEB9FE1A85EC53)


def _fmix64(values: np.ndarray) -> np.ndarray:
    """MurmurHash3 64-bit finalizer, applied in place."""
    values ^= values >> _SHIFT
    values *= _MIX_1
    values ^= values >> _SHIFT
    values *= _MIX_2
    values ^= values >> _SHIFT
    return values


def _powers(base: int, count: int) -> np.ndarray:
    """``base**0 .. base**(count - 1)`` modulo 2**64."""
    powers = np.full(count, base, dtype=np.uint64)
    powers[0] = 1
    return np.cumprod(powers, dtype=np.uint64)


def rabin64(buffer: np.ndarray, window: int) -> np.ndarray:
    """Seeded polynomial hash of every window modulo 2**64, then mixed.

    A window ``b[i:i+W]`` hashes to ``seed * B**W + sum(b[i+k] * B**(W-1-k))``,
    the value Horner's rule gives when started from ``seed``. The base is odd
    and so invertible modulo 2**64, which turns the window sums into
    differences of one prefix sum over ``b[j] * B**-j``. The cost is a fixed
    number of passes over the block whatever the window length.
    """
    size = buffer.size
    count = size - window + 1
    prefix = np.zeros(size + 1, dtype=np.uint64)
    np.cumsum(buffer.astype(np.uint64) * _powers(_RABIN_INVERSE, size), out=prefix[1:])

    hashes = prefix[window:] - prefix[:count]
    hashes *= _powers(_RABIN_BASE, size)[window - 1 :]
    hashes += np.uint64(_RABIN_SEED * pow(_RABIN_BASE, window, 1 << 64) & _MASK)
    return _fmix64(hashes)


def xxh64(buffer: np.ndarray, window: int) -> np.ndarray:
    """xxHash64 (seed 0) of every window.

    Calls into xxhash once per window, so it is far slower than ``rabin64``;
    use it only to match ChunkIds produced by other xxHash based tools.
    """
    data = buffer.tobytes()
    count = len(data) - window + 1
    return np.fromiter(
        (xxhash.xxh64_intdigest(data[start : start + window]) for start in range(count)),
        dtype=np.uint64,
        count=count,
    )


HASH_FUNCTIONS: Dict[str, HashFunction] = {
    "rabin64": rabin64,
    "xxh64": xxh64,
}


def get_hash_function(name: str) -> HashFunction:
    try:
        return HASH_FUNCTIONS[name]
    except KeyError:
        raise ValueError(
            f"Unknown hash function {name!r}, expected one of {sorted(HASH_FUNCTIONS)}"
        ) from None
