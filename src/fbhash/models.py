"""Core fbhash data models."""

from __future__ import annotations

import hashlib
import math
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from fbhash.errors import CompatibilityError, FormatError
from fbhash.utils.arrays import COUNT_DTYPE, ID_DTYPE, frozen, merge_counts

SCHEME_VERSION = 1
DEFAULT_WINDOW_SIZE = 64
DEFAULT_HASH = "rabin64"

TF_MODES = ("raw", "log")
UNSEEN_POLICIES = ("rare", "ignore")

_CHUNKING_TAG = re.compile(r"^fbhash-v(?P<version>\d+):(?P<hash>[a-z0-9_]+):w(?P<window>\d+)$")
_WEIGHTING_TAG = re.compile(r"^tf=(?P<tf>[a-z]+),unseen=(?P<unseen>[a-z]+)$")
_MAX_ID = 2**64


@dataclass(frozen=True, slots=True)
class ChunkingScheme:
    """Hash function and window length that turn bytes into ChunkIds."""

    hash_name: str = DEFAULT_HASH
    window_size: int = DEFAULT_WINDOW_SIZE
    version: int = SCHEME_VERSION

    def __post_init__(self) -> None:
        if self.window_size < 1:
            raise ValueError(f"window_size must be positive, got {self.window_size}")

    @property
    def tag(self) -> str:
        return f"fbhash-v{self.version}:{self.hash_name}:w{self.window_size}"

    @classmethod
    def from_tag(cls, tag: str) -> "ChunkingScheme":
        match = _CHUNKING_TAG.match(tag)
        if match is None:
            raise FormatError(f"Malformed chunking scheme tag: {tag!r}")
        version = int(match["version"])
        if version != SCHEME_VERSION:
            raise FormatError(f"Unsupported scheme version {version} in {tag!r}")
        return cls(hash_name=match["hash"], window_size=int(match["window"]), version=version)


@dataclass(frozen=True, slots=True)
class WeightingScheme:
    """How term frequencies and unseen chunks are weighted."""

    tf_mode: str = "raw"
    unseen: str = "rare"

    def __post_init__(self) -> None:
        if self.tf_mode not in TF_MODES:
            raise ValueError(f"tf_mode must be one of {TF_MODES}, got {self.tf_mode!r}")
        if self.unseen not in UNSEEN_POLICIES:
            raise ValueError(f"unseen must be one of {UNSEEN_POLICIES}, got {self.unseen!r}")

    @property
    def tag(self) -> str:
        return f"tf={self.tf_mode},unseen={self.unseen}"

    @classmethod
    def from_tag(cls, tag: str) -> "WeightingScheme":
        match = _WEIGHTING_TAG.match(tag)
        if match is None:
            raise FormatError(f"Malformed weighting scheme tag: {tag!r}")
        try:
            return cls(tf_mode=match["tf"], unseen=match["unseen"])
        except ValueError as exc:
            raise FormatError(str(exc)) from exc


def split_scheme_tag(tag: str) -> tuple[ChunkingScheme, WeightingScheme]:
    """Parse a digest scheme tag into its chunking and weighting parts."""
    chunking, sep, weighting = tag.partition(";")
    if not sep:
        raise FormatError(f"Malformed digest scheme tag: {tag!r}")
    return ChunkingScheme.from_tag(chunking), WeightingScheme.from_tag(weighting)


@dataclass(frozen=True, slots=True, order=True)
class OrderedReal:
    """A float with a total order; NaN is rejected."""

    value: float

    def __post_init__(self) -> None:
        if math.isnan(self.value):
            raise ValueError("OrderedReal does not accept NaN")

    def __float__(self) -> float:
        return self.value


def _as_key(key: object) -> np.uint64 | None:
    if isinstance(key, bool) or not isinstance(key, (int, np.integer)):
        return None
    value = int(key)
    if 0 <= value < _MAX_ID:
        return np.uint64(value)
    return None


def _locate(ids: np.ndarray, key: object) -> int:
    value = _as_key(key)
    if value is None:
        raise KeyError(key)
    idx = int(np.searchsorted(ids, value))
    if idx < ids.size and ids[idx] == value:
        return idx
    raise KeyError(key)


def _check_sorted_unique(ids: np.ndarray, what: str) -> None:
    if ids.ndim != 1:
        raise ValueError(f"{what} ids must be one-dimensional")
    if ids.size > 1 and not bool(np.all(ids[1:] > ids[:-1])):
        raise ValueError(f"{what} ids must be strictly increasing")


@dataclass(frozen=True, slots=True, eq=False)
class FeatureSet(Mapping):
    """ChunkId -> occurrence count for a single file."""

    ids: np.ndarray
    counts: np.ndarray
    scheme: ChunkingScheme = field(default_factory=ChunkingScheme)

    def __post_init__(self) -> None:
        ids = np.asarray(self.ids, dtype=ID_DTYPE)
        counts = np.asarray(self.counts, dtype=COUNT_DTYPE)
        if ids.shape != counts.shape:
            raise ValueError("ids and counts must have the same shape")
        _check_sorted_unique(ids, "FeatureSet")
        if counts.size and not bool(np.all(counts > 0)):
            raise ValueError("FeatureSet counts must be positive")
        object.__setattr__(self, "ids", frozen(ids.copy()))
        object.__setattr__(self, "counts", frozen(counts.copy()))

    def __getitem__(self, key: object) -> int:
        return int(self.counts[_locate(self.ids, key)])

    def __iter__(self) -> Iterator[int]:
        return (int(value) for value in self.ids)

    def __len__(self) -> int:
        return int(self.ids.size)

    def __contains__(self, key: object) -> bool:
        try:
            _locate(self.ids, key)
        except KeyError:
            return False
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureSet):
            return NotImplemented
        return (
            self.scheme == other.scheme
            and np.array_equal(self.ids, other.ids)
            and np.array_equal(self.counts, other.counts)
        )

    __hash__ = None  # type: ignore[assignment]

    @property
    def total(self) -> int:
        """Number of chunks observed, i.e. the sum of all counts."""
        return int(self.counts.sum())


@dataclass(frozen=True, slots=True, eq=False)
class CorpusModel(Mapping):
    """Document frequencies over a reference corpus.

    ``df`` counts files, not occurrences, and ``n_files`` counts every file
    that was processed, including empty ones. Instances are never mutated;
    ``merge`` returns a new model.
    """

    ids: np.ndarray
    df: np.ndarray
    n_files: int
    scheme: ChunkingScheme = field(default_factory=ChunkingScheme)
    fingerprint: str = field(init=False, default="")

    def __post_init__(self) -> None:
        ids = np.asarray(self.ids, dtype=ID_DTYPE)
        df = np.asarray(self.df, dtype=COUNT_DTYPE)
        if ids.shape != df.shape:
            raise ValueError("ids and df must have the same shape")
        if self.n_files < 0:
            raise ValueError("n_files must not be negative")
        _check_sorted_unique(ids, "CorpusModel")
        if df.size and not (bool(np.all(df >= 1)) and int(df.max()) <= self.n_files):
            raise ValueError("document frequencies must lie in [1, n_files]")
        object.__setattr__(self, "ids", frozen(ids.copy()))
        object.__setattr__(self, "df", frozen(df.copy()))
        object.__setattr__(self, "fingerprint", self._compute_fingerprint())

    def _compute_fingerprint(self) -> str:
        sha = hashlib.sha256()
        sha.update(self.scheme.tag.encode("utf-8"))
        sha.update(np.asarray([self.n_files, self.ids.size], dtype="<u8").tobytes())
        sha.update(self.ids.tobytes())
        sha.update(self.df.tobytes())
        return sha.hexdigest()[:32]

    def __getitem__(self, key: object) -> int:
        return int(self.df[_locate(self.ids, key)])

    def __iter__(self) -> Iterator[int]:
        return (int(value) for value in self.ids)

    def __len__(self) -> int:
        return int(self.ids.size)

    def __contains__(self, key: object) -> bool:
        try:
            _locate(self.ids, key)
        except KeyError:
            return False
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CorpusModel):
            return NotImplemented
        return (
            self.scheme == other.scheme
            and self.n_files == other.n_files
            and np.array_equal(self.ids, other.ids)
            and np.array_equal(self.df, other.df)
        )

    __hash__ = None  # type: ignore[assignment]

    def lookup(self, ids: np.ndarray) -> np.ndarray:
        """Return the document frequency of every id, 0 where unseen."""
        ids = np.asarray(ids, dtype=ID_DTYPE)
        result = np.zeros(ids.shape, dtype=COUNT_DTYPE)
        if self.ids.size == 0 or ids.size == 0:
            return result
        positions = np.searchsorted(self.ids, ids)
        clipped = np.minimum(positions, self.ids.size - 1)
        found = self.ids[clipped] == ids
        result[found] = self.df[clipped[found]]
        return result

    def merge(self, other: "CorpusModel") -> "CorpusModel":
        """Combine the statistics of two disjoint corpora."""
        if other.scheme != self.scheme:
            raise CompatibilityError(
                f"Cannot merge corpus models built with {self.scheme.tag} and {other.scheme.tag}"
            )
        ids, df = merge_counts([(self.ids, self.df), (other.ids, other.df)])
        return CorpusModel(ids=ids, df=df, n_files=self.n_files + other.n_files, scheme=self.scheme)


@dataclass(frozen=True, slots=True, eq=False)
class Digest(Mapping):
    """L2-normalized sparse weight vector describing one file."""

    ids: np.ndarray
    weights: np.ndarray
    chunking: ChunkingScheme = field(default_factory=ChunkingScheme)
    weighting: WeightingScheme = field(default_factory=WeightingScheme)
    provenance: str = ""

    def __post_init__(self) -> None:
        ids = np.asarray(self.ids, dtype=ID_DTYPE)
        weights = np.asarray(self.weights, dtype="<f8")
        if ids.shape != weights.shape:
            raise ValueError("ids and weights must have the same shape")
        _check_sorted_unique(ids, "Digest")
        if weights.size and not (bool(np.all(np.isfinite(weights))) and bool(np.all(weights > 0))):
            raise ValueError("Digest weights must be finite and positive")
        object.__setattr__(self, "ids", frozen(ids.copy()))
        object.__setattr__(self, "weights", frozen(weights.copy()))

    @property
    def scheme_tag(self) -> str:
        return f"{self.chunking.tag};{self.weighting.tag}"

    @property
    def norm(self) -> float:
        return float(np.linalg.norm(self.weights)) if self.weights.size else 0.0

    @property
    def is_empty(self) -> bool:
        return self.ids.size == 0

    def __getitem__(self, key: object) -> float:
        return float(self.weights[_locate(self.ids, key)])

    def __iter__(self) -> Iterator[int]:
        return (int(value) for value in self.ids)

    def __len__(self) -> int:
        return int(self.ids.size)

    def __contains__(self, key: object) -> bool:
        try:
            _locate(self.ids, key)
        except KeyError:
            return False
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Digest):
            return NotImplemented
        return (
            self.scheme_tag == other.scheme_tag
            and self.provenance == other.provenance
            and np.array_equal(self.ids, other.ids)
            and np.array_equal(self.weights, other.weights)
        )

    __hash__ = None  # type: ignore[assignment]


@dataclass(slots=True)
class DocumentMetadata:
    """Minimal metadata describing a hashed file."""

    path: Path
    sha256: str
    mtime: float
    size: int
