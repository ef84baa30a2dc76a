"""Cosine similarity between digests."""

from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import Hashable, Iterable, List, Tuple

import numpy as np

from fbhash.errors import CompatibilityError
from fbhash.models import Digest, OrderedReal


def check_compatible(left: Digest, right: Digest, *, check_provenance: bool = True) -> None:
    """Raise :class:`CompatibilityError` unless both digests may be compared."""
    if left.scheme_tag != right.scheme_tag:
        raise CompatibilityError(
            f"Digests use different schemes: {left.scheme_tag} vs {right.scheme_tag}"
        )
    if check_provenance and left.provenance != right.provenance:
        raise CompatibilityError(
            f"Digests were weighted by different corpus models: "
            f"{left.provenance or '<none>'} vs {right.provenance or '<none>'}"
        )


def cosine_similarity(left: Digest, right: Digest, *, check_provenance: bool = True) -> float:
    """Similarity in [0, 1]; empty digests are similar to nothing, not even each other.

    Both digests have unit norm, so the dot product over the shared ChunkIds
    is already the cosine. The smaller digest is probed against the larger.
    """
    check_compatible(left, right, check_provenance=check_provenance)
    if left.is_empty or right.is_empty:
        return 0.0

    small, large = (left, right) if len(left) <= len(right) else (right, left)
    positions = np.searchsorted(large.ids, small.ids)
    positions = np.minimum(positions, large.ids.size - 1)
    shared = large.ids[positions] == small.ids
    if not shared.any():
        return 0.0

    score = float(np.sum(small.weights[shared] * large.weights[positions[shared]]))
    return min(max(score, 0.0), 1.0)


compare = cosine_similarity


def cosine_distance(left: Digest, right: Digest, *, check_provenance: bool = True) -> float:
    return 1.0 - cosine_similarity(left, right, check_provenance=check_provenance)


def as_percentage(score: float) -> float:
    return round(score * 100.0, 2)


@dataclass(slots=True)
class RankedMatch:
    key: Hashable
    score: float


def ranked_search(
    query: Digest,
    candidates: Iterable[Tuple[Hashable, Digest]],
    *,
    top_k: int = 10,
    check_provenance: bool = True,
) -> List[RankedMatch]:
    """Return the ``top_k`` candidates most similar to ``query``.

    Ordered by score (highest first), ties broken by the candidate key.
    """
    if top_k < 1:
        return []
    matches = (
        RankedMatch(key=key, score=cosine_similarity(query, digest, check_provenance=check_provenance))
        for key, digest in candidates
    )
    return heapq.nsmallest(
        top_k, matches, key=lambda match: (OrderedReal(-match.score), str(match.key))
    )
