"""Tests for digest comparison."""

from __future__ import annotations

import numpy as np
import pytest

from fbhash.errors import CompatibilityError
from fbhash.index.compare import (
    RankedMatch,
    as_percentage,
    compare,
    cosine_distance,
    cosine_similarity,
    ranked_search,
)
from fbhash.index.corpus import build_corpus
from fbhash.index.digest import DigestBuilder
from fbhash.models import ChunkingScheme, Digest, WeightingScheme


@pytest.fixture
def files() -> list[bytes]:
    rng = np.random.default_rng(2024)
    return [rng.bytes(1024) for _ in range(3)]


@pytest.fixture
def builder(files) -> DigestBuilder:
    return DigestBuilder(build_corpus([(f"f{i}", data) for i, data in enumerate(files)]))


class TestCosineSimilarity:
    """Test cosine similarity properties."""

    def test_distinct_files_scenario(self, files, builder: DigestBuilder) -> None:
        """Files without shared windows are unrelated; a copy matches exactly."""
        assert builder.model.n_files == 3
        assert set(builder.model.df.tolist()) == {1}

        digests = [builder.digest_bytes(data) for data in files]
        copy = builder.digest_bytes(bytes(files[0]))
        assert compare(copy, digests[0]) == pytest.approx(1.0)
        assert compare(copy, digests[1]) == 0.0

    def test_self_similarity(self, files, builder: DigestBuilder) -> None:
        for data in files:
            digest = builder.digest_bytes(data)
            assert cosine_similarity(digest, digest) == pytest.approx(1.0, abs=1e-9)

    def test_symmetry(self, files, builder: DigestBuilder) -> None:
        left = builder.digest_bytes(files[0][:700] + files[1][:300])
        right = builder.digest_bytes(files[0])
        assert cosine_similarity(left, right) == cosine_similarity(right, left)
        assert 0.0 < cosine_similarity(left, right) < 1.0

    def test_containment_raises_similarity(self, files, builder: DigestBuilder) -> None:
        a, b = files[0], files[1]
        target = builder.digest_bytes(a)
        assert compare(builder.digest_bytes(b + a), target) >= compare(
            builder.digest_bytes(b), target
        )

    def test_empty_digests(self, builder: DigestBuilder) -> None:
        empty = builder.digest_bytes(b"")
        assert compare(empty, empty) == 0.0
        assert compare(empty, builder.digest_bytes(b"abc")) == 0.0

    def test_single_byte_file(self, builder: DigestBuilder) -> None:
        digest = builder.digest_bytes(b"\x00")
        assert len(digest) == 1
        assert compare(digest, digest) == pytest.approx(1.0)

    def test_result_in_unit_interval(self, files, builder: DigestBuilder) -> None:
        digests = [builder.digest_bytes(data[: 100 * (i + 1)]) for i, data in enumerate(files)]
        digests.append(builder.digest_bytes(files[0] + files[1]))
        for left in digests:
            for right in digests:
                assert 0.0 <= compare(left, right) <= 1.0

    def test_distance(self, files, builder: DigestBuilder) -> None:
        digest = builder.digest_bytes(files[2])
        assert cosine_distance(digest, digest) == pytest.approx(0.0, abs=1e-9)


class TestCompatibility:
    """Test rejection of incomparable digests."""

    def test_scheme_mismatch(self) -> None:
        left = Digest(ids=[1], weights=[1.0])
        right = Digest(ids=[1], weights=[1.0], weighting=WeightingScheme(tf_mode="log"))
        with pytest.raises(CompatibilityError):
            compare(left, right)

    def test_window_mismatch_cannot_be_ignored(self) -> None:
        left = Digest(ids=[1], weights=[1.0])
        right = Digest(ids=[1], weights=[1.0], chunking=ChunkingScheme(window_size=8))
        with pytest.raises(CompatibilityError):
            compare(left, right, check_provenance=False)

    def test_provenance_mismatch(self) -> None:
        left = Digest(ids=[1], weights=[1.0], provenance="aaa")
        right = Digest(ids=[1], weights=[1.0], provenance="bbb")
        with pytest.raises(CompatibilityError):
            compare(left, right)
        assert compare(left, right, check_provenance=False) == pytest.approx(1.0)


class TestRankedSearch:
    """Test top-K ranking."""

    def _digest(self, ids, weights) -> Digest:
        weights = np.asarray(weights, dtype=float)
        return Digest(ids=ids, weights=weights / np.linalg.norm(weights))

    def test_orders_by_score(self) -> None:
        query = self._digest([1, 2], [1.0, 1.0])
        candidates = [
            ("none", self._digest([3], [1.0])),
            ("half", self._digest([1, 3], [1.0, 1.0])),
            ("full", self._digest([1, 2], [1.0, 1.0])),
        ]
        matches = ranked_search(query, candidates, top_k=2)
        assert [m.key for m in matches] == ["full", "half"]
        assert matches[0].score == pytest.approx(1.0)
        assert matches[1].score == pytest.approx(0.5)

    def test_ties_broken_by_key(self) -> None:
        query = self._digest([1], [1.0])
        candidates = [(key, self._digest([1], [1.0])) for key in ["c", "a", "b"]]
        matches = ranked_search(query, candidates, top_k=3)
        assert [m.key for m in matches] == ["a", "b", "c"]

    def test_top_k_zero(self) -> None:
        query = self._digest([1], [1.0])
        assert ranked_search(query, [("a", query)], top_k=0) == []

    def test_match_type(self) -> None:
        query = self._digest([1], [1.0])
        assert ranked_search(query, [("a", query)]) == [RankedMatch(key="a", score=pytest.approx(1.0))]


def test_as_percentage() -> None:
    assert as_percentage(0.123456) == 12.35
    assert as_percentage(1.0) == 100.0
