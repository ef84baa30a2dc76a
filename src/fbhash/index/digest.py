"""Turning feature sets into normalized, document-frequency weighted digests."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from fbhash.chunking import Chunker
from fbhash.chunking.chunker import BytesLike
from fbhash.errors import CompatibilityError
from fbhash.models import CorpusModel, Digest, FeatureSet, WeightingScheme
from fbhash.utils.files import read_bytes

LOGGER = logging.getLogger(__name__)


class DigestBuilder:
    """Weights feature sets against a read-only corpus model.

    A chunk with term frequency ``tf`` and document frequency ``df`` gets
    weight ``tf * ln(N / df)``. Chunks the corpus has never seen are weighted
    as if ``df == 1`` unless the weighting scheme says to ignore them. The
    model is only read, so one builder can serve many threads.
    """

    def __init__(self, model: CorpusModel, weighting: WeightingScheme | None = None) -> None:
        self.model = model
        self.weighting = weighting or WeightingScheme()
        self.chunker = Chunker(model.scheme)

    def weigh(self, features: FeatureSet) -> np.ndarray:
        """Return the raw (unnormalized) weight of every chunk in ``features``."""
        tf = features.counts.astype(np.float64)
        if self.weighting.tf_mode == "log":
            tf = np.log1p(tf)

        if self.model.n_files == 0 or tf.size == 0:
            return np.zeros(tf.shape, dtype=np.float64)

        df = self.model.lookup(features.ids).astype(np.float64)
        seen = df > 0
        idf = np.log(float(self.model.n_files) / np.where(seen, df, 1.0))
        if self.weighting.unseen == "ignore":
            idf[~seen] = 0.0
        return tf * idf

    def build(self, features: FeatureSet) -> Digest:
        if features.scheme != self.model.scheme:
            raise CompatibilityError(
                f"Feature set uses {features.scheme.tag} but the corpus model uses "
                f"{self.model.scheme.tag}"
            )
        weights = self.weigh(features)
        keep = weights > 0
        ids = features.ids[keep]
        weights = weights[keep]

        norm = float(np.linalg.norm(weights)) if weights.size else 0.0
        if norm > 0.0:
            weights = weights / norm
        else:
            ids = ids[:0]
            weights = weights[:0]

        return Digest(
            ids=ids,
            weights=weights,
            chunking=self.model.scheme,
            weighting=self.weighting,
            provenance=self.model.fingerprint,
        )

    def digest_bytes(self, data: BytesLike) -> Digest:
        return self.build(self.chunker.feature_set(data))

    def digest_file(self, path: Path) -> Digest:
        LOGGER.debug("Hashing %s", path)
        return self.digest_bytes(read_bytes(path))
