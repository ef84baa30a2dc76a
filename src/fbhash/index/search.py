"""Similarity search over a digest database."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List

from fbhash.index.digest import DigestBuilder
from fbhash.index.storage import SQLiteDigestStore


@dataclass(slots=True)
class SearchResult:
    path: Path
    score: float


class Searcher:
    """High-level API to find stored files similar to a query file."""

    def __init__(self, builder: DigestBuilder, store: SQLiteDigestStore) -> None:
        self.builder = builder
        self.store = store

    def search(self, path: Path, *, top_k: int = 10) -> List[SearchResult]:
        digest = self.builder.digest_file(path)
        matches = self.store.search(digest, top_k=top_k)
        return [SearchResult(path=Path(match.key), score=match.score) for match in matches]
