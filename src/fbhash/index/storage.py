"""SQLite store for digests of many files."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Tuple

import numpy as np

from fbhash.errors import CompatibilityError
from fbhash.index.compare import RankedMatch, ranked_search
from fbhash.index.records import WEIGHT_DTYPE
from fbhash.models import Digest, DocumentMetadata, split_scheme_tag
from fbhash.utils.arrays import ID_DTYPE


class SQLiteDigestStore:
    """Persistence layer for file digests.

    A database is bound to the scheme and corpus model of the first digest
    stored in it; digests from any other model are rejected.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS store_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id INTEGER PRIMARY KEY,
                    path TEXT NOT NULL UNIQUE,
                    sha256 TEXT NOT NULL,
                    mtime REAL NOT NULL,
                    size INTEGER NOT NULL,
                    scheme TEXT NOT NULL,
                    provenance TEXT NOT NULL,
                    n_features INTEGER NOT NULL,
                    ids BLOB NOT NULL,
                    weights BLOB NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS documents_updated
                AFTER UPDATE ON documents
                BEGIN
                    UPDATE documents SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
                END;
                """
            )

    def _meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM store_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    @property
    def scheme(self) -> str | None:
        return self._meta("scheme")

    @property
    def provenance(self) -> str | None:
        return self._meta("provenance")

    def bind(self, digest: Digest) -> None:
        """Bind an empty store to the digest's scheme and model, or check the binding."""
        scheme, provenance = self.scheme, self.provenance
        if scheme is None:
            self._conn.executemany(
                "INSERT INTO store_meta(key, value) VALUES (?, ?)",
                [("scheme", digest.scheme_tag), ("provenance", digest.provenance)],
            )
            return
        if scheme != digest.scheme_tag or provenance != digest.provenance:
            raise CompatibilityError(
                f"Database {self.db_path} holds digests for {scheme} / {provenance}, "
                f"got {digest.scheme_tag} / {digest.provenance}"
            )

    def upsert_digest(self, document: DocumentMetadata, digest: Digest) -> str:
        """Store a digest for a file.

        Returns 'inserted', 'updated', or 'skipped' when the file content and
        corpus model are unchanged.
        """
        with self.transaction() as conn:
            self.bind(digest)
            existing = conn.execute(
                "SELECT id, sha256, provenance FROM documents WHERE path = ?",
                (str(document.path),),
            ).fetchone()

            if (
                existing
                and existing["sha256"] == document.sha256
                and existing["provenance"] == digest.provenance
            ):
                return "skipped"

            if existing:
                conn.execute("DELETE FROM documents WHERE id = ?", (existing["id"],))

            conn.execute(
                """
                INSERT INTO documents(
                    path, sha256, mtime, size, scheme, provenance, n_features, ids, weights
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(document.path),
                    document.sha256,
                    document.mtime,
                    document.size,
                    digest.scheme_tag,
                    digest.provenance,
                    len(digest),
                    sqlite3.Binary(digest.ids.astype(ID_DTYPE, copy=False).tobytes()),
                    sqlite3.Binary(digest.weights.astype(WEIGHT_DTYPE, copy=False).tobytes()),
                ),
            )
            return "updated" if existing else "inserted"

    def get_digest(self, path: Path | str) -> Digest | None:
        row = self._conn.execute(
            "SELECT scheme, provenance, ids, weights FROM documents WHERE path = ?", (str(path),)
        ).fetchone()
        return self._row_to_digest(row) if row else None

    @staticmethod
    def _row_to_digest(row: sqlite3.Row) -> Digest:
        chunking, weighting = split_scheme_tag(row["scheme"])
        return Digest(
            ids=np.frombuffer(row["ids"], dtype=ID_DTYPE),
            weights=np.frombuffer(row["weights"], dtype=WEIGHT_DTYPE),
            chunking=chunking,
            weighting=weighting,
            provenance=row["provenance"],
        )

    def iter_digests(self) -> Iterator[Tuple[str, Digest]]:
        rows = self._conn.execute(
            "SELECT path, scheme, provenance, ids, weights FROM documents ORDER BY path"
        )
        for row in rows:
            yield row["path"], self._row_to_digest(row)

    def count(self) -> int:
        return int(self._conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0])

    def search(self, digest: Digest, *, top_k: int = 10) -> List[RankedMatch]:
        """Rank stored digests by similarity to ``digest``."""
        return ranked_search(digest, self.iter_digests(), top_k=top_k)

    def remove_missing_files(self) -> int:
        """Remove documents whose files no longer exist."""
        with self.transaction() as conn:
            rows = conn.execute("SELECT id, path FROM documents").fetchall()
            missing = [row for row in rows if not Path(row["path"]).exists()]
            for row in missing:
                conn.execute("DELETE FROM documents WHERE id = ?", (row["id"],))
        return len(missing)
