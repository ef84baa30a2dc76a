"""Application configuration defaults."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from fbhash.chunking.hashes import HASH_FUNCTIONS
from fbhash.models import (
    DEFAULT_HASH,
    DEFAULT_WINDOW_SIZE,
    ChunkingScheme,
    WeightingScheme,
)


class OutputFormat(str, Enum):
    BINARY = "binary"
    JSON = "json"


def _get_default_db_path() -> Path:
    """Prefer a project-local database, fall back to the user's data directory."""
    local_db = Path("data/fbhash.db")
    if local_db.exists():
        return local_db
    return Path.home() / ".local" / "share" / "fbhash" / "fbhash.db"


@dataclass(slots=True)
class AppConfig:
    db_path: Path | None = None
    window_size: int = DEFAULT_WINDOW_SIZE
    hash_name: str = DEFAULT_HASH
    tf_mode: str = "raw"
    unseen: str = "rare"
    workers: int | None = None
    shard_size: int = 64
    output_format: OutputFormat = OutputFormat.BINARY

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if self.hash_name not in HASH_FUNCTIONS:
            raise ValueError(
                f"Unknown hash function {self.hash_name!r}, expected one of {sorted(HASH_FUNCTIONS)}"
            )
        if self.window_size < 1:
            raise ValueError("window_size must be positive")
        if self.shard_size < 1:
            raise ValueError("shard_size must be positive")
        if self.workers is not None and self.workers < 1:
            raise ValueError("workers must be positive")
        self.output_format = OutputFormat(self.output_format)
        # Validates tf_mode and unseen.
        self.weighting_scheme()

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path

    def chunking_scheme(self) -> ChunkingScheme:
        return ChunkingScheme(hash_name=self.hash_name, window_size=self.window_size)

    def weighting_scheme(self) -> WeightingScheme:
        return WeightingScheme(tf_mode=self.tf_mode, unseen=self.unseen)
