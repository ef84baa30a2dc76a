"""fbhash - feature-based similarity hashing for digital forensics."""

from __future__ import annotations

__version__ = "0.2.0"
