"""Sliding-window chunking of byte sequences."""

from fbhash.chunking.chunker import Chunker, build_feature_set
from fbhash.chunking.hashes import HASH_FUNCTIONS, get_hash_function

__all__ = ["Chunker", "build_feature_set", "HASH_FUNCTIONS", "get_hash_function"]
