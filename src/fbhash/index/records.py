"""Persisted corpus model and digest records.

Binary records are laid out as::

    magic (4 bytes) | format version (u16) | scheme tag length (u16) | scheme tag
    corpus:  n_files (u64) | count (u64) | ids (count x u64) | df (count x u64)
    digest:  provenance length (u16) | provenance | count (u64)
             | ids (count x u64) | weights (count x f64)
    crc32 of everything above (u32)

All integers and floats are little-endian. JSON records hold the same fields,
with the mapping stored as ``[id, value]`` pairs sorted by id.
"""

from __future__ import annotations

import json
import math
import os
import struct
import zlib
from pathlib import Path

import numpy as np

from fbhash.chunking.hashes import HASH_FUNCTIONS
from fbhash.config import OutputFormat
from fbhash.errors import FormatError
from fbhash.models import ChunkingScheme, CorpusModel, Digest, split_scheme_tag
from fbhash.utils.arrays import COUNT_DTYPE, ID_DTYPE
from fbhash.utils.files import read_bytes

FORMAT_VERSION = 1

CORPUS_MAGIC = b"FBHC"
DIGEST_MAGIC = b"FBHD"
CORPUS_FORMAT = "fbhash-corpus"
DIGEST_FORMAT = "fbhash-digest"

WEIGHT_DTYPE = np.dtype("<f8")
NORM_TOLERANCE = 1e-6

_HEADER = struct.Struct("<4sHH")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self._offset = 0

    def take(self, size: int) -> memoryview:
        end = self._offset + size
        if size < 0 or end > len(self._data):
            raise FormatError("Record is truncated")
        chunk = self._data[self._offset : end]
        self._offset = end
        return chunk

    def unpack(self, fmt: struct.Struct) -> tuple:
        return fmt.unpack(self.take(fmt.size))

    def array(self, count: int, dtype: np.dtype) -> np.ndarray:
        return np.frombuffer(self.take(count * dtype.itemsize), dtype=dtype).copy()

    def finish(self) -> None:
        if self._offset != len(self._data):
            raise FormatError("Unexpected trailing data in record")


def _with_checksum(body: bytes) -> bytes:
    return body + _U32.pack(zlib.crc32(body))


def _verified_body(data: bytes) -> bytes:
    if len(data) < _HEADER.size + _U32.size:
        raise FormatError("Record is truncated")
    body, (checksum,) = data[: -_U32.size], _U32.unpack(data[-_U32.size :])
    if zlib.crc32(body) != checksum:
        raise FormatError("Record checksum mismatch")
    return body


def _read_header(reader: _Reader, magic: bytes) -> str:
    found, version, tag_len = reader.unpack(_HEADER)
    if found != magic:
        raise FormatError(f"Unexpected record type {bytes(found)!r}, expected {magic!r}")
    if version != FORMAT_VERSION:
        raise FormatError(f"Unsupported record format version {version}")
    try:
        return bytes(reader.take(tag_len)).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FormatError("Scheme tag is not valid UTF-8") from exc


def _header(magic: bytes, tag: str) -> bytes:
    encoded = tag.encode("utf-8")
    return _HEADER.pack(magic, FORMAT_VERSION, len(encoded)) + encoded


def _is_json(data: bytes) -> bool:
    return data.lstrip()[:1] == b"{"


def _load_json(data: bytes, expected_format: str) -> dict:
    try:
        payload = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FormatError(f"Invalid JSON record: {exc}") from exc
    if not isinstance(payload, dict) or payload.get("format") != expected_format:
        raise FormatError(f"Not a {expected_format} record")
    if payload.get("version") != FORMAT_VERSION:
        raise FormatError(f"Unsupported record format version {payload.get('version')!r}")
    return payload


def _pairs_to_arrays(pairs: object, value_dtype: np.dtype) -> tuple[np.ndarray, np.ndarray]:
    if not isinstance(pairs, list):
        raise FormatError("Mapping must be a list of [id, value] pairs")
    try:
        ids = np.array([int(pair[0]) for pair in pairs], dtype=ID_DTYPE)
        values = np.array([pair[1] for pair in pairs], dtype=value_dtype)
    except (TypeError, ValueError, IndexError, OverflowError) as exc:
        raise FormatError(f"Invalid mapping entry: {exc}") from exc
    return ids, values


# -- corpus models -----------------------------------------------------------------


def encode_corpus(model: CorpusModel, output_format: OutputFormat = OutputFormat.BINARY) -> bytes:
    if OutputFormat(output_format) is OutputFormat.JSON:
        payload = {
            "format": CORPUS_FORMAT,
            "version": FORMAT_VERSION,
            "scheme": model.scheme.tag,
            "n_files": model.n_files,
            "fingerprint": model.fingerprint,
            "df": [[key, value] for key, value in zip(model.ids.tolist(), model.df.tolist())],
        }
        return json.dumps(payload).encode("utf-8")

    body = b"".join(
        [
            _header(CORPUS_MAGIC, model.scheme.tag),
            _U64.pack(model.n_files),
            _U64.pack(len(model)),
            model.ids.astype(ID_DTYPE, copy=False).tobytes(),
            model.df.astype(COUNT_DTYPE, copy=False).tobytes(),
        ]
    )
    return _with_checksum(body)


def decode_corpus(data: bytes) -> CorpusModel:
    if _is_json(data):
        payload = _load_json(data, CORPUS_FORMAT)
        scheme = ChunkingScheme.from_tag(str(payload.get("scheme", "")))
        n_files = payload.get("n_files")
        if not isinstance(n_files, int):
            raise FormatError("n_files must be an integer")
        ids, df = _pairs_to_arrays(payload.get("df"), COUNT_DTYPE)
        model = _make_corpus(ids, df, n_files, scheme)
        expected = payload.get("fingerprint")
        if expected is not None and expected != model.fingerprint:
            raise FormatError("Corpus model fingerprint mismatch")
        return model

    reader = _Reader(_verified_body(data))
    scheme = ChunkingScheme.from_tag(_read_header(reader, CORPUS_MAGIC))
    (n_files,) = reader.unpack(_U64)
    (count,) = reader.unpack(_U64)
    ids = reader.array(count, ID_DTYPE)
    df = reader.array(count, COUNT_DTYPE)
    reader.finish()
    return _make_corpus(ids, df, n_files, scheme)


def _check_hash(scheme: ChunkingScheme) -> None:
    if scheme.hash_name not in HASH_FUNCTIONS:
        raise FormatError(f"Unknown hash function {scheme.hash_name!r} in {scheme.tag!r}")


def _make_corpus(ids: np.ndarray, df: np.ndarray, n_files: int, scheme: ChunkingScheme) -> CorpusModel:
    _check_hash(scheme)
    try:
        return CorpusModel(ids=ids, df=df, n_files=n_files, scheme=scheme)
    except ValueError as exc:
        raise FormatError(f"Invalid corpus model: {exc}") from exc


# -- digests -----------------------------------------------------------------------


def encode_digest(digest: Digest, output_format: OutputFormat = OutputFormat.BINARY) -> bytes:
    if OutputFormat(output_format) is OutputFormat.JSON:
        payload = {
            "format": DIGEST_FORMAT,
            "version": FORMAT_VERSION,
            "scheme": digest.scheme_tag,
            "provenance": digest.provenance,
            "weights": [
                [key, value] for key, value in zip(digest.ids.tolist(), digest.weights.tolist())
            ],
        }
        return json.dumps(payload).encode("utf-8")

    provenance = digest.provenance.encode("ascii")
    body = b"".join(
        [
            _header(DIGEST_MAGIC, digest.scheme_tag),
            _U16.pack(len(provenance)),
            provenance,
            _U64.pack(len(digest)),
            digest.ids.astype(ID_DTYPE, copy=False).tobytes(),
            digest.weights.astype(WEIGHT_DTYPE, copy=False).tobytes(),
        ]
    )
    return _with_checksum(body)


def decode_digest(data: bytes) -> Digest:
    if _is_json(data):
        payload = _load_json(data, DIGEST_FORMAT)
        tag = str(payload.get("scheme", ""))
        provenance = payload.get("provenance", "")
        if not isinstance(provenance, str):
            raise FormatError("provenance must be a string")
        ids, weights = _pairs_to_arrays(payload.get("weights"), WEIGHT_DTYPE)
        return _make_digest(ids, weights, tag, provenance)

    reader = _Reader(_verified_body(data))
    tag = _read_header(reader, DIGEST_MAGIC)
    (prov_len,) = reader.unpack(_U16)
    try:
        provenance = bytes(reader.take(prov_len)).decode("ascii")
    except UnicodeDecodeError as exc:
        raise FormatError("Provenance marker is not ASCII") from exc
    (count,) = reader.unpack(_U64)
    ids = reader.array(count, ID_DTYPE)
    weights = reader.array(count, WEIGHT_DTYPE)
    reader.finish()
    return _make_digest(ids, weights, tag, provenance)


def _make_digest(ids: np.ndarray, weights: np.ndarray, tag: str, provenance: str) -> Digest:
    chunking, weighting = split_scheme_tag(tag)
    _check_hash(chunking)
    try:
        digest = Digest(
            ids=ids, weights=weights, chunking=chunking, weighting=weighting, provenance=provenance
        )
    except ValueError as exc:
        raise FormatError(f"Invalid digest: {exc}") from exc
    if not digest.is_empty and not math.isclose(digest.norm, 1.0, abs_tol=NORM_TOLERANCE):
        raise FormatError(f"Digest is not normalized (norm {digest.norm!r})")
    return digest


# -- files -------------------------------------------------------------------------


def _write_atomic(path: Path, data: bytes) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


def save_corpus(
    model: CorpusModel, path: Path, output_format: OutputFormat = OutputFormat.BINARY
) -> None:
    _write_atomic(path, encode_corpus(model, output_format))


def load_corpus(path: Path) -> CorpusModel:
    return decode_corpus(read_bytes(path))


def save_digest(digest: Digest, path: Path, output_format: OutputFormat = OutputFormat.BINARY) -> None:
    _write_atomic(path, encode_digest(digest, output_format))


def load_digest(path: Path) -> Digest:
    return decode_digest(read_bytes(path))
