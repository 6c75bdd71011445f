from __future__ import annotations

import hashlib
import re
from enum import Enum
from pathlib import Path

from .errors import InvalidHashError

CHUNK_SIZE = 1024 * 1024

_HEX_RE = re.compile(r"^[0-9a-f]+$")


class HashAlgorithm(str, Enum):
    SHA256 = "sha256"
    SHA512 = "sha512"

    @property
    def hex_length(self) -> int:
        return 64 if self is HashAlgorithm.SHA256 else 128


def new_hasher(algorithm: HashAlgorithm):
    return hashlib.new(HashAlgorithm(algorithm).value)


def format_hash(hex_digest: str, algorithm: HashAlgorithm) -> str:
    """Prefix an upstream-supplied digest with its algorithm name."""
    return f"{HashAlgorithm(algorithm).value}:{hex_digest.strip().lower()}"


def compute_hash(data: bytes, algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> str:
    hasher = new_hasher(algorithm)
    hasher.update(data)
    return format_hash(hasher.hexdigest(), algorithm)


def parse_hash(value: str) -> tuple[HashAlgorithm, str]:
    algo, sep, hex_digest = value.partition(":")
    if not sep:
        raise InvalidHashError(f"Hash '{value}' is missing an algorithm prefix")
    try:
        algorithm = HashAlgorithm(algo)
    except ValueError as exc:
        raise InvalidHashError(f"Unsupported hash algorithm: {algo}") from exc
    if len(hex_digest) != algorithm.hex_length or not _HEX_RE.match(hex_digest):
        raise InvalidHashError(f"Malformed {algorithm.value} digest: '{hex_digest}'")
    return algorithm, hex_digest


def hash_file(path: Path, algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> str:
    hasher = new_hasher(algorithm)
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return format_hash(hasher.hexdigest(), algorithm)


def verify_file(path: Path, expected: str) -> bool:
    """Return True when ``path`` hashes to ``expected`` using the same algorithm."""
    algorithm, _ = parse_hash(expected)
    return hash_file(path, algorithm) == expected
