"""Digest computation and checksum sidecar verification."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict


class ChecksumAlgorithm(str, Enum):
    """Digest algorithms understood in repositories, with their sidecar suffix."""

    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA512 = "sha512"

    @property
    def suffix(self) -> str:
        return f".{self.value}"

    @property
    def hex_length(self) -> int:
        return hashlib.new(self.value).digest_size * 2


# Sidecars looked for next to remote files, strongest first.
VERIFY_ALGORITHMS: tuple[ChecksumAlgorithm, ...] = (
    ChecksumAlgorithm.SHA256,
    ChecksumAlgorithm.SHA1,
    ChecksumAlgorithm.MD5,
)

# Sidecars written next to files in the local artifact store.
STORE_ALGORITHMS: tuple[ChecksumAlgorithm, ...] = (
    ChecksumAlgorithm.SHA1,
    ChecksumAlgorithm.SHA256,
)

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
# e.g. "SHA256 (foo.jar) = 0a1b..." as written by BSD tools
_BSD_RE = re.compile(r"^\s*[A-Za-z0-9-]+\s*\(.*\)\s*=\s*([0-9a-fA-F]+)\s*$")


class Checksum(BaseModel):
    """A digest value tagged with the algorithm that produced it."""

    model_config = ConfigDict(frozen=True)

    algorithm: ChecksumAlgorithm
    hex_digest: str

    def __str__(self) -> str:
        return f"{self.algorithm.value}:{self.hex_digest}"


def digest(data: bytes, algorithm: ChecksumAlgorithm = ChecksumAlgorithm.SHA256) -> Checksum:
    h = hashlib.new(algorithm.value)
    h.update(data)
    return Checksum(algorithm=algorithm, hex_digest=h.hexdigest())


def digests(data: bytes, algorithms: Iterable[ChecksumAlgorithm]) -> dict[ChecksumAlgorithm, Checksum]:
    """Compute several digests of the same bytes."""
    return {alg: digest(data, alg) for alg in algorithms}


def file_digest(
    path: Path,
    algorithm: ChecksumAlgorithm = ChecksumAlgorithm.SHA256,
    chunk_size: int = 1024 * 1024,
) -> Checksum:
    h = hashlib.new(algorithm.value)
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return Checksum(algorithm=algorithm, hex_digest=h.hexdigest())


def parse_checksum_file(text: str | None) -> str | None:
    """Extract the hex digest from the body of a checksum sidecar file.

    Accepted forms:
        - ``<hex>``
        - ``<hex>  <filename>`` (sha1sum / md5sum style)
        - ``ALG (<filename>) = <hex>`` (BSD style)

    Returns:
        The lower-cased hex digest, or None when the body is malformed.
    """
    if text is None:
        return None
    body = text.strip()
    if not body:
        return None

    bsd = _BSD_RE.match(body.splitlines()[0])
    if bsd:
        return bsd.group(1).lower()

    token = body.split()[0]
    if not _HEX_RE.match(token):
        return None
    return token.lower()


def format_checksum_file(checksum: Checksum) -> str:
    return checksum.hex_digest + "\n"


def verify(data: bytes, expected_checksum_file: str | None, algorithm: ChecksumAlgorithm) -> bool:
    """Check bytes against a sidecar body. Mismatch or malformed sidecar gives False."""
    expected = parse_checksum_file(expected_checksum_file)
    if expected is None or len(expected) != algorithm.hex_length:
        return False
    return digest(data, algorithm).hex_digest == expected


def content_equals(a: bytes, b: bytes) -> bool:
    """Byte-exact comparison. Not constant-time; this is not a security boundary."""
    return a == b
