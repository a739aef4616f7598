"""
Verifier — the integrity gate between fetch and build.

The descriptor's checksum is the only trust anchor for a pinned
artifact, so a mismatch is always fatal. Head installs skip this step
and rely on the source-control transport instead.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from pathlib import Path

from formulary.core.errors import ChecksumMismatch, MalformedDescriptor
from formulary.core.models.formula import CHECKSUM_LENGTHS

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 8192


def file_digest(path: Path, algorithm: str = "sha256") -> str:
    """Hex digest of a file, read in chunks."""
    if algorithm not in CHECKSUM_LENGTHS:
        raise MalformedDescriptor(f"Unsupported checksum algorithm {algorithm!r}")
    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def sha256_file(path: Path) -> str:
    return file_digest(path, "sha256")


def verify(path: Path, expected: str, algorithm: str = "sha256") -> str:
    """Check ``path`` against the expected digest.

    Returns:
        The actual (lowercase hex) digest.

    Raises:
        ChecksumMismatch: The digest differs, or the file is empty.
        MalformedDescriptor: Unsupported algorithm.
    """
    actual = file_digest(path, algorithm)

    if path.stat().st_size == 0:
        raise ChecksumMismatch(
            expected=expected,
            actual=actual,
            path=str(path),
            reason=f"Downloaded artifact {path.name} is empty",
        )

    if not hmac.compare_digest(actual.lower().encode(), expected.strip().lower().encode()):
        raise ChecksumMismatch(expected=expected, actual=actual, path=str(path))

    logger.debug("%s %s OK", algorithm, path.name)
    return actual
