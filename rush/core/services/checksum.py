"""
Checksum verification.

The digest algorithm comes from the registry entry (``sha256:…``,
``sha512:…``), so the registry can move to a stronger digest without a
code change. A mismatch is always fatal.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from pathlib import Path

from rush.core.errors import ChecksumError, ChecksumMismatch
from rush.core.models.registry import Checksum

logger = logging.getLogger(__name__)

_CHUNK = 64 * 1024


def is_supported(algorithm: str) -> bool:
    return algorithm.lower() in hashlib.algorithms_available


def compute(data: bytes | Path, algorithm: str = "sha256") -> str:
    """Hex digest of ``data`` (bytes, or a file read in chunks).

    Raises:
        ChecksumError: If the algorithm is unknown to ``hashlib``.
    """
    try:
        h = hashlib.new(algorithm.lower())
    except ValueError as e:
        raise ChecksumError(f"unsupported checksum algorithm '{algorithm}'") from e

    if isinstance(data, Path):
        with data.open("rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK), b""):
                h.update(chunk)
    else:
        h.update(data)

    # shake_* digests need an explicit length
    if h.name.startswith("shake_"):
        return h.hexdigest(32)  # type: ignore[call-arg]
    return h.hexdigest()


def checksum_of(data: bytes | Path, algorithm: str = "sha256") -> Checksum:
    return Checksum(algorithm=algorithm.lower(), digest=compute(data, algorithm))


def verify(data: bytes | Path, expected: Checksum, *, package: str | None = None) -> None:
    """Raise ``ChecksumMismatch`` unless ``data`` hashes to ``expected``."""
    actual = compute(data, expected.algorithm)
    if not hmac.compare_digest(actual, expected.digest.lower()):
        logger.warning("Checksum mismatch for %s: expected %s, got %s", package or data, expected, actual)
        raise ChecksumMismatch(str(expected), f"{expected.algorithm}:{actual}", package=package)
    logger.debug("Checksum ok (%s) for %s", expected.algorithm, package or data)
