"""Content-addressed identity for the artifact under certification."""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from .errors import IdentityError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def sha256_bytes(data: bytes) -> str:
    """Compute the lowercase hex sha256 of in-memory bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """
    Stream a file through sha256 and return the lowercase hex digest.

    Args:
        path: Path to an existing, readable regular file

    Returns:
        64-character hex digest

    Raises:
        IdentityError: If the path is not a regular file, cannot be opened,
            or a read fails part way through. No partial digest is returned.
    """
    path = Path(path)
    if not path.is_file():
        raise IdentityError(f"artifact not found or not a regular file: {path}")

    hasher = hashlib.sha256()
    try:
        with path.open("rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                hasher.update(chunk)
    except OSError as e:
        raise IdentityError(f"cannot read artifact {path}: {e}") from e

    digest = hasher.hexdigest()
    logger.debug("sha256(%s) = %s", path, digest)
    return digest
