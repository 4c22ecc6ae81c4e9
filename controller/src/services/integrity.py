"""
Pre-run integrity verification of pipeline scripts.
"""

import hashlib
import logging
from pathlib import Path
from typing import Iterable, Optional, Union

from controller.src.models.pipeline import IntegrityRecord

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 1024 * 1024

class IntegrityError(Exception):
    """Raised when a verified file does not match its expected digest."""

    def __init__(self, path: str, expected: str, actual: Optional[str], message: str = ""):
        self.path = path
        self.expected = expected
        self.actual = actual
        if not message:
            found = actual if actual is not None else "missing file"
            message = f"Integrity check failed for {path}: expected {expected}, got {found}"
        super().__init__(message)

def file_digest(path: Union[str, Path]) -> str:
    """Return the SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(_READ_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()

def verify(records: Iterable[IntegrityRecord], root: Union[str, Path]) -> None:
    """
    Check every record against the file under `root`.
    Stops at the first mismatch and raises IntegrityError naming the path
    with both digests.
    """
    root = Path(root)
    checked = 0

    for record in records:
        target = root / record.path
        expected = record.sha256.lower()
        try:
            actual = file_digest(target)
        except OSError as e:
            logger.error(f"Integrity check failed: cannot read {record.path}: {e}")
            raise IntegrityError(record.path, expected, None)

        if actual != expected:
            logger.error(
                f"Integrity check failed for {record.path}: "
                f"expected {expected}, got {actual}"
            )
            raise IntegrityError(record.path, expected, actual)
        checked += 1

    logger.info(f"Integrity check passed for {checked} file(s)")
