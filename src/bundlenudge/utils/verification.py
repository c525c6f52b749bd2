"""SHA-256 verification utilities for bundle integrity checking."""

import hashlib
import logging
from pathlib import Path


def compute_sha256(file_path: Path, chunk_size: int = 8192) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to file to hash
        chunk_size: Read buffer size (default 8KB for memory efficiency)

    Returns:
        64-character lowercase hex digest

    Raises:
        FileNotFoundError: If file doesn't exist
        IOError: If file read fails
    """
    logger = logging.getLogger("bundlenudge.verification")
    sha_hash = hashlib.sha256()

    try:
        with open(file_path, "rb") as f:
            while chunk := f.read(chunk_size):
                sha_hash.update(chunk)

        result = sha_hash.hexdigest()
        logger.debug(f"Computed SHA-256 for {file_path.name}: {result}")
        return result

    except FileNotFoundError:
        logger.error(f"File not found: {file_path}")
        raise
    except IOError as e:
        logger.error(f"Failed to read file {file_path}: {e}")
        raise


def verify_sha256(file_path: Path, expected_hash: str) -> bool:
    """Verify file SHA-256 hash matches expected value.

    Raises:
        ValueError: If expected_hash is not a 64-char hex string
    """
    logger = logging.getLogger("bundlenudge.verification")

    if not isinstance(expected_hash, str) or len(expected_hash) != 64:
        raise ValueError(f"Invalid SHA-256 format: {expected_hash} (must be 64-char hex)")

    expected_hash = expected_hash.lower()
    actual_hash = compute_sha256(file_path)

    match = actual_hash == expected_hash
    if match:
        logger.info(f"SHA-256 verification passed for {file_path.name}")
    else:
        logger.error(
            f"SHA-256 mismatch for {file_path.name}: "
            f"expected {expected_hash}, got {actual_hash}"
        )

    return match
