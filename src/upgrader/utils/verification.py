"""SHA-256 verification utilities for ISO integrity checking."""

import hashlib
from pathlib import Path
from typing import Optional
import logging


def compute_sha256(file_path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to file to hash
        chunk_size: Read buffer size (default 1MB, ISOs are several GB)

    Returns:
        64-character lowercase hex digest

    Raises:
        FileNotFoundError: If file doesn't exist
        IOError: If file read fails
    """
    logger = logging.getLogger("upgrader.verification")
    sha256 = hashlib.sha256()

    try:
        with open(file_path, "rb") as f:
            while chunk := f.read(chunk_size):
                sha256.update(chunk)

        result = sha256.hexdigest()
        logger.debug(f"Computed SHA-256 for {file_path.name}: {result}")
        return result

    except FileNotFoundError:
        logger.error(f"File not found: {file_path}")
        raise
    except IOError as e:
        logger.error(f"Failed to read file {file_path}: {e}")
        raise


def sidecar_path(file_path: Path) -> Path:
    """Path of the cached-digest sidecar for a file."""
    return file_path.with_name(file_path.name + ".sha256")


def read_cached_hash(file_path: Path) -> Optional[str]:
    """Read the cached digest next to a file, if present and well formed."""
    logger = logging.getLogger("upgrader.verification")
    sidecar = sidecar_path(file_path)
    if not sidecar.exists():
        return None

    value = sidecar.read_text(encoding="utf-8").strip().split()[0:1]
    digest = value[0].lower() if value else ""
    if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        logger.warning(f"Ignoring malformed hash sidecar {sidecar.name}")
        return None
    return digest


def write_cached_hash(file_path: Path, digest: str) -> None:
    """Persist a digest next to a file (temp + rename)."""
    sidecar = sidecar_path(file_path)
    tmp = sidecar.with_name(sidecar.name + ".tmp")
    tmp.write_text(f"{digest.lower()}  {file_path.name}\n", encoding="utf-8")
    tmp.replace(sidecar)


def delete_with_sidecar(file_path: Path) -> None:
    """Remove a file and its cached digest."""
    file_path.unlink(missing_ok=True)
    sidecar_path(file_path).unlink(missing_ok=True)


def verify_sha256(file_path: Path, expected_sha256: str) -> bool:
    """Verify file SHA-256 matches expected value.

    Args:
        file_path: Path to file to verify
        expected_sha256: Expected digest (64-char hex string)

    Returns:
        True if the digest matches, False otherwise

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If expected_sha256 format is invalid
    """
    logger = logging.getLogger("upgrader.verification")

    if not isinstance(expected_sha256, str) or len(expected_sha256) != 64:
        raise ValueError(
            f"Invalid SHA-256 format: {expected_sha256} (must be 64-char hex)"
        )

    expected_sha256 = expected_sha256.lower()
    actual = compute_sha256(file_path)

    match = actual == expected_sha256
    if match:
        logger.info(f"SHA-256 verification passed for {file_path.name}")
    else:
        logger.error(
            f"SHA-256 mismatch for {file_path.name}: "
            f"expected {expected_sha256}, got {actual}"
        )

    return match
