"""Download service with resumable HTTP transfer, retries and ISO validation."""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import aiofiles
import httpx

from upgrader.models.config import UpgradeConfig
from upgrader.models.status import ErrorCode
from upgrader.services.compatibility import CompatibilityGate
from upgrader.utils.verification import (
    compute_sha256,
    delete_with_sidecar,
    read_cached_hash,
    verify_sha256,
    write_cached_hash,
)


class DownloadErrorKind(str, Enum):
    TRANSPORT_UNAVAILABLE = "transport unavailable"
    VALIDATION_FAILED = "validation failed"
    HASH_MISMATCH = "hash mismatch"
    INSUFFICIENT_DISK = "insufficient disk space"


_ERROR_CODES = {
    DownloadErrorKind.TRANSPORT_UNAVAILABLE: ErrorCode.DOWNLOAD_TRANSPORT,
    DownloadErrorKind.VALIDATION_FAILED: ErrorCode.DOWNLOAD_VALIDATION,
    DownloadErrorKind.HASH_MISMATCH: ErrorCode.DOWNLOAD_HASH,
    DownloadErrorKind.INSUFFICIENT_DISK: ErrorCode.DISK_SPACE,
}


class DownloadError(Exception):
    """Terminal download failure of a specific kind."""

    def __init__(self, kind: DownloadErrorKind, reason: str):
        super().__init__(f"{kind.value}: {reason}")
        self.kind = kind
        self.reason = reason

    @property
    def error_code(self) -> ErrorCode:
        return _ERROR_CODES[self.kind]


class DownloadStalledError(Exception):
    """No bytes arrived within the stall window."""


class DownloadService:
    """Fetches the ISO with resume, stall detection, fallback and retries."""

    PROGRESS_STEP = 5

    def __init__(self, config: UpgradeConfig, gate: CompatibilityGate):
        """Initialize download service.

        Args:
            config: Upgrade configuration (URL, hash, sizes, bounds)
            gate: Used to re-check disk space before every attempt
        """
        self.logger = logging.getLogger("upgrader.download")
        self.config = config
        self.gate = gate
        self.chunk_size = 1024 * 1024  # 1MB chunks
        self.stall_timeout = config.download_stall_timeout_seconds

    async def download(self, url: Optional[str] = None, dest: Optional[Path] = None) -> Path:
        """Make a validated ISO available at dest, reusing a good existing copy.

        Args:
            url: Source URL (defaults to config.iso_url)
            dest: Destination path (defaults to config.iso_path)

        Returns:
            Path to the validated ISO

        Raises:
            DownloadError: After the final failed attempt, with the last failure kind
        """
        url = url or self.config.iso_url
        dest = dest or self.config.iso_path
        dest.parent.mkdir(parents=True, exist_ok=True)

        if dest.exists():
            if self.validate_healthy(dest) and self.validate_hash(dest, allow_cache_new_hash=False):
                self.logger.info(f"Reusing existing ISO {dest}")
                return dest
            self.logger.warning(f"Existing {dest.name} is not reusable, deleting it")
            dest.unlink(missing_ok=True)

        attempts = self.config.download_attempts
        last_error = DownloadError(
            DownloadErrorKind.TRANSPORT_UNAVAILABLE, "no download attempt was made"
        )

        for attempt in range(1, attempts + 1):
            disk = await self.gate.ensure_disk_space(
                self.config.min_free_space_gb, attempt_cleanup=True
            )
            if not disk.ok:
                raise DownloadError(DownloadErrorKind.INSUFFICIENT_DISK, disk.reason)

            self.logger.info(f"Download attempt {attempt}/{attempts}: {url}")
            try:
                await self._transfer(url, dest)
            except (httpx.HTTPError, OSError, DownloadStalledError) as e:
                self.logger.error(f"Attempt {attempt} transfer failed: {e}", exc_info=True)
                last_error = DownloadError(DownloadErrorKind.TRANSPORT_UNAVAILABLE, str(e))
                dest.unlink(missing_ok=True)
                continue

            if not self.validate_healthy(dest):
                size = dest.stat().st_size if dest.exists() else 0
                last_error = DownloadError(
                    DownloadErrorKind.VALIDATION_FAILED,
                    f"file is {size} bytes, expected at least {self.config.min_iso_size_bytes}",
                )
                self.logger.error(f"Attempt {attempt}: {last_error}")
                dest.unlink(missing_ok=True)
                continue

            if not self.validate_hash(dest, allow_cache_new_hash=True):
                last_error = DownloadError(
                    DownloadErrorKind.HASH_MISMATCH,
                    f"SHA-256 of {dest.name} does not match the expected hash",
                )
                self.logger.error(f"Attempt {attempt}: {last_error}")
                dest.unlink(missing_ok=True)
                continue

            self.logger.info(f"Download complete and verified: {dest}")
            return dest

        raise DownloadError(
            last_error.kind,
            f"DOWNLOAD_FAILED after {attempts} attempts, last error: {last_error.reason}",
        )

    def validate_healthy(self, path: Path) -> bool:
        """Size check that rejects HTML error pages saved as the ISO."""
        if not path.exists():
            return False
        size = path.stat().st_size
        healthy = size >= self.config.min_iso_size_bytes
        if not healthy:
            self.logger.warning(
                f"{path.name} is {size} bytes (< {self.config.min_iso_size_bytes})"
            )
        return healthy

    def validate_hash(self, path: Path, allow_cache_new_hash: bool) -> bool:
        """Check path against the configured hash, else the cached sidecar hash.

        With neither available and allow_cache_new_hash set, the file's own
        digest is cached and trusted (trust on first use). That means a
        tampered first download would be trusted for later runs; configure
        iso_sha256 to avoid it.
        """
        expected = self.config.iso_sha256 or read_cached_hash(path)
        if expected:
            if not verify_sha256(path, expected):
                return False
            if read_cached_hash(path) != expected:
                write_cached_hash(path, expected)
            return True

        if not allow_cache_new_hash:
            self.logger.warning(f"No reference hash for {path.name}, not trusting it")
            return False

        digest = compute_sha256(path)
        write_cached_hash(path, digest)
        self.logger.warning(
            f"No iso_sha256 configured; trusting first download of {path.name} "
            f"and caching SHA-256 {digest}"
        )
        return True

    def _client_timeout(self) -> httpx.Timeout:
        """Read timeout outlasts the stall window so the watchdog decides."""
        return httpx.Timeout(
            connect=30.0, read=self.stall_timeout + 30.0, write=60.0, pool=60.0
        )

    async def _transfer(self, url: str, dest: Path) -> None:
        """Primary resumable transfer with fallback to a direct transfer on stall.

        Other HTTP errors propagate and leave the .part file for the next
        attempt to resume.
        """
        part = dest.with_name(dest.name + ".part")
        try:
            await self._resumable_transfer(url, part)
        except DownloadStalledError as e:
            self.logger.warning(f"{e}, falling back to direct transfer")
            part.unlink(missing_ok=True)
            try:
                await self._direct_transfer(url, part)
            except Exception:
                part.unlink(missing_ok=True)
                raise
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 416:
                self.logger.warning("Server rejected the resume range, discarding partial file")
                part.unlink(missing_ok=True)
            raise
        part.replace(dest)

    async def _resumable_transfer(self, url: str, part: Path) -> None:
        """Streamed download into part, resuming via Range and watching for stalls.

        Raises:
            DownloadStalledError: If no bytes arrive for stall_timeout seconds
            httpx.HTTPError: On HTTP or network errors
        """
        existing = part.stat().st_size if part.exists() else 0
        headers = {"Range": f"bytes={existing}-"} if existing else {}

        async with httpx.AsyncClient(
            timeout=self._client_timeout(), follow_redirects=True
        ) as client:
            async with client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()

                if existing and response.status_code != 206:
                    self.logger.info("Server ignored Range request, restarting from byte 0")
                    existing = 0
                elif existing:
                    self.logger.info(f"Resuming download from byte {existing}")

                length = int(response.headers.get("Content-Length", 0) or 0)
                total = existing + length if length else 0

                mode = "ab" if existing else "wb"
                received = existing
                last_progress = -self.PROGRESS_STEP
                chunks = response.aiter_bytes(chunk_size=self.chunk_size)

                async with aiofiles.open(part, mode) as f:
                    while True:
                        try:
                            chunk = await asyncio.wait_for(
                                chunks.__anext__(), timeout=self.stall_timeout
                            )
                        except StopAsyncIteration:
                            break
                        except asyncio.TimeoutError:
                            raise DownloadStalledError(
                                f"DOWNLOAD_STALLED: no data for {self.stall_timeout:.0f}s "
                                f"at byte {received}"
                            )

                        await f.write(chunk)
                        received += len(chunk)

                        if total:
                            current_progress = int(received * 100 / total)
                            if current_progress >= last_progress + self.PROGRESS_STEP:
                                last_progress = current_progress
                                self.logger.info(
                                    f"Download progress: {current_progress}% "
                                    f"({received}/{total} bytes)"
                                )

        self.logger.info(f"Downloaded {received} bytes")

    async def _direct_transfer(self, url: str, part: Path) -> None:
        """Plain full download without resume; only the read timeout bounds a stall."""
        self.logger.info(f"Direct transfer: {url}")
        received = 0
        async with httpx.AsyncClient(
            timeout=self._client_timeout(), follow_redirects=True
        ) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                async with aiofiles.open(part, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=self.chunk_size):
                        await f.write(chunk)
                        received += len(chunk)
        self.logger.info(f"Direct transfer received {received} bytes")
