"""Staging executor: mount the ISO, run Windows Setup, classify the result."""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil

from upgrader.models.catalog import CORRUPT_MEDIA_CODE, ErrorCatalog, format_code
from upgrader.models.config import UpgradeConfig
from upgrader.models.status import ErrorCode
from upgrader.services.download import DownloadService
from upgrader.services.host import HostPlatform
from upgrader.services.repair_actions import RepairActions
from upgrader.utils.verification import delete_with_sidecar

SETUP_EXE = "setup.exe"
NO_REBOOT_FLAG = "/noreboot"
# CPU seconds that count as "setup is still doing something"
CPU_ACTIVITY_EPSILON = 0.5


def build_setup_arguments(config: UpgradeConfig) -> list[str]:
    """Windows Setup command line for an unattended upgrade.

    /noreboot is always passed: setup must never restart the machine before
    the post-reboot tasks are registered. Rebooting is the orchestrator's job.
    """
    return [
        "/auto", "upgrade",
        "/quiet",
        "/eula", "accept",
        "/dynamicupdate", "enable" if config.dynamic_update else "disable",
        "/copylogs", str(config.setup_log_dir),
        "/compat", "ignorewarning",
        "/showoobe", "none",
        "/telemetry", "disable",
        NO_REBOOT_FLAG,
    ]


@dataclass(frozen=True)
class StageResult:
    """Final outcome of staging."""

    ok: bool
    exit_code: Optional[int] = None
    error_code: ErrorCode = ErrorCode.SUCCESS
    reason: str = ""
    attempts: int = 0


@dataclass(frozen=True)
class _AttemptResult:
    exit_code: Optional[int] = None
    stalled: bool = False
    setup_missing: bool = False
    mount_error: Optional[str] = None


class StagingExecutor:
    """Runs Windows Setup up to staging_attempts times with catalog-driven repair."""

    def __init__(
        self,
        config: UpgradeConfig,
        host: HostPlatform,
        catalog: ErrorCatalog,
        repair_actions: RepairActions,
        downloader: DownloadService,
    ):
        self.logger = logging.getLogger("upgrader.staging")
        self.config = config
        self.host = host
        self.catalog = catalog
        self.repair_actions = repair_actions
        self.downloader = downloader

    async def stage(self, artifact: Path) -> StageResult:
        """Stage the upgrade from a validated ISO.

        Raises:
            DownloadError: If the ISO had to be fetched again and that failed
        """
        attempts = self.config.staging_attempts
        repaired_codes: set[int] = set()
        attempt = 0

        while attempt < attempts:
            attempt += 1
            if not artifact.exists():
                self.logger.info("ISO missing before staging attempt, downloading again")
                artifact = await self.downloader.download()

            self.logger.info(f"Staging attempt {attempt}/{attempts} from {artifact}")
            run = await self._attempt(artifact)

            if run.mount_error:
                return self._failure(ErrorCode.STAGING_FAILED, run.mount_error, attempt)

            if run.setup_missing:
                delete_with_sidecar(artifact)
                return self._failure(
                    ErrorCode.SETUP_NOT_FOUND,
                    f"{SETUP_EXE} not found on mounted {artifact.name}; ISO deleted for re-download",
                    attempt,
                )

            if run.stalled:
                return self._failure(
                    ErrorCode.STAGING_STALLED,
                    f"Windows Setup showed no progress for "
                    f"{self.config.staging_stall_timeout_seconds / 60:.0f} minutes and was terminated",
                    attempt,
                )

            code = run.exit_code
            if code in self.config.success_exit_codes:
                self.logger.info(f"Windows Setup finished with success code {code}")
                return StageResult(ok=True, exit_code=code, attempts=attempt)

            entry = self.catalog.lookup(code)
            message = self.catalog.describe(code)
            self.logger.error(f"Windows Setup failed: {message}")

            if code == CORRUPT_MEDIA_CODE:
                delete_with_sidecar(artifact)
                self.logger.warning(f"Deleted {artifact.name} and cached hash (corrupt media)")

            if entry is not None and entry.escalate:
                return self._failure(
                    ErrorCode.STAGING_ESCALATED,
                    f"{message}. Not retried: requires technician review",
                    attempt,
                    exit_code=code,
                )

            if entry is None or not entry.recoverable or entry.repair is None:
                return self._failure(ErrorCode.STAGING_FAILED, message, attempt, exit_code=code)

            if code in repaired_codes:
                return self._failure(
                    ErrorCode.STAGING_ESCALATED,
                    f"{message}. Repeated after repair '{entry.repair.value}', escalating",
                    attempt,
                    exit_code=code,
                )

            repaired = await self.repair_actions.run(entry.repair)
            repaired_codes.add(code)
            if not repaired:
                return self._failure(
                    ErrorCode.STAGING_FAILED,
                    f"{message}. Repair '{entry.repair.value}' failed",
                    attempt,
                    exit_code=code,
                )
            if attempt >= attempts:
                return self._failure(
                    ErrorCode.STAGING_FAILED,
                    f"{message}. Repair '{entry.repair.value}' ran but no staging attempts remain",
                    attempt,
                    exit_code=code,
                )
            self.logger.info(f"Repair '{entry.repair.value}' done, retrying staging")

        return self._failure(ErrorCode.STAGING_FAILED, "Staging attempts exhausted", attempt)

    async def _attempt(self, artifact: Path) -> _AttemptResult:
        """Mount, run setup, always dismount."""
        try:
            try:
                drive = await self.host.mount_iso(artifact)
            except RuntimeError as e:
                self.logger.error(f"Could not mount {artifact}: {e}")
                return _AttemptResult(mount_error=str(e))

            setup = Path(drive) / SETUP_EXE
            if not setup.exists():
                self.logger.error(f"{setup} does not exist")
                return _AttemptResult(setup_missing=True)

            self.config.setup_log_dir.mkdir(parents=True, exist_ok=True)
            args = [str(setup), *build_setup_arguments(self.config)]
            self.logger.info(f"Launching: {' '.join(args)}")
            process = await asyncio.create_subprocess_exec(*args)

            exit_code = await self._wait_with_watchdog(process)
            if exit_code is None:
                return _AttemptResult(stalled=True)
            self.logger.info(f"Windows Setup exited with {format_code(exit_code & 0xFFFFFFFF)}")
            return _AttemptResult(exit_code=exit_code & 0xFFFFFFFF)
        finally:
            await self.host.dismount_iso(artifact)

    async def _wait_with_watchdog(self, process) -> Optional[int]:
        """Wait for setup, killing it after the stall window without activity.

        Returns:
            Exit code, or None if setup was killed as stalled
        """
        poll = self.config.staging_poll_interval_seconds
        stall = self.config.staging_stall_timeout_seconds
        last_activity = time.monotonic()
        last_progress = self.host.setup_progress()
        last_cpu = self._cpu_seconds(process.pid)

        while True:
            try:
                return await asyncio.wait_for(process.wait(), timeout=poll)
            except asyncio.TimeoutError:
                pass

            progress = self.host.setup_progress()
            cpu = self._cpu_seconds(process.pid)
            if progress != last_progress:
                self.logger.info(f"Setup progress: {progress}%")
                last_activity = time.monotonic()
            elif cpu is not None and last_cpu is not None and cpu - last_cpu > CPU_ACTIVITY_EPSILON:
                last_activity = time.monotonic()
            last_progress, last_cpu = progress, cpu

            idle = time.monotonic() - last_activity
            if idle > stall:
                self.logger.error(f"Setup idle for {idle:.0f}s, terminating")
                self._kill_tree(process)
                await process.wait()
                return None

    def _cpu_seconds(self, pid: int) -> Optional[float]:
        """CPU time of setup and its children (SetupHost.exe does the work)."""
        try:
            root = psutil.Process(pid)
            total = 0.0
            for proc in [root, *root.children(recursive=True)]:
                times = proc.cpu_times()
                total += times.user + times.system
            return total
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def _kill_tree(self, process) -> None:
        try:
            for child in psutil.Process(process.pid).children(recursive=True):
                child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            self.logger.warning(f"Could not kill setup children: {e}")
        try:
            process.kill()
        except ProcessLookupError:
            self.logger.debug("Setup already exited")

    def _failure(
        self,
        error_code: ErrorCode,
        reason: str,
        attempts: int,
        exit_code: Optional[int] = None,
    ) -> StageResult:
        self.logger.error(f"Staging failed ({error_code.name}): {reason}")
        return StageResult(
            ok=False,
            exit_code=exit_code,
            error_code=error_code,
            reason=reason,
            attempts=attempts,
        )
