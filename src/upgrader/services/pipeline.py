"""Gate → download → stage → PendingReboot, shared by fresh runs and self-repair."""

import logging
from dataclasses import dataclass
from datetime import datetime

from upgrader.models.config import UpgradeConfig
from upgrader.models.state import PendingRebootRecord
from upgrader.models.status import ErrorCode, ReminderMode
from upgrader.services.compatibility import CompatibilityGate
from upgrader.services.download import DownloadError, DownloadService
from upgrader.services.host import HostPlatform
from upgrader.services.notifier import NotificationKind, Notifier
from upgrader.services.scheduler import SchedulerService
from upgrader.services.staging import StagingExecutor
from upgrader.services.state_manager import StateStore


@dataclass(frozen=True)
class PipelineResult:
    ok: bool
    error_code: ErrorCode = ErrorCode.SUCCESS
    reason: str = ""
    reboot_due: bool = False


class UpgradePipeline:
    """One full staging pass. Never writes the failure marker itself."""

    def __init__(
        self,
        config: UpgradeConfig,
        state_store: StateStore,
        host: HostPlatform,
        gate: CompatibilityGate,
        downloader: DownloadService,
        stager: StagingExecutor,
        scheduler: SchedulerService,
        notifier: Notifier,
    ):
        self.logger = logging.getLogger("upgrader.pipeline")
        self.config = config
        self.state_store = state_store
        self.host = host
        self.gate = gate
        self.downloader = downloader
        self.stager = stager
        self.scheduler = scheduler
        self.notifier = notifier

    async def run(self) -> PipelineResult:
        """Check hardware, fetch the ISO, stage it and record PendingReboot."""
        hardware = await self.gate.check_hardware_requirements()
        if not hardware.ok:
            return PipelineResult(False, hardware.error_code, hardware.reason)

        try:
            iso = await self.downloader.download()
            result = await self.stager.stage(iso)
        except DownloadError as e:
            self.logger.error(f"Download failed: {e}")
            return PipelineResult(False, e.error_code, f"ISO download failed: {e}")

        if not result.ok:
            return PipelineResult(False, result.error_code, result.reason)

        await self.mark_pending_reboot()
        await self.notifier.notify(
            NotificationKind.STAGED,
            "The Windows 11 upgrade is ready. Please restart your computer to finish.",
        )
        return PipelineResult(True, reboot_due=self.config.auto_reboot)

    async def mark_pending_reboot(self) -> PendingRebootRecord:
        """Record staging success, then register reminders and validation."""
        record = PendingRebootRecord(
            staged_at=datetime.now(),
            last_boot_time=self.host.current_boot_time(),
            auto_reboot=self.config.auto_reboot,
        )
        record = self.state_store.write_state(record)

        mode = await self.ensure_triggers()
        if mode != record.reminder_mode:
            record = self.state_store.write_state(record.model_copy(update={"reminder_mode": mode}))
        return record

    async def ensure_triggers(self) -> ReminderMode:
        """(Re-)register reminders and the post-reboot validation trigger.

        Registration problems degrade the run but do not fail a staged upgrade.
        """
        try:
            mode = await self.scheduler.register_reminders()
        except RuntimeError as e:
            self.logger.error(f"Reminder registration failed, continuing without reminders: {e}")
            mode = ReminderMode.NONE

        try:
            await self.scheduler.register_post_reboot_validation()
        except RuntimeError as e:
            self.logger.error(f"Post-reboot validation could not be registered: {e}")
        return mode
