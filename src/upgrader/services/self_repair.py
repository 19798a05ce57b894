"""Detects runs interrupted by a reboot and drives the pipeline again."""

import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from upgrader.models.config import UpgradeConfig
from upgrader.models.state import PendingRebootRecord, ScriptRunningRecord
from upgrader.models.status import ErrorCode, UpgradePhase
from upgrader.services.cleanup import CleanupService
from upgrader.services.download import DownloadService
from upgrader.services.notifier import NotificationKind, Notifier
from upgrader.services.pipeline import PipelineResult, UpgradePipeline
from upgrader.services.state_manager import StateStore

BOOT_TOLERANCE = timedelta(seconds=30)
REPAIRABLE_PHASES = (UpgradePhase.SCRIPT_RUNNING, UpgradePhase.PENDING_REBOOT)


class SelfRepairCoordinator:
    """Recovers from a reboot that happened before the phase could advance."""

    def __init__(
        self,
        config: UpgradeConfig,
        state_store: StateStore,
        cleanup: CleanupService,
        downloader: DownloadService,
        pipeline: UpgradePipeline,
        notifier: Notifier,
    ):
        self.logger = logging.getLogger("upgrader.self_repair")
        self.config = config
        self.state_store = state_store
        self.cleanup = cleanup
        self.downloader = downloader
        self.pipeline = pipeline
        self.notifier = notifier

    @staticmethod
    def needs_repair(
        phase: Optional[str],
        recorded_boot: Optional[datetime],
        current_boot: datetime,
        tolerance: timedelta = BOOT_TOLERANCE,
    ) -> bool:
        """True if the machine booted after the phase was entered.

        Boot times within tolerance of each other are the same boot.
        """
        if phase not in REPAIRABLE_PHASES or recorded_boot is None:
            return False
        return current_boot - recorded_boot > tolerance

    async def repair(self, record: Union[ScriptRunningRecord, PendingRebootRecord]) -> PipelineResult:
        """Clean up, then re-run download → stage → PendingReboot.

        A failed repair writes the failure marker with the aggregated reason.
        """
        self.logger.warning(
            f"Rebooted since {record.phase} was recorded (boot {record.last_boot_time}), "
            f"starting self-repair"
        )

        # download() re-verifies the hash before reusing a kept ISO
        iso = self.config.iso_path
        keep_iso = iso.exists() and self.downloader.validate_healthy(iso)
        self.cleanup.cleanup_partial_artifacts(keep_iso=keep_iso)
        if keep_iso:
            self.logger.info(f"Keeping ISO {iso.name} for re-verification")

        result = await self.pipeline.run()
        if result.ok:
            self.logger.info("Self-repair succeeded, upgrade staged again")
            return result

        reason = (
            f"Self-repair after interrupted {record.phase} failed "
            f"({ErrorCode(result.error_code).name}): {result.reason}"
        )
        self.state_store.write_failure(reason, ErrorCode.SELF_REPAIR_FAILED)
        await self.notifier.notify(NotificationKind.FAILED, "The Windows 11 upgrade could not be completed.")
        return PipelineResult(False, ErrorCode.SELF_REPAIR_FAILED, reason)
