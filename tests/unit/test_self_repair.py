"""Unit tests for SelfRepairCoordinator."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from upgrader.models.state import FailureRecord, PendingRebootRecord, ScriptRunningRecord
from upgrader.models.status import ErrorCode
from upgrader.services.notifier import NotificationKind
from upgrader.services.pipeline import PipelineResult
from upgrader.services.self_repair import SelfRepairCoordinator
from upgrader.services.state_manager import StateStore

# Matches the boot time reported by the mock_host fixture
BOOT_TIME = datetime(2026, 10, 1, 8, 0, 0)


@pytest.mark.unit
class TestNeedsRepair:
    """Boot-time comparison with a 30 second tolerance."""

    def test_rebooted_since_script_running(self):
        assert SelfRepairCoordinator.needs_repair(
            "ScriptRunning", BOOT_TIME, BOOT_TIME + timedelta(seconds=60)
        ) is True

    def test_same_boot_within_tolerance(self):
        assert SelfRepairCoordinator.needs_repair(
            "ScriptRunning", BOOT_TIME, BOOT_TIME + timedelta(seconds=10)
        ) is False

    def test_pending_reboot_rebooted(self):
        assert SelfRepairCoordinator.needs_repair(
            "PendingReboot", BOOT_TIME, BOOT_TIME + timedelta(hours=2)
        ) is True

    def test_identical_boot(self):
        assert SelfRepairCoordinator.needs_repair("PendingReboot", BOOT_TIME, BOOT_TIME) is False

    def test_clock_moved_backwards(self):
        assert SelfRepairCoordinator.needs_repair(
            "ScriptRunning", BOOT_TIME, BOOT_TIME - timedelta(minutes=5)
        ) is False

    @pytest.mark.parametrize("phase", [None, "UpgradeFailed"])
    def test_other_phases_never_repaired(self, phase):
        assert SelfRepairCoordinator.needs_repair(
            phase, BOOT_TIME, BOOT_TIME + timedelta(days=1)
        ) is False

    def test_missing_recorded_boot(self):
        assert SelfRepairCoordinator.needs_repair(
            "ScriptRunning", None, BOOT_TIME
        ) is False


@pytest.mark.unit
class TestRepair:
    """Test the repair path."""

    @pytest.fixture
    def store(self, config):
        return StateStore(config.state_dir)

    @pytest.fixture
    def pipeline(self):
        pipeline = MagicMock()
        pipeline.run = AsyncMock(return_value=PipelineResult(True))
        return pipeline

    @pytest.fixture
    def coordinator(self, config, store, mock_cleanup, mock_downloader, pipeline, mock_notifier):
        return SelfRepairCoordinator(
            config, store, mock_cleanup, mock_downloader, pipeline, mock_notifier
        )

    @pytest.fixture
    def interrupted(self):
        return ScriptRunningRecord(
            started_at=BOOT_TIME, last_boot_time=BOOT_TIME - timedelta(hours=1), pid=100
        )

    @pytest.mark.asyncio
    async def test_repair_keeps_healthy_iso_without_hashing(
        self, coordinator, config, interrupted, mock_cleanup, mock_downloader, pipeline
    ):
        """The multi-GB hash runs once, in the download step of the pipeline."""
        config.download_dir.mkdir(parents=True)
        config.iso_path.write_bytes(b"W" * 64)

        result = await coordinator.repair(interrupted)

        assert result.ok
        mock_cleanup.cleanup_partial_artifacts.assert_called_once_with(keep_iso=True)
        mock_downloader.validate_hash.assert_not_called()
        pipeline.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_repair_drops_undersized_iso(self, coordinator, config, interrupted, mock_cleanup, mock_downloader):
        config.download_dir.mkdir(parents=True)
        config.iso_path.write_bytes(b"W" * 8)
        mock_downloader.validate_healthy.return_value = False

        await coordinator.repair(interrupted)

        mock_downloader.validate_healthy.assert_called_once_with(config.iso_path)
        mock_cleanup.cleanup_partial_artifacts.assert_called_once_with(keep_iso=False)

    @pytest.mark.asyncio
    async def test_repair_without_iso(self, coordinator, interrupted, mock_cleanup, mock_downloader):
        await coordinator.repair(interrupted)

        mock_downloader.validate_healthy.assert_not_called()
        mock_cleanup.cleanup_partial_artifacts.assert_called_once_with(keep_iso=False)

    @pytest.mark.asyncio
    async def test_failed_repair_writes_failure(self, coordinator, store, pipeline, mock_notifier):
        pipeline.run.return_value = PipelineResult(
            False, ErrorCode.STAGING_FAILED, "0xC1900101 Driver error during upgrade"
        )
        record = PendingRebootRecord(staged_at=BOOT_TIME, last_boot_time=BOOT_TIME)

        result = await coordinator.repair(record)

        assert result.error_code == ErrorCode.SELF_REPAIR_FAILED
        failure = store.read_state()
        assert isinstance(failure, FailureRecord)
        assert failure.error_code == ErrorCode.SELF_REPAIR_FAILED
        assert failure.reason == (
            "Self-repair after interrupted PendingReboot failed (STAGING_FAILED): "
            "0xC1900101 Driver error during upgrade"
        )
        assert mock_notifier.notify.await_args.args[0] == NotificationKind.FAILED
