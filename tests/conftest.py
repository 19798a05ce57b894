"""Global pytest fixtures and configuration."""

import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from upgrader.models.config import UpgradeConfig  # noqa: E402
from upgrader.models.status import ReminderMode  # noqa: E402
from upgrader.services.host import AgentProbe  # noqa: E402
from upgrader.services.process import CommandResult  # noqa: E402
from upgrader.services.staging import StageResult  # noqa: E402

BOOT_TIME = datetime(2026, 10, 1, 8, 0, 0)


@pytest.fixture
def config(tmp_path):
    """Small, fast configuration rooted in tmp_path."""
    return UpgradeConfig(
        state_dir=tmp_path / "state",
        download_dir=tmp_path / "media",
        setup_log_dir=tmp_path / "setup-logs",
        log_file=tmp_path / "logs" / "upgrader.log",
        min_iso_size_bytes=16,
        min_free_space_gb=20,
        notifier_command='"C:\\Tools\\notify.exe" /toast',
        entry_command='"C:\\Python\\python.exe" -m upgrader.main',
        staging_poll_interval_seconds=0.01,
        staging_stall_timeout_seconds=0.05,
        download_stall_timeout_seconds=0.05,
    )


@pytest.fixture
def mock_host():
    """HostPlatform double describing a compatible, idle Windows 10 machine."""
    host = MagicMock()
    host.current_boot_time = MagicMock(return_value=BOOT_TIME)
    host.current_build = MagicMock(return_value=19045)
    host.is_target_os = MagicMock(return_value=False)
    host.has_interactive_session = MagicMock(return_value=True)
    host.system_drive = MagicMock(return_value=Path("C:\\"))
    host.free_space_gb = MagicMock(return_value=100.0)
    host.total_memory_gb = MagicMock(return_value=16.0)
    host.is_64bit = MagicMock(return_value=True)
    host.tpm_version = AsyncMock(return_value="2.0, 0, 1.38")
    host.secure_boot_enabled = AsyncMock(return_value=True)
    host.security_agent = AsyncMock(return_value=AgentProbe(found=False))
    host.setup_progress = MagicMock(return_value=None)
    host.mount_iso = AsyncMock(return_value="E:\\")
    host.dismount_iso = AsyncMock()
    host.reboot = AsyncMock()
    return host


@pytest.fixture
def mock_process_manager():
    """ProcessManager double where every command succeeds."""
    manager = MagicMock()
    manager.run = AsyncMock(return_value=CommandResult(0, "", ""))
    manager.run_checked = AsyncMock(return_value=CommandResult(0, "", ""))
    manager.run_powershell = AsyncMock(return_value=CommandResult(0, "", ""))
    manager.spawn = AsyncMock()
    return manager


@pytest.fixture
def mock_cleanup():
    return MagicMock()


@pytest.fixture
def mock_notifier():
    notifier = MagicMock()
    notifier.notify = AsyncMock()
    return notifier


@pytest.fixture
def mock_scheduler():
    """SchedulerService double where every registration succeeds."""
    scheduler = MagicMock()
    scheduler.register_reminders = AsyncMock(return_value=ReminderMode.DAILY)
    scheduler.remove_reminders = AsyncMock()
    scheduler.register_post_reboot_validation = AsyncMock(return_value=(True, True))
    scheduler.remove_post_reboot_validation = AsyncMock()
    return scheduler


@pytest.fixture
def mock_downloader(config):
    """DownloadService double that always yields the configured ISO path."""
    downloader = MagicMock()
    downloader.download = AsyncMock(return_value=config.iso_path)
    downloader.validate_healthy = MagicMock(return_value=True)
    downloader.validate_hash = MagicMock(return_value=True)
    return downloader


@pytest.fixture
def mock_stager():
    """StagingExecutor double; setup exits 3010 (restart required)."""
    stager = MagicMock()
    stager.stage = AsyncMock(return_value=StageResult(ok=True, exit_code=3010, attempts=1))
    return stager
