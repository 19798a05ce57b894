"""Unit tests for HostPlatform."""

from collections import namedtuple
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from upgrader.services.host import HostPlatform
from upgrader.services.process import CommandResult
from upgrader.utils.registry import CURRENT_VERSION_KEY

DiskUsage = namedtuple("DiskUsage", "total used free percent")


def _proc(name):
    proc = MagicMock()
    proc.info = {"name": name}
    return proc


@pytest.mark.unit
class TestHostPlatform:
    """Test HostPlatform with mocked registry and processes."""

    @pytest.fixture
    def registry(self):
        registry = MagicMock()
        registry.read_value.return_value = None
        return registry

    @pytest.fixture
    def host(self, mock_process_manager, registry):
        return HostPlatform(mock_process_manager, registry)

    def test_current_build_from_registry(self, host, registry):
        registry.read_value.return_value = "19045"

        assert host.current_build() == 19045
        registry.read_value.assert_called_once_with(CURRENT_VERSION_KEY, "CurrentBuildNumber")

    def test_current_build_falls_back_to_platform(self, host, registry):
        registry.read_value.side_effect = ImportError("No module named 'winreg'")

        with patch("upgrader.services.host.platform.version", return_value="10.0.22631"):
            assert host.current_build() == 22631

    def test_current_build_unknown(self, host):
        with patch("upgrader.services.host.platform.version", return_value="#1 SMP"):
            assert host.current_build() is None
            assert host.is_target_os(22000) is False

    def test_is_target_os(self, host, registry):
        registry.read_value.return_value = "26100"

        assert host.is_target_os(22000) is True

    def test_interactive_session(self, host):
        with patch(
            "upgrader.services.host.psutil.process_iter",
            return_value=[_proc("svchost.exe"), _proc("Explorer.EXE")],
        ):
            assert host.has_interactive_session() is True

    def test_no_interactive_session(self, host):
        with patch(
            "upgrader.services.host.psutil.process_iter",
            return_value=[_proc("svchost.exe"), _proc(None)],
        ):
            assert host.has_interactive_session() is False

    def test_free_space(self, host):
        usage = DiskUsage(500 * 1024**3, 400 * 1024**3, 100 * 1024**3, 80.0)
        with patch("upgrader.services.host.psutil.disk_usage", return_value=usage):
            assert host.free_space_gb(Path("C:\\")) == pytest.approx(100.0)

    def test_free_space_unknown(self, host):
        with patch("upgrader.services.host.psutil.disk_usage", side_effect=OSError("not ready")):
            assert host.free_space_gb(Path("C:\\")) is None

    def test_setup_progress(self, host, registry):
        registry.read_value.return_value = 42

        assert host.setup_progress() == 42

    def test_setup_progress_unavailable(self, host, registry):
        registry.read_value.side_effect = PermissionError("denied")

        assert host.setup_progress() is None

    @pytest.mark.asyncio
    async def test_tpm_version(self, host, mock_process_manager):
        mock_process_manager.run_powershell.return_value = CommandResult(0, "2.0, 0, 1.38", "")

        assert await host.tpm_version() == "2.0, 0, 1.38"

    @pytest.mark.asyncio
    async def test_tpm_absent(self, host, mock_process_manager):
        mock_process_manager.run_powershell.return_value = CommandResult(1, "", "No TPM")

        assert await host.tpm_version() is None

    @pytest.mark.asyncio
    async def test_secure_boot(self, host, mock_process_manager):
        mock_process_manager.run_powershell.return_value = CommandResult(0, "True", "")
        assert await host.secure_boot_enabled() is True

        mock_process_manager.run_powershell.return_value = CommandResult(1, "", "Cmdlet not supported")
        assert await host.secure_boot_enabled() is False

    @pytest.mark.asyncio
    async def test_security_agent_not_installed(self, host, mock_process_manager):
        mock_process_manager.run_powershell.return_value = CommandResult(3, "", "")

        probe = await host.security_agent("SentinelAgent")

        assert probe.found is False

    @pytest.mark.asyncio
    async def test_security_agent_version(self, host, mock_process_manager):
        mock_process_manager.run_powershell.return_value = CommandResult(0, "24.2.3.471\r\n", "")

        probe = await host.security_agent("SentinelAgent")

        assert probe.found is True
        assert probe.version == "24.2.3.471"
        assert "Name='SentinelAgent'" in mock_process_manager.run_powershell.call_args.args[0]

    @pytest.mark.asyncio
    async def test_security_agent_version_lookup_failed(self, host, mock_process_manager):
        mock_process_manager.run_powershell.return_value = CommandResult(1, "", "Access denied")

        probe = await host.security_agent("SentinelAgent")

        assert probe.found is True
        assert probe.version is None

    @pytest.mark.asyncio
    async def test_mount_iso(self, host, mock_process_manager):
        mock_process_manager.run_powershell.return_value = CommandResult(0, "E", "")

        assert await host.mount_iso(Path("C:/media/Win11.iso")) == "E:\\"

    @pytest.mark.asyncio
    async def test_mount_iso_failure(self, host, mock_process_manager):
        mock_process_manager.run_powershell.return_value = CommandResult(1, "", "The file is corrupt")

        with pytest.raises(RuntimeError, match="MOUNT_FAILED"):
            await host.mount_iso(Path("C:/media/Win11.iso"))

    @pytest.mark.asyncio
    async def test_reboot(self, host, mock_process_manager):
        await host.reboot(300, "Completing Windows 11 upgrade")

        mock_process_manager.run_checked.assert_awaited_once_with(
            ["shutdown.exe", "/r", "/t", "300", "/c", "Completing Windows 11 upgrade"]
        )
