"""Unit tests for CleanupService."""

import pytest

from upgrader.services.cleanup import CleanupService
from upgrader.utils.verification import sidecar_path, write_cached_hash


@pytest.fixture
def service(config, mock_host, tmp_path, monkeypatch):
    mock_host.system_drive.return_value = tmp_path / "C"
    monkeypatch.setenv("SystemRoot", str(tmp_path / "C" / "Windows"))
    return CleanupService(config, mock_host)


def _populate_media(config):
    config.download_dir.mkdir(parents=True)
    config.iso_path.write_bytes(b"i" * 64)
    write_cached_hash(config.iso_path, "d" * 64)
    (config.download_dir / "Win11_Upgrade.iso.part").write_bytes(b"p" * 32)
    config.state_dir.mkdir(parents=True)
    (config.state_dir / ".PendingReboot.marker.123.tmp").write_text("x", encoding="utf-8")
    (config.state_dir / "ScriptRunning.marker").write_text("phase=ScriptRunning", encoding="utf-8")


@pytest.mark.unit
class TestCleanupService:
    """Test artifact and disk space cleanup."""

    def test_partial_artifacts(self, service, config):
        _populate_media(config)

        names = sorted(p.name for p in service.partial_artifacts())

        assert names == [".PendingReboot.marker.123.tmp", "Win11_Upgrade.iso.part"]

    def test_partial_cleanup_keeps_iso_and_markers(self, service, config):
        _populate_media(config)

        reclaimed = service.cleanup_partial_artifacts(keep_iso=True)

        assert reclaimed == 33
        assert config.iso_path.exists()
        assert sidecar_path(config.iso_path).exists()
        assert (config.state_dir / "ScriptRunning.marker").exists()

    def test_partial_cleanup_can_drop_iso(self, service, config):
        _populate_media(config)

        service.cleanup_partial_artifacts(keep_iso=False)

        assert not config.iso_path.exists()
        assert not sidecar_path(config.iso_path).exists()

    def test_missing_directories(self, service):
        assert service.partial_artifacts() == []
        assert service.cleanup_partial_artifacts() == 0

    def test_clear_setup_folders(self, service, tmp_path):
        bt = tmp_path / "C" / "$WINDOWS.~BT" / "Sources"
        bt.mkdir(parents=True)
        (bt / "setup.log").write_bytes(b"l" * 10)

        reclaimed = service.clear_setup_folders()

        assert reclaimed == 10
        assert not (tmp_path / "C" / "$WINDOWS.~BT").exists()

    def test_free_disk_space(self, service, config, tmp_path):
        _populate_media(config)
        temp = tmp_path / "C" / "Windows" / "Temp"
        temp.mkdir(parents=True)
        (temp / "junk.tmp").write_bytes(b"j" * 100)
        cache = tmp_path / "C" / "Windows" / "SoftwareDistribution" / "Download" / "abc"
        cache.mkdir(parents=True)
        (cache / "update.cab").write_bytes(b"c" * 200)

        reclaimed = service.free_disk_space()

        assert reclaimed == 333
        assert temp.exists()
        assert not any(temp.iterdir())
        assert config.iso_path.exists()

    def test_completion_cleanup_removes_media(self, service, config, tmp_path):
        _populate_media(config)
        (tmp_path / "C" / "$WINDOWS.~WS").mkdir(parents=True)

        service.completion_cleanup()

        assert not config.iso_path.exists()
        assert not (tmp_path / "C" / "$WINDOWS.~WS").exists()

    def test_failure_cleanup_keeps_iso(self, service, config):
        _populate_media(config)

        service.failure_cleanup()

        assert config.iso_path.exists()
        assert not (config.download_dir / "Win11_Upgrade.iso.part").exists()
