"""Unit tests for UpgradeConfig and load_config."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from upgrader.models.config import (
    CONFIG_ENV_VAR,
    UpgradeConfig,
    load_config,
    resolve_config_path,
)

VALID_HASH = "a" * 64


@pytest.mark.unit
class TestUpgradeConfig:
    """Test configuration validation."""

    def test_defaults(self):
        config = UpgradeConfig()

        assert config.auto_reboot is False
        assert config.dynamic_update is False
        assert config.iso_sha256 is None
        assert config.reminder_times == ("12:00", "16:00")
        assert config.download_attempts == 3
        assert config.success_exit_codes == (0, 3, 3010)
        assert config.iso_path.name == "Win11_Upgrade.iso"
        assert config.lock_path == config.state_dir / "upgrader.lock"

    def test_unresolved_placeholders_use_defaults(self):
        """Leftover @token@ values from deployment tooling are ignored."""
        config = UpgradeConfig(
            iso_url="@ISO_URL@",
            iso_sha256="@ISO_SHA256@",
            auto_reboot="@AUTO_REBOOT@",
            security_agent_min_version=" @AGENT_MIN@ ",
        )

        assert config.iso_url.startswith("https://")
        assert config.iso_sha256 is None
        assert config.auto_reboot is False
        assert config.security_agent_min_version == "24.2.2.0"

    def test_hash_is_lowercased(self):
        config = UpgradeConfig(iso_sha256="AB" * 32)

        assert config.iso_sha256 == "ab" * 32

    def test_invalid_hash_rejected(self):
        with pytest.raises(ValidationError):
            UpgradeConfig(iso_sha256="not-a-hash")

    def test_invalid_url_rejected(self):
        with pytest.raises(ValidationError):
            UpgradeConfig(iso_url="ftp://example.com/win11.iso")

    def test_invalid_reminder_time_rejected(self):
        with pytest.raises(ValidationError, match="HH:MM"):
            UpgradeConfig(reminder_times=("12:00", "25:00"))

    def test_attempt_bounds_must_be_positive(self):
        with pytest.raises(ValidationError):
            UpgradeConfig(download_attempts=0)

    def test_config_is_frozen(self):
        config = UpgradeConfig()

        with pytest.raises(ValidationError):
            config.auto_reboot = True


@pytest.mark.unit
class TestLoadConfig:
    """Test loading configuration documents."""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.json")

        assert config == UpgradeConfig()

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps(
                {
                    "iso_url": "https://media.example.com/win11.iso",
                    "iso_sha256": VALID_HASH,
                    "auto_reboot": True,
                    "reminder_times": ["09:30", "15:00"],
                    "unknown_key": "ignored",
                }
            ),
            encoding="utf-8",
        )

        config = load_config(path)

        assert config.iso_url == "https://media.example.com/win11.iso"
        assert config.iso_sha256 == VALID_HASH
        assert config.auto_reboot is True
        assert config.reminder_times == ("09:30", "15:00")

    def test_load_with_bom(self, tmp_path):
        """Files saved by Windows editors often carry a UTF-8 BOM."""
        path = tmp_path / "config.json"
        path.write_bytes(b"\xef\xbb\xbf" + json.dumps({"auto_reboot": True}).encode())

        assert load_config(path).auto_reboot is True

    def test_invalid_json_raises_value_error(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ValueError, match="CONFIG_INVALID"):
            load_config(path)

    def test_resolve_prefers_explicit_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "env.json"))

        assert resolve_config_path(tmp_path / "explicit.json") == tmp_path / "explicit.json"

    def test_resolve_uses_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "env.json"))

        assert resolve_config_path() == tmp_path / "env.json"

    def test_resolve_ignores_placeholder_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv(CONFIG_ENV_VAR, "@CONFIG_PATH@")
        monkeypatch.setenv("ProgramData", str(tmp_path))

        assert resolve_config_path() == Path(tmp_path) / "W11Upgrader" / "config.json"
