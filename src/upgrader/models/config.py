"""Upgrade configuration model and loader."""

import json
import logging
import os
import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CONFIG_ENV_VAR = "W11_UPGRADER_CONFIG"

# Deployment tooling substitutes @token@ placeholders; anything left over
# means "use the default".
_PLACEHOLDER = re.compile(r"^@[A-Za-z0-9_.-]+@$")
_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _program_data() -> Path:
    return Path(os.environ.get("ProgramData", r"C:\ProgramData"))


def default_config_path() -> Path:
    """Location of the config document when no override is given."""
    return _program_data() / "W11Upgrader" / "config.json"


class UpgradeConfig(BaseModel):
    """Immutable configuration for a single orchestrator invocation.

    Every component receives this object in its constructor.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Installation media
    iso_url: str = Field(
        default="https://software.download.prss.microsoft.com/Win11_24H2_English_x64.iso",
        pattern=r"^https?://.+",
        description="HTTP/HTTPS URL of the Windows 11 ISO",
    )
    iso_sha256: Optional[str] = Field(
        default=None,
        pattern=r"^[A-Fa-f0-9]{64}$",
        description="Expected SHA-256 of the ISO (trust on first use if unset)",
    )
    min_iso_size_bytes: int = Field(
        default=4 * 1024 * 1024 * 1024,
        gt=0,
        description="Smallest file accepted as a real ISO",
    )
    iso_file_name: str = Field(default="Win11_Upgrade.iso")

    # Paths
    state_dir: Path = Field(default_factory=lambda: _program_data() / "W11Upgrader" / "state")
    download_dir: Path = Field(default_factory=lambda: _program_data() / "W11Upgrader" / "media")
    setup_log_dir: Path = Field(default_factory=lambda: _program_data() / "W11Upgrader" / "setup-logs")
    log_file: Path = Field(default_factory=lambda: _program_data() / "W11Upgrader" / "logs" / "upgrader.log")
    error_catalog_path: Optional[Path] = Field(
        default=None, description="JSON catalog merged over the built-in one"
    )

    # Scheduler
    reminder_task_prefix: str = Field(default="W11Upgrade_Reminder")
    validation_task_name: str = Field(default="W11Upgrade_PostRebootValidation")
    runonce_value_name: str = Field(default="W11UpgradePostRebootValidation")
    reminder_times: tuple[str, str] = Field(default=("12:00", "16:00"))
    notifier_command: Optional[str] = Field(
        default=None, description="Command line of the notification collaborator"
    )
    entry_command: Optional[str] = Field(
        default=None, description="Command line that re-invokes the orchestrator"
    )

    # Behaviour toggles
    dynamic_update: bool = Field(default=False)
    auto_reboot: bool = Field(default=False)
    reboot_delay_seconds: int = Field(default=300, ge=0)

    # Gates
    min_free_space_gb: float = Field(default=30.0, gt=0)
    security_agent_service: str = Field(default="SentinelAgent")
    security_agent_min_version: str = Field(default="24.2.2.0")
    target_build: int = Field(default=22000, gt=0, description="First build considered upgraded")

    # Retry and timeout bounds
    download_attempts: int = Field(default=3, ge=1)
    download_stall_timeout_seconds: float = Field(default=300.0, gt=0)
    staging_attempts: int = Field(default=2, ge=1)
    staging_stall_timeout_seconds: float = Field(default=2700.0, gt=0)
    staging_poll_interval_seconds: float = Field(default=30.0, gt=0)
    success_exit_codes: tuple[int, ...] = Field(default=(0, 3, 3010))

    @model_validator(mode="before")
    @classmethod
    def drop_unresolved_placeholders(cls, data):
        """Remove values still holding an @token@ placeholder."""
        if isinstance(data, dict):
            return {
                key: value
                for key, value in data.items()
                if not (isinstance(value, str) and _PLACEHOLDER.match(value.strip()))
            }
        return data

    @field_validator("reminder_times")
    @classmethod
    def valid_times(cls, v: tuple[str, str]) -> tuple[str, str]:
        """Reminder times must be HH:MM."""
        for value in v:
            if not _TIME_OF_DAY.match(value):
                raise ValueError(f"Reminder time must be HH:MM, got {value!r}")
        return v

    @field_validator("iso_sha256")
    @classmethod
    def normalize_hash(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v

    @property
    def iso_path(self) -> Path:
        return self.download_dir / self.iso_file_name

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "upgrader.lock"


def resolve_config_path(explicit: Optional[Path] = None) -> Path:
    """Pick the configuration document to load.

    Order: explicit argument, $W11_UPGRADER_CONFIG, ProgramData default.
    """
    if explicit is not None:
        return explicit
    env_value = os.environ.get(CONFIG_ENV_VAR)
    if env_value and not _PLACEHOLDER.match(env_value.strip()):
        return Path(env_value)
    return default_config_path()


def load_config(path: Optional[Path] = None) -> UpgradeConfig:
    """Load configuration from JSON, falling back to defaults if absent.

    Args:
        path: Config document; resolved via resolve_config_path() if None

    Returns:
        Frozen UpgradeConfig

    Raises:
        ValueError: If the document exists but is not valid JSON
        pydantic.ValidationError: If a value fails validation
    """
    logger = logging.getLogger("upgrader.config")
    config_path = resolve_config_path(path)

    if not config_path.exists():
        logger.info(f"No config at {config_path}, using defaults")
        return UpgradeConfig()

    try:
        with open(config_path, "r", encoding="utf-8-sig") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"CONFIG_INVALID: {config_path}: {e}") from e

    config = UpgradeConfig(**data)
    logger.info(f"Loaded config from {config_path}")
    return config
