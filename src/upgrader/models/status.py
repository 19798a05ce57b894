"""Phase enums and error codes for the upgrade orchestrator."""

from enum import Enum, IntEnum


class UpgradePhase(str, Enum):
    """Upgrade lifecycle phases persisted as marker files.

    State transitions:
    (none) → ScriptRunning → PendingReboot → (none, upgrade completed)
                  ↓               ↓
            UpgradeFailed ←───────
    """

    SCRIPT_RUNNING = "ScriptRunning"
    PENDING_REBOOT = "PendingReboot"
    UPGRADE_FAILED = "UpgradeFailed"


class ReminderMode(str, Enum):
    """How reboot reminders were registered."""

    DAILY = "daily"
    LOGON = "logon"
    NONE = "none"


class ErrorCode(IntEnum):
    """Process exit codes for known failure classes.

    Each value also has an entry in the error catalog.
    """

    SUCCESS = 0
    HARDWARE_INCOMPATIBLE = 10
    DISK_SPACE = 11
    SECURITY_AGENT_BLOCKED = 12
    DOWNLOAD_TRANSPORT = 20
    DOWNLOAD_VALIDATION = 21
    DOWNLOAD_HASH = 22
    STAGING_FAILED = 30
    STAGING_STALLED = 31
    SETUP_NOT_FOUND = 32
    STAGING_ESCALATED = 33
    SELF_REPAIR_FAILED = 40
    UNEXPECTED = 99
