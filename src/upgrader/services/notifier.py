"""User notification collaborator (fire-and-forget)."""

import logging
import shlex
from enum import Enum
from typing import Optional

from upgrader.models.config import UpgradeConfig
from upgrader.services.process import ProcessManager


class NotificationKind(str, Enum):
    STAGED = "staged"
    REBOOT_REMINDER = "reboot_reminder"
    FAILED = "failed"
    COMPLETED = "completed"


class Notifier:
    """Notification capability. The base class does nothing."""

    async def notify(self, kind: NotificationKind, message: str) -> None:
        return None


class NullNotifier(Notifier):
    """Used when no notifier_command is configured."""


class ProcessNotifier(Notifier):
    """Launches the configured notifier command without waiting for it.

    Note:
        Failures are logged but not raised to avoid blocking the upgrade
    """

    def __init__(self, command: str, process_manager: Optional[ProcessManager] = None):
        self.logger = logging.getLogger("upgrader.notifier")
        self.command = command
        self.process_manager = process_manager or ProcessManager()

    async def notify(self, kind: NotificationKind, message: str) -> None:
        args = [
            token.strip('"')
            for token in shlex.split(self.command, posix=False)
        ] + ["--event", kind.value, "--message", message]

        self.logger.debug(f"Notifying: event={kind.value}")
        try:
            await self.process_manager.spawn(args)
        except OSError as e:
            self.logger.warning(
                f"Failed to launch notifier ({e}). Continuing upgrade..."
            )


def build_notifier(config: UpgradeConfig, process_manager: ProcessManager) -> Notifier:
    if config.notifier_command:
        return ProcessNotifier(config.notifier_command, process_manager)
    return NullNotifier()
