"""Scheduled task and RunOnce registration for reminders and post-reboot runs."""

import logging
import sys
from typing import Optional, Sequence

from upgrader.models.config import UpgradeConfig
from upgrader.models.status import ReminderMode
from upgrader.services.host import HostPlatform
from upgrader.services.process import ProcessManager
from upgrader.utils.registry import RUNONCE_KEY, Registry

SCHTASKS = "schtasks.exe"
# Give networking and the RMM agent time to come up after boot
VALIDATION_DELAY = "0005:00"


class SchedulerService:
    """Registers OS triggers. Every registration deletes a same-named one first."""

    def __init__(
        self,
        config: UpgradeConfig,
        process_manager: ProcessManager,
        host: HostPlatform,
        registry: Optional[Registry] = None,
    ):
        self.logger = logging.getLogger("upgrader.scheduler")
        self.config = config
        self.process_manager = process_manager
        self.host = host
        self.registry = registry or Registry()

    def reminder_task_names(self) -> list[str]:
        return [
            f"{self.config.reminder_task_prefix}_{index}"
            for index in range(1, len(self.config.reminder_times) + 1)
        ]

    def entry_command(self) -> str:
        """Command line that re-runs the orchestrator."""
        if self.config.entry_command:
            return self.config.entry_command
        return f'"{sys.executable}" -m upgrader.main'

    async def register_reminders(self, times: Optional[Sequence[str]] = None) -> ReminderMode:
        """Two daily reboot reminders; logon triggers when nobody is logged on.

        Returns:
            The reminder mode that was registered

        Raises:
            RuntimeError: If schtasks rejects a registration
        """
        times = list(times or self.config.reminder_times)
        command = self.config.notifier_command
        if not command:
            self.logger.warning("No notifier_command configured, skipping reminders")
            return ReminderMode.NONE

        interactive = self.host.has_interactive_session()
        mode = ReminderMode.DAILY if interactive else ReminderMode.LOGON
        if not interactive:
            self.logger.info("No interactive session, registering reminders at next logon")

        for name, at in zip(self.reminder_task_names(), times):
            await self._delete_task(name)
            schedule = ["/sc", "daily", "/st", at] if interactive else ["/sc", "onlogon"]
            await self._create_task(name, command, schedule)
            self.logger.info(
                f"Registered reminder {name} ({'daily at ' + at if interactive else 'at logon'})"
            )
        return mode

    async def remove_reminders(self) -> None:
        for name in self.reminder_task_names():
            await self._delete_task(name)
        self.logger.info("Reminders removed")

    async def register_post_reboot_validation(self) -> tuple[bool, bool]:
        """ONSTART task as SYSTEM plus a RunOnce fallback.

        Returns:
            (scheduled task registered, RunOnce registered)

        Raises:
            RuntimeError: If neither mechanism could be registered
        """
        command = self.entry_command()
        name = self.config.validation_task_name

        await self._delete_task(name)
        try:
            await self._create_task(
                name,
                command,
                ["/sc", "onstart", "/delay", VALIDATION_DELAY, "/ru", "SYSTEM", "/rl", "HIGHEST"],
            )
            task_ok = True
        except RuntimeError as e:
            self.logger.error(f"Post-reboot task registration failed: {e}")
            task_ok = False

        value = self.config.runonce_value_name
        try:
            self.registry.delete_value(RUNONCE_KEY, value)
            self.registry.set_string(RUNONCE_KEY, value, command)
            runonce_ok = True
        except (ImportError, OSError) as e:
            self.logger.error(f"RunOnce fallback registration failed: {e}")
            runonce_ok = False

        if not (task_ok or runonce_ok):
            raise RuntimeError("VALIDATION_REGISTRATION_FAILED: neither task nor RunOnce registered")
        self.logger.info(f"Post-reboot validation registered (task={task_ok}, runonce={runonce_ok})")
        return task_ok, runonce_ok

    async def remove_post_reboot_validation(self) -> None:
        await self._delete_task(self.config.validation_task_name)
        try:
            self.registry.delete_value(RUNONCE_KEY, self.config.runonce_value_name)
        except (ImportError, OSError) as e:
            self.logger.warning(f"Could not remove RunOnce value: {e}")
        self.logger.info("Post-reboot validation removed")

    async def _create_task(self, name: str, command: str, schedule: list[str]) -> None:
        result = await self.process_manager.run(
            [SCHTASKS, "/create", "/tn", name, "/tr", command, *schedule, "/f"]
        )
        if not result.ok:
            raise RuntimeError(
                f"TASK_REGISTRATION_FAILED: {name}: exit code {result.returncode}, "
                f"{result.stderr or result.stdout}"
            )

    async def _delete_task(self, name: str) -> None:
        result = await self.process_manager.run([SCHTASKS, "/delete", "/tn", name, "/f"])
        if result.ok:
            self.logger.debug(f"Deleted existing task {name}")
        else:
            self.logger.debug(f"No existing task {name} to delete")
