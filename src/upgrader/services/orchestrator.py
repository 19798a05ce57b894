"""Top-level per-invocation state machine."""

import logging
import os
from datetime import datetime

from upgrader.models.config import UpgradeConfig
from upgrader.models.state import FailureRecord, PendingRebootRecord, ScriptRunningRecord
from upgrader.models.status import ErrorCode
from upgrader.services.cleanup import CleanupService
from upgrader.services.compatibility import CompatibilityGate
from upgrader.services.host import HostPlatform
from upgrader.services.notifier import NotificationKind, Notifier
from upgrader.services.pipeline import PipelineResult, UpgradePipeline
from upgrader.services.scheduler import SchedulerService
from upgrader.services.self_repair import SelfRepairCoordinator
from upgrader.services.state_manager import StateStore


class Orchestrator:
    """Decides the single next action from the persisted phase.

    Phases:
    - no marker / ScriptRunning: gate, download and stage
    - PendingReboot: wait for the restart (reminders stay registered)
    - rebooted without the phase advancing: self-repair
    - target build reached: clean up and finish
    """

    def __init__(
        self,
        config: UpgradeConfig,
        state_store: StateStore,
        host: HostPlatform,
        gate: CompatibilityGate,
        pipeline: UpgradePipeline,
        self_repair: SelfRepairCoordinator,
        scheduler: SchedulerService,
        cleanup: CleanupService,
        notifier: Notifier,
    ):
        self.logger = logging.getLogger("upgrader.orchestrator")
        self.config = config
        self.state_store = state_store
        self.host = host
        self.gate = gate
        self.pipeline = pipeline
        self.self_repair = self_repair
        self.scheduler = scheduler
        self.cleanup = cleanup
        self.notifier = notifier

    async def run(self) -> int:
        """Run one invocation. Never raises.

        Returns:
            Process exit code (0 or an ErrorCode value)
        """
        try:
            return await self._run()
        except Exception as e:
            return await self._handle_unexpected(e)

    async def _run(self) -> int:
        state = self.state_store.read_state()
        current_boot = self.host.current_boot_time()
        self.logger.info(
            f"Invocation start: phase={state.phase if state else 'none'}, boot={current_boot}"
        )

        agent = await self.gate.check_security_agent()
        if not agent.ok:
            await self.scheduler.remove_reminders()
            self.state_store.write_failure(agent.reason, agent.error_code)
            await self.notifier.notify(NotificationKind.FAILED, agent.reason)
            return int(agent.error_code)

        if isinstance(state, FailureRecord):
            self.logger.warning(
                f"Previous run failed at {state.failed_at} (code {state.error_code}): "
                f"{state.reason}. Starting fresh triage"
            )
            self.cleanup.failure_cleanup()
            self.state_store.clear_failure()
            state = None

        on_target = self.host.is_target_os(self.config.target_build)

        if state is None or isinstance(state, ScriptRunningRecord):
            if (
                isinstance(state, ScriptRunningRecord)
                and not on_target
                and self.self_repair.needs_repair(state.phase, state.last_boot_time, current_boot)
            ):
                return await self._finish(await self.self_repair.repair(state))
            state = self.state_store.write_state(
                ScriptRunningRecord(
                    started_at=datetime.now(),
                    last_boot_time=current_boot,
                    pid=os.getpid(),
                )
            )

        if on_target:
            await self._complete()
            return int(ErrorCode.SUCCESS)

        if isinstance(state, PendingRebootRecord):
            if self.self_repair.needs_repair(state.phase, state.last_boot_time, current_boot):
                return await self._finish(await self.self_repair.repair(state))
            self.logger.info(f"Upgrade staged at {state.staged_at}, waiting for restart")
            await self.pipeline.ensure_triggers()
            return int(ErrorCode.SUCCESS)

        result = await self.pipeline.run()
        if not result.ok:
            self.state_store.write_failure(result.reason, result.error_code)
            await self.notifier.notify(
                NotificationKind.FAILED, "The Windows 11 upgrade could not be prepared."
            )
        return await self._finish(result)

    async def _finish(self, result: PipelineResult) -> int:
        """Reboot if configured and due; map the result to an exit code."""
        if not result.ok:
            return int(result.error_code)

        if self.config.auto_reboot and result.reboot_due:
            try:
                await self.host.reboot(
                    self.config.reboot_delay_seconds,
                    "Your computer will restart to finish the Windows 11 upgrade.",
                )
            except RuntimeError as e:
                self.logger.error(f"Automatic restart failed, reminders remain active: {e}")
        return int(ErrorCode.SUCCESS)

    async def _complete(self) -> None:
        """Target build reached: remove triggers, media and markers."""
        self.logger.info(f"OS build is at or above {self.config.target_build}, upgrade complete")
        await self.scheduler.remove_reminders()
        await self.scheduler.remove_post_reboot_validation()
        self.cleanup.completion_cleanup()
        self.state_store.clear_state()
        self.state_store.clear_failure()
        await self.notifier.notify(NotificationKind.COMPLETED, "Windows 11 upgrade completed.")

    async def _handle_unexpected(self, error: Exception) -> int:
        """Record the failure and keep a retry path; must not raise."""
        self.logger.error(f"Unexpected error: {error}", exc_info=True)
        reason = f"Unexpected error: {type(error).__name__}: {error}"

        try:
            self.state_store.write_failure(reason, ErrorCode.UNEXPECTED)
        except Exception as e:
            self.logger.error(f"Could not write failure marker: {e}", exc_info=True)
        try:
            self.cleanup.failure_cleanup()
        except Exception as e:
            self.logger.error(f"Cleanup after unexpected error failed: {e}", exc_info=True)
        try:
            await self.scheduler.register_post_reboot_validation()
        except Exception as e:
            self.logger.error(f"Could not register post-reboot validation: {e}", exc_info=True)

        return int(ErrorCode.UNEXPECTED)
