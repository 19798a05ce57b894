"""In-process implementations of catalog repair actions."""

import logging

from upgrader.models.catalog import RepairAction
from upgrader.models.config import UpgradeConfig
from upgrader.services.cleanup import CleanupService
from upgrader.services.process import ProcessManager
from upgrader.utils.verification import delete_with_sidecar

UPDATE_SERVICES = ("wuauserv", "bits", "cryptsvc")


class RepairActions:
    """Maps RepairAction values to coroutines; nothing is read from data files."""

    def __init__(
        self,
        config: UpgradeConfig,
        cleanup: CleanupService,
        process_manager: ProcessManager,
    ):
        self.logger = logging.getLogger("upgrader.repair_actions")
        self.config = config
        self.cleanup = cleanup
        self.process_manager = process_manager
        self._handlers = {
            RepairAction.CLEAR_SETUP_FOLDERS: self.clear_setup_folders,
            RepairAction.FREE_DISK_SPACE: self.free_disk_space,
            RepairAction.REDOWNLOAD_MEDIA: self.redownload_media,
            RepairAction.RESET_UPDATE_SERVICES: self.reset_update_services,
        }

    async def run(self, action: RepairAction) -> bool:
        """Execute one repair action.

        Returns:
            True if the action completed
        """
        self.logger.info(f"Running repair action: {action.value}")
        try:
            ok = await self._handlers[action]()
        except OSError as e:
            self.logger.error(f"Repair action {action.value} failed: {e}", exc_info=True)
            return False
        self.logger.info(f"Repair action {action.value} {'succeeded' if ok else 'failed'}")
        return ok

    async def clear_setup_folders(self) -> bool:
        self.cleanup.clear_setup_folders()
        return True

    async def free_disk_space(self) -> bool:
        self.cleanup.free_disk_space()
        return True

    async def redownload_media(self) -> bool:
        """Delete the ISO and its cached hash so the next attempt fetches it again."""
        delete_with_sidecar(self.config.iso_path)
        self.logger.warning(f"Deleted {self.config.iso_path.name} as suspected corrupt")
        return True

    async def reset_update_services(self) -> bool:
        """Stop update services, clear the download cache, start them again."""
        for service in UPDATE_SERVICES:
            await self.process_manager.run(["net.exe", "stop", service, "/y"], timeout=120)

        self.cleanup.free_disk_space()

        ok = True
        for service in UPDATE_SERVICES:
            result = await self.process_manager.run(["net.exe", "start", service], timeout=120)
            # 2 = "service already started"
            if result.returncode not in (0, 2):
                self.logger.error(f"Could not restart {service}: {result.stderr or result.stdout}")
                ok = False
        return ok
