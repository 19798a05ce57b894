"""Command-line entry point for the Windows 11 upgrade orchestrator."""

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from upgrader.models.catalog import ErrorCatalog
from upgrader.models.config import UpgradeConfig, load_config
from upgrader.models.status import ErrorCode
from upgrader.services.cleanup import CleanupService
from upgrader.services.compatibility import CompatibilityGate
from upgrader.services.download import DownloadService
from upgrader.services.host import HostPlatform
from upgrader.services.lock import InstanceLock
from upgrader.services.notifier import build_notifier
from upgrader.services.orchestrator import Orchestrator
from upgrader.services.pipeline import UpgradePipeline
from upgrader.services.process import ProcessManager
from upgrader.services.repair_actions import RepairActions
from upgrader.services.scheduler import SchedulerService
from upgrader.services.self_repair import SelfRepairCoordinator
from upgrader.services.staging import StagingExecutor
from upgrader.services.state_manager import StateStore
from upgrader.utils.logging import setup_logger
from upgrader.utils.registry import Registry


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="w11-upgrader",
        description="Unattended Windows 10 to 11 in-place upgrade",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    return parser.parse_args(argv)


def build_orchestrator(config: UpgradeConfig) -> Orchestrator:
    """Wire every service from one configuration object."""
    process_manager = ProcessManager()
    registry = Registry()
    host = HostPlatform(process_manager, registry)
    state_store = StateStore(config.state_dir)
    cleanup = CleanupService(config, host)
    gate = CompatibilityGate(config, host, cleanup)
    downloader = DownloadService(config, gate)
    catalog = ErrorCatalog.load(config.error_catalog_path)
    stager = StagingExecutor(
        config,
        host,
        catalog,
        RepairActions(config, cleanup, process_manager),
        downloader,
    )
    scheduler = SchedulerService(config, process_manager, host, registry)
    notifier = build_notifier(config, process_manager)
    pipeline = UpgradePipeline(
        config, state_store, host, gate, downloader, stager, scheduler, notifier
    )
    self_repair = SelfRepairCoordinator(
        config, state_store, cleanup, downloader, pipeline, notifier
    )
    return Orchestrator(
        config, state_store, host, gate, pipeline, self_repair, scheduler, cleanup, notifier
    )


def record_startup_failure(config: UpgradeConfig, reason: str) -> None:
    """Best-effort failure marker for errors before the orchestrator runs."""
    try:
        StateStore(config.state_dir).write_failure(reason, ErrorCode.UNEXPECTED)
    except Exception as e:
        logging.getLogger("upgrader").error(f"Could not write failure marker: {e}", exc_info=True)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run one invocation and return the process exit code. Never raises."""
    args = parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO

    config_error: Optional[Exception] = None
    try:
        config = load_config()
    except (ValueError, OSError) as e:
        config_error = e
        config = UpgradeConfig()

    logger = setup_logger("upgrader", config.log_file, level=level)
    logger.info("W11 upgrader starting...")

    if config_error is not None:
        logger.error(f"Configuration could not be loaded: {config_error}")
        record_startup_failure(config, f"Configuration could not be loaded: {config_error}")
        return int(ErrorCode.UNEXPECTED)

    lock = InstanceLock(config.lock_path)
    try:
        if not lock.acquire():
            logger.info("Another instance is already running, exiting")
            return int(ErrorCode.SUCCESS)
        orchestrator = build_orchestrator(config)
        exit_code = asyncio.run(orchestrator.run())
    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        record_startup_failure(config, f"Startup failed: {e}")
        return int(ErrorCode.UNEXPECTED)
    finally:
        lock.release()

    logger.info(f"W11 upgrader finished with exit code {exit_code}")
    return exit_code


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
