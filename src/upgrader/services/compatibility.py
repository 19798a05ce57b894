"""Compatibility gate: hardware, security agent and disk space prerequisites."""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from upgrader.models.config import UpgradeConfig
from upgrader.models.status import ErrorCode
from upgrader.services.cleanup import CleanupService
from upgrader.services.host import HostPlatform

MIN_MEMORY_GB = 4.0
# Firmware and integrated graphics reserve part of installed RAM
MEMORY_RESERVED_ALLOWANCE_GB = 0.5

_VERSION = re.compile(r"^\d+(\.\d+){0,3}$")


class GateStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    BLOCKED = "blocked"
    UNKNOWN_PROCEED = "unknown_proceed"


@dataclass(frozen=True)
class GateResult:
    """Outcome of one prerequisite check."""

    status: GateStatus
    reason: str = ""
    error_code: ErrorCode = ErrorCode.SUCCESS

    @property
    def ok(self) -> bool:
        return self.status in (GateStatus.PASSED, GateStatus.UNKNOWN_PROCEED)

    @classmethod
    def passed(cls, reason: str = "") -> "GateResult":
        return cls(GateStatus.PASSED, reason)

    @classmethod
    def failed(cls, reason: str, error_code: ErrorCode) -> "GateResult":
        return cls(GateStatus.FAILED, reason, error_code)


def parse_version(text: Optional[str]) -> Optional[tuple[int, ...]]:
    """Parse "24.2.2.0"-style versions, padded to four parts; None if unparseable."""
    if not text:
        return None
    candidate = text.strip()
    if not _VERSION.match(candidate):
        return None
    parts = [int(p) for p in candidate.split(".")]
    return tuple(parts + [0] * (4 - len(parts)))


class CompatibilityGate:
    """Pass/fail prerequisite checks run before staging."""

    def __init__(self, config: UpgradeConfig, host: HostPlatform, cleanup: CleanupService):
        self.logger = logging.getLogger("upgrader.compatibility")
        self.config = config
        self.host = host
        self.cleanup = cleanup

    async def check_hardware_requirements(self) -> GateResult:
        """TPM 2.0, Secure Boot, 64-bit CPU, RAM and disk space; first failure wins."""
        tpm = await self.host.tpm_version()
        if tpm is None:
            return self._hardware_failure("TPM not present or not readable")
        if "2.0" not in [v.strip() for v in tpm.split(",")]:
            return self._hardware_failure(f"TPM 2.0 required, found spec version(s) {tpm}")

        if not await self.host.secure_boot_enabled():
            return self._hardware_failure("Secure Boot is not enabled")

        if not self.host.is_64bit():
            return self._hardware_failure("64-bit CPU required")

        memory_gb = self.host.total_memory_gb()
        if memory_gb + MEMORY_RESERVED_ALLOWANCE_GB < MIN_MEMORY_GB:
            return self._hardware_failure(
                f"{MIN_MEMORY_GB:.0f} GB RAM required, found {memory_gb:.1f} GB"
            )

        disk = await self.ensure_disk_space(self.config.min_free_space_gb, attempt_cleanup=True)
        if not disk.ok:
            return disk

        self.logger.info(f"Hardware requirements met (TPM {tpm}, RAM {memory_gb:.1f} GB)")
        return GateResult.passed()

    async def check_security_agent(self) -> GateResult:
        """Block when the agent is present but too old or of unknown version.

        An agent that is not installed at all does not block.
        """
        name = self.config.security_agent_service
        minimum = self.config.security_agent_min_version
        probe = await self.host.security_agent(name)

        if not probe.found:
            self.logger.info(f"Security agent {name} not installed, continuing")
            return GateResult(GateStatus.UNKNOWN_PROCEED, f"{name} not installed")

        installed = parse_version(probe.version)
        if installed is None:
            self.logger.warning(
                f"Security agent {name} detected but version {probe.version!r} is unreadable"
            )
            return GateResult(
                GateStatus.BLOCKED,
                f"Security agent {name} is installed but its version "
                f"({probe.version or 'unknown'}) could not be determined; "
                f"minimum required is {minimum}",
                ErrorCode.SECURITY_AGENT_BLOCKED,
            )

        required = parse_version(minimum)
        if required is None:
            raise ValueError(f"Configured security_agent_min_version is invalid: {minimum!r}")

        if installed < required:
            return GateResult(
                GateStatus.BLOCKED,
                f"Security agent {name} version {probe.version} is below "
                f"required minimum {minimum}",
                ErrorCode.SECURITY_AGENT_BLOCKED,
            )

        self.logger.info(f"Security agent {name} {probe.version} >= {minimum}")
        return GateResult.passed(f"{name} {probe.version}")

    async def ensure_disk_space(self, min_gb: float, attempt_cleanup: bool = True) -> GateResult:
        """Require min_gb free on the system drive.

        Unknown free space is a failure, never "proceed with caution".
        """
        free_gb = self.host.free_space_gb()
        if free_gb is None:
            return GateResult.failed(
                "Free disk space on the system drive could not be determined",
                ErrorCode.DISK_SPACE,
            )
        if free_gb >= min_gb:
            self.logger.info(f"{free_gb:.1f} GB free (need {min_gb:.1f} GB)")
            return GateResult.passed()

        if attempt_cleanup:
            self.logger.warning(f"Only {free_gb:.1f} GB free, running cleanup")
            self.cleanup.free_disk_space()
            free_gb = self.host.free_space_gb()
            if free_gb is None:
                return GateResult.failed(
                    "Free disk space could not be determined after cleanup",
                    ErrorCode.DISK_SPACE,
                )
            if free_gb >= min_gb:
                self.logger.info(f"Cleanup freed enough space: {free_gb:.1f} GB free")
                return GateResult.passed()

        return GateResult.failed(
            f"Only {free_gb:.1f} GB free on {self.host.system_drive()}, "
            f"{min_gb:.1f} GB required",
            ErrorCode.DISK_SPACE,
        )

    def _hardware_failure(self, reason: str) -> GateResult:
        self.logger.error(f"Hardware check failed: {reason}")
        return GateResult.failed(reason, ErrorCode.HARDWARE_INCOMPATIBLE)
