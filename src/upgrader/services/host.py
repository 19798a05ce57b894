"""Host queries and actions: boot time, OS build, hardware, ISO mounting."""

import logging
import os
import platform
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import psutil

from upgrader.services.process import ProcessManager
from upgrader.utils.registry import CURRENT_VERSION_KEY, SETUP_PROGRESS_KEY, Registry

_SERVICE_NOT_FOUND_EXIT = 3


@dataclass(frozen=True)
class AgentProbe:
    """Result of looking for the endpoint security agent."""

    found: bool
    version: Optional[str] = None


class HostPlatform:
    """Everything the orchestrator needs to know or do on the local machine."""

    def __init__(
        self,
        process_manager: Optional[ProcessManager] = None,
        registry: Optional[Registry] = None,
    ):
        self.logger = logging.getLogger("upgrader.host")
        self.process_manager = process_manager or ProcessManager()
        self.registry = registry or Registry()

    # --- boot / OS ---

    def current_boot_time(self) -> datetime:
        """Last OS boot time, read fresh on every call."""
        return datetime.fromtimestamp(psutil.boot_time())

    def current_build(self) -> Optional[int]:
        """Windows build number (e.g. 19045 for 10 22H2, 26100 for 11 24H2)."""
        try:
            value = self.registry.read_value(CURRENT_VERSION_KEY, "CurrentBuildNumber")
            if value:
                return int(value)
        except (ImportError, OSError, ValueError) as e:
            self.logger.debug(f"Registry build lookup failed: {e}")

        parts = platform.version().split(".")
        if len(parts) >= 3 and parts[2].isdigit():
            return int(parts[2])
        self.logger.warning(f"Could not determine OS build from {platform.version()!r}")
        return None

    def is_target_os(self, target_build: int) -> bool:
        build = self.current_build()
        return build is not None and build >= target_build

    def has_interactive_session(self) -> bool:
        """True if a user desktop (explorer.exe) is running."""
        for proc in psutil.process_iter(["name"]):
            name = (proc.info.get("name") or "").lower()
            if name == "explorer.exe":
                return True
        return False

    # --- resources ---

    def system_drive(self) -> Path:
        return Path(os.environ.get("SystemDrive", "C:") + os.sep)

    def free_space_gb(self, path: Optional[Path] = None) -> Optional[float]:
        """Free space in GB, or None if it cannot be determined."""
        target = path or self.system_drive()
        try:
            return psutil.disk_usage(str(target)).free / 1024**3
        except OSError as e:
            self.logger.error(f"Cannot read free space on {target}: {e}")
            return None

    def total_memory_gb(self) -> float:
        return psutil.virtual_memory().total / 1024**3

    def is_64bit(self) -> bool:
        return platform.machine().lower() in ("amd64", "x86_64", "arm64", "aarch64")

    async def tpm_version(self) -> Optional[str]:
        """TPM spec versions, e.g. "2.0, 0, 1.38"; None if no TPM is present."""
        result = await self.process_manager.run_powershell(
            "(Get-CimInstance -Namespace root/cimv2/security/microsofttpm "
            "-ClassName Win32_Tpm -ErrorAction Stop).SpecVersion"
        )
        if not result.ok or not result.stdout:
            return None
        return result.stdout.splitlines()[0].strip()

    async def secure_boot_enabled(self) -> bool:
        result = await self.process_manager.run_powershell("Confirm-SecureBootUEFI")
        return result.ok and result.stdout.strip().lower() == "true"

    async def security_agent(self, service_name: str) -> AgentProbe:
        """Look up the agent service and the file version of its binary."""
        script = (
            f"$s = Get-CimInstance Win32_Service -Filter \"Name='{service_name}'\" -ErrorAction Stop; "
            f"if (-not $s) {{ exit {_SERVICE_NOT_FOUND_EXIT} }}; "
            "$p = $s.PathName -replace '^\"([^\"]+)\".*$','$1'; "
            "(Get-Item -LiteralPath $p -ErrorAction Stop).VersionInfo.ProductVersion"
        )
        result = await self.process_manager.run_powershell(script)
        if result.returncode == _SERVICE_NOT_FOUND_EXIT:
            return AgentProbe(found=False)
        if not result.ok:
            self.logger.warning(
                f"Agent service {service_name} detected but version lookup failed: "
                f"{result.stderr or result.returncode}"
            )
            return AgentProbe(found=True, version=None)
        return AgentProbe(found=True, version=result.stdout.strip() or None)

    # --- setup support ---

    def setup_progress(self) -> Optional[int]:
        """Windows Setup's own progress percentage while it runs."""
        try:
            value = self.registry.read_value(SETUP_PROGRESS_KEY, "SetupProgress")
        except (ImportError, OSError) as e:
            self.logger.debug(f"SetupProgress unavailable: {e}")
            return None
        return int(value) if value is not None else None

    async def mount_iso(self, iso_path: Path) -> str:
        """Mount an ISO and return its drive root (e.g. "E:\\").

        Raises:
            RuntimeError: If the image cannot be mounted
        """
        script = (
            f"$img = Get-DiskImage -ImagePath '{iso_path}' -ErrorAction Stop; "
            f"if (-not $img.Attached) {{ $img = Mount-DiskImage -ImagePath '{iso_path}' -PassThru -ErrorAction Stop }}; "
            "($img | Get-Volume).DriveLetter"
        )
        result = await self.process_manager.run_powershell(script)
        letter = result.stdout.strip()[:1]
        if not result.ok or not letter.isalpha():
            raise RuntimeError(f"MOUNT_FAILED: {iso_path}: {result.stderr or result.stdout}")
        self.logger.info(f"Mounted {iso_path.name} at {letter}:\\")
        return f"{letter}:\\"

    async def dismount_iso(self, iso_path: Path) -> None:
        result = await self.process_manager.run_powershell(
            f"Dismount-DiskImage -ImagePath '{iso_path}' -ErrorAction Stop | Out-Null"
        )
        if result.ok:
            self.logger.info(f"Dismounted {iso_path.name}")
        else:
            self.logger.warning(f"Dismount of {iso_path.name} failed: {result.stderr}")

    async def reboot(self, delay_seconds: int, message: str) -> None:
        """Schedule an OS restart."""
        self.logger.warning(f"Restarting in {delay_seconds}s: {message}")
        await self.process_manager.run_checked(
            ["shutdown.exe", "/r", "/t", str(delay_seconds), "/c", message[:500]]
        )
