"""Filesystem cleanup used by the disk gate, self-repair and completion paths."""

import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, Optional

from upgrader.models.config import UpgradeConfig
from upgrader.services.host import HostPlatform
from upgrader.utils.verification import delete_with_sidecar

SETUP_FOLDERS = ("$WINDOWS.~BT", "$WINDOWS.~WS")


class CleanupService:
    """Removes partial artifacts and reclaimable disk space."""

    def __init__(self, config: UpgradeConfig, host: HostPlatform):
        self.logger = logging.getLogger("upgrader.cleanup")
        self.config = config
        self.host = host

    def partial_artifacts(self) -> list[Path]:
        """Leftovers from interrupted downloads and marker writes."""
        found: list[Path] = []
        for directory, patterns in (
            (self.config.download_dir, ("*.part", "*.tmp")),
            (self.config.state_dir, (".*.tmp",)),
        ):
            if directory.exists():
                for pattern in patterns:
                    found.extend(p for p in directory.glob(pattern) if p.is_file())
        return found

    def cleanup_partial_artifacts(self, keep_iso: bool = True) -> int:
        """Delete partial downloads and temp files; the ISO only if keep_iso is False.

        Returns:
            Bytes reclaimed
        """
        reclaimed = self._remove_paths(self.partial_artifacts())
        iso = self.config.iso_path
        if not keep_iso and iso.exists():
            reclaimed += iso.stat().st_size
            delete_with_sidecar(iso)
            self.logger.info(f"Deleted ISO {iso.name}")
        self.logger.info(f"Partial artifact cleanup reclaimed {reclaimed / 1024**2:.1f} MB")
        return reclaimed

    def clear_setup_folders(self) -> int:
        """Remove leftovers of previous Windows Setup runs."""
        drive = self.host.system_drive()
        return self._remove_paths(drive / name for name in SETUP_FOLDERS)

    def free_disk_space(self) -> int:
        """Best reclaimable space without touching user data or a staged upgrade.

        Returns:
            Bytes reclaimed
        """
        reclaimed = self._remove_paths(self.partial_artifacts())
        system_root = Path(os.environ.get("SystemRoot", str(self.host.system_drive() / "Windows")))
        for directory in (
            system_root / "Temp",
            system_root / "SoftwareDistribution" / "Download",
        ):
            if directory.exists():
                reclaimed += self._remove_paths(directory.iterdir())
        self.logger.info(f"Disk cleanup reclaimed {reclaimed / 1024**3:.2f} GB")
        return reclaimed

    def failure_cleanup(self) -> None:
        """After a recorded failure: drop partials, keep a reusable ISO."""
        self.cleanup_partial_artifacts(keep_iso=True)

    def completion_cleanup(self) -> None:
        """After the upgrade completed: remove all media."""
        self.cleanup_partial_artifacts(keep_iso=False)
        self.clear_setup_folders()

    def _remove_paths(self, paths: Iterable[Path]) -> int:
        reclaimed = 0
        for path in paths:
            size = self._size_of(path)
            if size is None:
                continue
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                else:
                    path.unlink()
                reclaimed += size
                self.logger.debug(f"Removed {path}")
            except OSError as e:
                self.logger.warning(f"Could not remove {path}: {e}")
        return reclaimed

    def _size_of(self, path: Path) -> Optional[int]:
        try:
            if path.is_dir() and not path.is_symlink():
                return sum(
                    f.stat().st_size for f in path.rglob("*") if f.is_file()
                )
            if path.exists() or path.is_symlink():
                return path.lstat().st_size
        except OSError as e:
            self.logger.debug(f"Cannot size {path}: {e}")
            return 0
        return None
