"""System-wide single-instance lock."""

import logging
import os
from pathlib import Path
from typing import Optional

import psutil

ENTRY_MODULE = "upgrader.main"


class InstanceLock:
    """Exclusive non-blocking lock on a file under the state directory.

    Uses msvcrt.locking() on Windows and fcntl.flock() elsewhere; the OS
    drops the lock when the process dies. The lock file holds the owner PID
    for diagnostics.

    If the lock file cannot be opened at all, falls back to scanning the
    process list for another orchestrator. That fallback is not atomic: two
    processes starting at the same instant can both pass it.
    """

    def __init__(self, lock_path: Path, command_marker: str = ENTRY_MODULE):
        self.logger = logging.getLogger("upgrader.lock")
        self.lock_path = Path(lock_path)
        self.command_marker = command_marker
        self._fd: Optional[int] = None

    def acquire(self) -> bool:
        """Try to take the lock. Returns False if another instance holds it."""
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            self._fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
        except OSError as e:
            self.logger.warning(f"Lock file unavailable ({e}), falling back to process scan")
            return not self.other_instance_running()

        try:
            os.lseek(self._fd, 0, os.SEEK_SET)
            self._lock(self._fd)
        except OSError:
            owner = self._read_owner()
            os.close(self._fd)
            self._fd = None
            self.logger.info(f"Another instance holds the lock (PID {owner or 'unknown'})")
            return False

        os.ftruncate(self._fd, 0)
        os.lseek(self._fd, 0, os.SEEK_SET)
        os.write(self._fd, str(os.getpid()).encode())
        self.logger.debug(f"Acquired lock {self.lock_path}")
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.lseek(self._fd, 0, os.SEEK_SET)
            self._unlock(self._fd)
        except OSError as e:
            self.logger.debug(f"Unlock failed: {e}")
        os.close(self._fd)
        self._fd = None

    def other_instance_running(self) -> bool:
        """Best-effort: another process whose command line runs the entry module.

        This process and its ancestors are skipped; a launching shell such as
        ``powershell -Command "python -m upgrader.main"`` carries the marker too.
        """
        own = {os.getpid()}
        try:
            own.update(parent.pid for parent in psutil.Process().parents())
        except psutil.Error as e:
            self.logger.debug(f"Could not list parent processes: {e}")

        for proc in psutil.process_iter(["pid", "cmdline"]):
            if proc.info["pid"] in own:
                continue
            cmdline = " ".join(proc.info.get("cmdline") or [])
            if self.command_marker in cmdline:
                self.logger.info(f"Found running instance PID {proc.info['pid']}")
                return True
        return False

    def _read_owner(self) -> Optional[str]:
        try:
            return self.lock_path.read_text(encoding="utf-8").strip() or None
        except OSError:
            return None

    @staticmethod
    def _lock(fd: int) -> None:
        if os.name == "nt":
            import msvcrt

            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        else:
            import fcntl

            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)

    @staticmethod
    def _unlock(fd: int) -> None:
        if os.name == "nt":
            import msvcrt

            msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
        else:
            import fcntl

            fcntl.flock(fd, fcntl.LOCK_UN)
