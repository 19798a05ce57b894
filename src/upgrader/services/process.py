"""Child process helpers for PowerShell, schtasks and other Windows tools."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

POWERSHELL = "powershell.exe"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished child process."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessManager:
    """Runs child processes on the event loop."""

    DEFAULT_TIMEOUT = 300.0

    def __init__(self):
        """Initialize process manager."""
        self.logger = logging.getLogger("upgrader.process")

    async def run(
        self, args: Sequence[str], timeout: Optional[float] = DEFAULT_TIMEOUT
    ) -> CommandResult:
        """Run a command to completion and capture its output.

        Args:
            args: Program and arguments (no shell)
            timeout: Seconds before the child is killed

        Returns:
            CommandResult with decoded stdout/stderr

        Raises:
            TimeoutError: If the command exceeds timeout
            OSError: If the program cannot be started
        """
        self.logger.debug(f"Running: {' '.join(args)}")
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TimeoutError(f"COMMAND_TIMEOUT: {args[0]} exceeded {timeout}s")

        result = CommandResult(
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace").strip(),
            stderr=stderr.decode(errors="replace").strip(),
        )
        if not result.ok:
            self.logger.debug(f"{args[0]} exited {result.returncode}: {result.stderr}")
        return result

    async def run_checked(
        self, args: Sequence[str], timeout: Optional[float] = DEFAULT_TIMEOUT
    ) -> CommandResult:
        """Run a command and raise if it exits non-zero.

        Raises:
            RuntimeError: If the command exits non-zero
        """
        result = await self.run(args, timeout=timeout)
        if not result.ok:
            raise RuntimeError(
                f"COMMAND_FAILED: {args[0]} exit code {result.returncode}, "
                f"stderr: {result.stderr}"
            )
        return result

    async def run_powershell(
        self, script: str, timeout: Optional[float] = DEFAULT_TIMEOUT
    ) -> CommandResult:
        """Run a PowerShell snippet non-interactively."""
        return await self.run(
            [
                POWERSHELL,
                "-NoProfile",
                "-NonInteractive",
                "-ExecutionPolicy",
                "Bypass",
                "-Command",
                script,
            ],
            timeout=timeout,
        )

    async def spawn(self, args: Sequence[str]) -> asyncio.subprocess.Process:
        """Start a child without waiting for it."""
        self.logger.debug(f"Spawning: {' '.join(args)}")
        return await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
