"""Running a command with administrator rights."""

from __future__ import annotations

import asyncio
import os
import shlex
import shutil
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ElevationResult:
    """Exit status and output of an elevated command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    denied: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.denied


@runtime_checkable
class Elevator(Protocol):
    """Runs argv as root, prompting the user when needed."""

    name: str

    async def run(self, argv: list[str]) -> ElevationResult:
        ...


class _SubprocessElevator(ABC):
    """Runs the elevating wrapper command as a child process."""

    name = "subprocess"

    @abstractmethod
    def command(self, argv: list[str]) -> list[str]:
        """Full argv that runs ``argv`` with elevated rights."""

    def is_denied(self, returncode: int, stderr: str) -> bool:
        return False

    async def run(self, argv: list[str]) -> ElevationResult:
        command = self.command(argv)
        logger.debug("Running elevated command", elevator=self.name, argv=argv)
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # An unanswered prompt must not outlive the caller
            logger.warning("Elevated command cancelled", elevator=self.name, pid=proc.pid)
            if proc.returncode is None and self._kill(proc):
                await proc.wait()
            raise
        returncode = proc.returncode if proc.returncode is not None else -1
        err = stderr.decode(errors="replace")
        return ElevationResult(
            returncode=returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=err,
            denied=returncode != 0 and self.is_denied(returncode, err),
        )

    def _kill(self, proc: asyncio.subprocess.Process) -> bool:
        try:
            proc.kill()
        except ProcessLookupError:
            return True
        except PermissionError:
            # setuid wrappers such as pkexec cannot be signalled by the user
            logger.warning("Cannot stop elevated command", elevator=self.name, pid=proc.pid)
            return False
        return True


class DirectElevator(_SubprocessElevator):
    """No prompt; for processes already running as root."""

    name = "none"

    def command(self, argv: list[str]) -> list[str]:
        return list(argv)


class SudoElevator(_SubprocessElevator):
    """Non-interactive sudo; needs a NOPASSWD rule or a cached credential."""

    name = "sudo"

    def command(self, argv: list[str]) -> list[str]:
        return ["sudo", "-n", *argv]

    def is_denied(self, returncode: int, stderr: str) -> bool:
        return "password is required" in stderr or "not in the sudoers" in stderr


class PkexecElevator(_SubprocessElevator):
    """Polkit prompt on Linux desktops."""

    name = "pkexec"

    def command(self, argv: list[str]) -> list[str]:
        return ["pkexec", *argv]

    def is_denied(self, returncode: int, stderr: str) -> bool:
        # 126: dialog dismissed, 127: not authorized
        return returncode in (126, 127)


class OsascriptElevator(_SubprocessElevator):
    """macOS administrator prompt through AppleScript."""

    name = "osascript"

    def command(self, argv: list[str]) -> list[str]:
        script = shlex.join(argv).replace("\\", "\\\\").replace('"', '\\"')
        return ["osascript", "-e", f'do shell script "{script}" with administrator privileges']

    def is_denied(self, returncode: int, stderr: str) -> bool:
        return "-128" in stderr or "User canceled" in stderr


def create_elevator(kind: str = "auto") -> Elevator:
    """
    Build an elevator.

    Args:
        kind: auto, osascript, pkexec, sudo or none
    """
    if kind == "none":
        return DirectElevator()
    if kind == "osascript":
        return OsascriptElevator()
    if kind == "pkexec":
        return PkexecElevator()
    if kind == "sudo":
        return SudoElevator()
    if kind != "auto":
        raise ValueError(f"Unknown elevator: {kind}")

    if os.geteuid() == 0:
        return DirectElevator()
    if sys.platform == "darwin":
        return OsascriptElevator()
    if shutil.which("pkexec"):
        return PkexecElevator()
    return SudoElevator()
