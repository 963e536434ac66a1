"""Narrow command-runner interface for git and gh.

Callers get a CommandResult back instead of raw exit codes or
CalledProcessError, so recovery and the commit loop only ever branch
on `result.success`.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentbox.runtime import RuntimeClient

logger = logging.getLogger(__name__)

CONTAINER_WORKDIR = "/workspace"


@dataclass
class CommandResult:
    """Outcome of one external command."""
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None

    @property
    def message(self) -> str:
        """Best human-readable explanation of the result."""
        text = (self.stderr or self.stdout).strip()
        if text:
            return text
        if self.success:
            return "ok"
        return f"exited with status {self.exit_code}"


class CommandRunner(ABC):
    """Runs an argv somewhere (host or container) and reports the outcome."""

    @abstractmethod
    async def run(self, args: list[str], cwd: str | Path | None = None) -> CommandResult:
        ...


class LocalCommandRunner(CommandRunner):
    """Runs commands on the host with asyncio subprocesses."""

    def __init__(self, cwd: str | Path | None = None, timeout: float | None = 300):
        self.cwd = cwd
        self.timeout = timeout

    async def run(self, args: list[str], cwd: str | Path | None = None) -> CommandResult:
        workdir = cwd or self.cwd
        logger.debug("run %s (cwd=%s)", args, workdir)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(workdir) if workdir else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            return CommandResult(success=False, stderr=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return CommandResult(
                success=False,
                stderr=f"{args[0]} timed out after {self.timeout}s",
            )

        return CommandResult(
            success=proc.returncode == 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=proc.returncode,
        )


class ContainerCommandRunner(CommandRunner):
    """Runs commands inside a session container (default cwd /workspace)."""

    def __init__(self, runtime: "RuntimeClient", container_id: str, user: str | None = None):
        self.runtime = runtime
        self.container_id = container_id
        self.user = user

    async def run(self, args: list[str], cwd: str | Path | None = None) -> CommandResult:
        workdir = str(cwd) if cwd else CONTAINER_WORKDIR
        return await self.runtime.exec_run(
            self.container_id, args, workdir=workdir, user=self.user)
