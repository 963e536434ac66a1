"""Git and gh operations on top of a CommandRunner.

The same GitRepo works on the host (LocalCommandRunner), inside a
session container (ContainerCommandRunner) or on a shadow repo.
"""

import json
import logging
from pathlib import Path

from agentbox.commands import CommandResult, CommandRunner
from agentbox.errors import ExternalToolError

logger = logging.getLogger(__name__)


class GitRepo:
    """A working copy reachable through a command runner."""

    def __init__(self, runner: CommandRunner, path: str | Path | None = None):
        self.runner = runner
        self.path = path

    async def git(self, *args: str) -> CommandResult:
        return await self.runner.run(["git", *args], cwd=self.path)

    async def is_repo(self) -> bool:
        result = await self.git("rev-parse", "--is-inside-work-tree")
        return result.success and result.stdout.strip() == "true"

    async def toplevel(self) -> str | None:
        result = await self.git("rev-parse", "--show-toplevel")
        return result.stdout.strip() if result.success else None

    async def current_branch(self) -> str:
        result = await self.git("branch", "--show-current")
        if not result.success:
            raise ExternalToolError(f"git branch failed: {result.message}")
        return result.stdout.strip()

    async def has_remote(self, name: str = "origin") -> bool:
        result = await self.git("remote")
        if not result.success:
            return False
        return name in result.stdout.split()

    async def add_all(self) -> CommandResult:
        return await self.git("add", "-A")

    async def commit(self, message: str) -> CommandResult:
        return await self.git("commit", "-m", message)

    async def push(self, remote: str, branch: str, set_upstream: bool = False) -> CommandResult:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        return await self.git(*args, remote, branch)

    async def head(self, ref: str = "HEAD") -> str | None:
        result = await self.git("rev-parse", "--verify", "--quiet", ref)
        return result.stdout.strip() if result.success else None

    async def parent_of(self, sha: str) -> str | None:
        return await self.head(f"{sha}^")

    async def commit_info(self, sha: str) -> tuple[str, str]:
        """(subject, author) for a commit."""
        result = await self.git("log", "-1", "--format=%s%x00%an", sha)
        if not result.success:
            return "", ""
        subject, _, author = result.stdout.strip().partition("\x00")
        return subject, author

    async def diff(self, base: str | None, head: str) -> str:
        if base is None:
            result = await self.git("show", "--format=", head)
        else:
            result = await self.git("diff", base, head)
        return result.stdout if result.success else ""

    async def list_files(self, include_untracked: bool = False) -> list[str]:
        """Files to copy into a container: tracked, optionally untracked too."""
        result = await self.git("ls-files", "-z")
        if not result.success:
            raise ExternalToolError(f"git ls-files failed: {result.message}")
        files = [f for f in result.stdout.split("\x00") if f]
        if include_untracked:
            others = await self.git("ls-files", "-z", "--others", "--exclude-standard")
            if others.success:
                files.extend(f for f in others.stdout.split("\x00") if f)
        return files


async def resolve_pr_branch(runner: CommandRunner, pr_number: int,
                            cwd: str | Path | None = None) -> str:
    """Head branch name of a pull request, via `gh pr view`."""
    result = await runner.run(
        ["gh", "pr", "view", str(pr_number), "--json", "headRefName"], cwd=cwd)
    if not result.success:
        raise ExternalToolError(
            f"Failed to get PR #{pr_number} info: {result.message}")
    try:
        return json.loads(result.stdout)["headRefName"]
    except (ValueError, KeyError, TypeError) as e:
        raise ExternalToolError(
            f"Unexpected gh output for PR #{pr_number}: {result.stdout!r}") from e


async def create_pull_request(runner: CommandRunner,
                              cwd: str | Path | None = None) -> CommandResult:
    return await runner.run(["gh", "pr", "create", "--fill"], cwd=cwd)
