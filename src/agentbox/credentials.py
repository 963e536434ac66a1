"""Credential discovery for session containers.

Looks in the usual places and returns whatever it finds. A miss is
never fatal: the agent inside the container can still log in itself.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from agentbox.commands import CommandRunner, LocalCommandRunner

logger = logging.getLogger(__name__)

CONTAINER_HOME = "/home/claude"


@dataclass
class Credentials:
    """Environment variables and files to place into the container."""
    env: dict[str, str] = field(default_factory=dict)
    files: dict[str, bytes] = field(default_factory=dict)  # container path -> content

    @property
    def sources(self) -> list[str]:
        return sorted(self.env) + sorted(self.files)

    def is_empty(self) -> bool:
        return not self.env and not self.files


class CredentialProvider:
    """Discovers API keys and tool configs on the host."""

    API_KEY_VARS = ("ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN")
    GITHUB_VARS = ("GITHUB_TOKEN", "GH_TOKEN")

    def __init__(self, agent_config_path: str | Path | None = None,
                 runner: CommandRunner | None = None):
        self.agent_config_path = Path(
            agent_config_path or Path.home() / ".claude.json").expanduser()
        self.runner = runner or LocalCommandRunner()

    async def discover(self) -> Credentials | None:
        creds = Credentials()

        for var in self.API_KEY_VARS:
            value = os.environ.get(var)
            if value:
                creds.env[var] = value

        try:
            if await asyncio.to_thread(self.agent_config_path.is_file):
                creds.files[f"{CONTAINER_HOME}/.claude.json"] = await asyncio.to_thread(
                    self.agent_config_path.read_bytes)
        except OSError as e:
            logger.warning("Could not read %s: %s", self.agent_config_path, e)

        github_token = next(
            (os.environ[v] for v in self.GITHUB_VARS if os.environ.get(v)), None)
        if github_token is None:
            result = await self.runner.run(["gh", "auth", "token"])
            if result.success and result.stdout.strip():
                github_token = result.stdout.strip()
        if github_token:
            creds.env["GITHUB_TOKEN"] = github_token

        if creds.is_empty():
            logger.info("No credentials discovered")
            return None
        return creds
