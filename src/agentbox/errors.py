"""Error taxonomy.

Fatal at startup: ConfigurationError, NotAGitRepositoryError,
RuntimeConnectivityError. Everything else is handled closer to where it
happens (see recovery and orchestrator).
"""


class AgentboxError(Exception):
    """Base class for all agentbox errors."""


class ConfigurationError(AgentboxError):
    """Bad or missing configuration."""


class NotAGitRepositoryError(AgentboxError):
    """The working directory is not inside a git repository."""


class RuntimeConnectivityError(AgentboxError):
    """The container runtime cannot be reached."""


class ContainerStateError(AgentboxError):
    """Target container is missing or in a terminal state."""

    def __init__(self, container_id: str, message: str | None = None):
        self.container_id = container_id
        super().__init__(message or f"Container {container_id[:12]} not found")


class RecoveryActionError(AgentboxError):
    """A recovery sub-action (push, copy, discard) failed."""


class PersistenceError(AgentboxError):
    """The session store could not be written."""


class ExternalToolError(AgentboxError):
    """An external tool (git push, gh) reported failure."""
