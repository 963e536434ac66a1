"""Configuration loading.

Settings are merged in order: built-in defaults < global config
(~/.config/agentbox/config.yaml) < project config (./agentbox.config.yaml
unless -c/--config says otherwise). Files are YAML; plain JSON files
parse as well, and camelCase keys are accepted alongside snake_case.
"""

import logging
import os
import re
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from agentbox.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "./agentbox.config.yaml"
GLOBAL_CONFIG_PATH = Path.home() / ".config" / "agentbox" / "config.yaml"

SHELLS = ("claude", "bash")


def get_cache_dir() -> Path:
    """Per-user cache directory holding the session store and shadow repos."""
    override = os.environ.get("AGENTBOX_CACHE_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".cache" / "agentbox"


def get_session_store_path() -> Path:
    return get_cache_dir() / "sessions.json"


def get_shadow_base_path() -> Path:
    return get_cache_dir() / "shadows"


@dataclass
class SandboxConfig:
    """Everything needed to launch and drive one sandbox session."""
    docker_image: str = "agentbox:latest"
    container_prefix: str = "agentbox"
    docker_socket_path: str | None = None

    # Agent
    default_shell: str = "claude"  # claude | bash
    auto_start_agent: bool = True
    agent_config_path: str = str(Path.home() / ".claude.json")
    allowed_tools: list[str] = field(default_factory=lambda: ["*"])
    setup_commands: list[str] = field(default_factory=list)

    # Git workflow
    auto_push: bool = True
    auto_create_pr: bool = True
    include_untracked: bool = False
    auto_commit: bool = True
    auto_commit_interval_minutes: int = 5
    monitor_interval_seconds: float = 2.0

    # Branch selection (set from CLI flags)
    target_branch: str | None = None
    remote_branch: str | None = None
    pr_number: int | None = None

    # Container lifecycle
    restart_policy: str = "unless-stopped"
    environment: dict[str, str] = field(default_factory=dict)

    # Web UI
    use_web_ui: bool = True
    web_ui_host: str = "127.0.0.1"
    web_ui_port: int = 3456

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_FIELD_NAMES = {f.name for f in fields(SandboxConfig)}


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _load_file(path: Path) -> dict[str, Any]:
    """Read one config file. Missing file -> empty mapping."""
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read config {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config {path} must be a mapping, got {type(data).__name__}")

    normalized: dict[str, Any] = {}
    for key, value in data.items():
        name = _snake_case(str(key))
        # Older config files used "autoCreatePR" / "dockerImage" etc.
        if name == "auto_create_p_r":
            name = "auto_create_pr"
        if name == "auto_start_claude":
            name = "auto_start_agent"
        if name == "claude_config_path":
            name = "agent_config_path"
        if name not in _FIELD_NAMES:
            logger.warning("Ignoring unknown config key %r in %s", key, path)
            continue
        normalized[name] = value
    return normalized


def load_config(
    config_path: str | Path = DEFAULT_CONFIG_FILE,
    global_path: Path | None = None,
) -> SandboxConfig:
    """Load configuration: defaults < global < project."""
    merged: dict[str, Any] = {}
    merged.update(_load_file(global_path or GLOBAL_CONFIG_PATH))
    merged.update(_load_file(Path(config_path).expanduser().resolve()))

    try:
        config = SandboxConfig(**merged)
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    validate_config(config)
    return config


def validate_config(config: SandboxConfig) -> None:
    if config.default_shell not in SHELLS:
        raise ConfigurationError(
            f"default_shell must be one of {', '.join(SHELLS)}, "
            f"got {config.default_shell!r}")
    if config.auto_commit_interval_minutes < 1:
        raise ConfigurationError("auto_commit_interval_minutes must be >= 1")
    if config.pr_number is not None and config.pr_number < 1:
        raise ConfigurationError(f"Invalid PR number: {config.pr_number}")


def save_config(config: SandboxConfig, config_path: str | Path) -> Path:
    """Write configuration as YAML."""
    path = Path(config_path).expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False)
    return path
