"""Container runtime client (docker SDK).

One RuntimeClient is built per CLI invocation from the loaded config and
handed to every component that talks to the runtime. All SDK calls are
blocking, so each one is pushed onto a worker thread with
asyncio.to_thread to keep the event loop free.

Container lifecycle as seen by agentbox:
- running: container is up, sessions can attach
- stopped: container exists but is not running, can be restarted
- gone: the runtime does not know the container any more
"""

import asyncio
import io
import logging
import os
import shlex
import socket
import tarfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from agentbox.commands import CONTAINER_WORKDIR, CommandResult
from agentbox.config import SandboxConfig
from agentbox.errors import ContainerStateError, RuntimeConnectivityError

logger = logging.getLogger(__name__)

SANDBOX_LABEL = "agentbox.session"
SESSION_ENTRYPOINT = "/home/claude/start-session.sh"


class ContainerState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    GONE = "gone"


@dataclass
class ContainerSummary:
    """Row shown by list/stop/clean/purge."""
    id: str
    name: str
    state: str  # runtime's own status string: running, exited, created...
    started_at: str = ""
    branch: str = ""

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def is_running(self) -> bool:
        return self.state == "running"


@dataclass
class LaunchSpec:
    """Everything needed to create and prepare a session container."""
    branch_name: str
    work_dir: Path
    repo_name: str
    image: str
    files: list[str] = field(default_factory=list)
    credential_env: dict[str, str] = field(default_factory=dict)
    credential_files: dict[str, bytes] = field(default_factory=dict)
    pr_fetch_ref: str | None = None
    remote_fetch_ref: str | None = None
    container_prefix: str = "agentbox"
    restart_policy: str = "unless-stopped"
    shell: str = "claude"
    environment: dict[str, str] = field(default_factory=dict)
    setup_commands: list[str] = field(default_factory=list)


class ExecSession:
    """A hijacked, duplex exec stream with a TTY allocated."""

    def __init__(self, api: Any, exec_id: str, sock: Any):
        self._api = api
        self.exec_id = exec_id
        # docker-py wraps the raw socket in a SocketIO on unix transports
        self._sock = getattr(sock, "_sock", sock)
        self._closed = False

    async def resize(self, rows: int, cols: int) -> None:
        await asyncio.to_thread(
            self._api.exec_resize, self.exec_id, height=rows, width=cols)

    async def read(self, size: int = 4096) -> bytes:
        """Next chunk of output; b"" once the remote process has exited."""
        if self._closed:
            return b""
        try:
            return await asyncio.to_thread(self._sock.recv, size)
        except OSError:
            return b""

    async def write(self, data: bytes) -> None:
        if self._closed:
            return
        await asyncio.to_thread(self._sock.sendall, data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


@contextmanager
def _runtime_errors(container_id: str = "") -> Iterator[None]:
    """Re-raise docker SDK errors as agentbox errors.

    Daemon-side refusals become ContainerStateError; anything that never
    got an API response is a connectivity problem.
    """
    try:
        yield
    except ImageNotFound as e:
        raise ContainerStateError(
            container_id, f"Image not found: {e.explanation or e}") from e
    except NotFound as e:
        raise ContainerStateError(container_id) from e
    except APIError as e:
        raise ContainerStateError(
            container_id, f"Container runtime error: {e.explanation or e}") from e
    except DockerException as e:
        raise RuntimeConnectivityError(
            f"Cannot reach the container runtime: {e}") from e


def _summarize(container: Any) -> ContainerSummary:
    attrs = container.attrs or {}
    state = attrs.get("State") or {}
    labels = (attrs.get("Config") or {}).get("Labels") or {}
    return ContainerSummary(
        id=container.id,
        name=container.name,
        state=state.get("Status") or container.status,
        started_at=state.get("StartedAt", ""),
        branch=labels.get("agentbox.branch", ""),
    )


def _build_tar(root: Path, names: list[str]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name in names:
            path = root / name
            if path.exists() or path.is_symlink():
                tar.add(str(path), arcname=name)
    return buf.getvalue()


def _single_file_tar(name: str, content: bytes, mode: int = 0o600) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(content)
        info.mode = mode
        info.mtime = int(time.time())
        tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def git_setup_script(spec: LaunchSpec) -> str:
    """Shell script that puts /workspace on the session branch."""
    branch = shlex.quote(spec.branch_name)
    lines = [
        "set -e",
        f"cd {CONTAINER_WORKDIR}",
        f"git config --global --add safe.directory {CONTAINER_WORKDIR}",
    ]
    if spec.pr_fetch_ref:
        lines.append(f"git fetch origin {shlex.quote(spec.pr_fetch_ref)}")
        lines.append(f"git checkout {branch}")
    elif spec.remote_fetch_ref:
        remote, _, remote_branch = spec.remote_fetch_ref.partition("/")
        lines.append(f"git fetch {shlex.quote(remote)} {shlex.quote(remote_branch)}")
        lines.append(
            f"git checkout -B {branch} {shlex.quote(remote + '/' + remote_branch)}")
    else:
        lines.append(f"git checkout -B {branch}")
    lines.extend(spec.setup_commands)
    return "\n".join(lines)


class RuntimeClient:
    """Async facade over docker.DockerClient."""

    def __init__(self, client: Any):
        self.client = client

    @classmethod
    def from_config(cls, config: SandboxConfig) -> "RuntimeClient":
        """Connect to the runtime. Raises RuntimeConnectivityError."""
        try:
            if config.docker_socket_path:
                client = docker.DockerClient(
                    base_url=f"unix://{config.docker_socket_path}")
            else:
                client = docker.from_env()
            client.ping()
        except DockerException as e:
            raise RuntimeConnectivityError(
                f"Cannot connect to the container runtime: {e}") from e
        return cls(client)

    def _get(self, container_id: str) -> Any:
        try:
            return self.client.containers.get(container_id)
        except NotFound as e:
            raise ContainerStateError(container_id) from e

    # ── Status ─────────────────────────────────────────────

    def _state(self, container_id: str) -> ContainerState:
        with _runtime_errors(container_id):
            try:
                container = self.client.containers.get(container_id)
            except NotFound:
                return ContainerState.GONE
        state = (container.attrs or {}).get("State") or {}
        if state.get("Running"):
            return ContainerState.RUNNING
        return ContainerState.STOPPED

    async def state(self, container_id: str) -> ContainerState:
        """Tri-state status query; a missing container is GONE, not an error."""
        return await asyncio.to_thread(self._state, container_id)

    # ── Lifecycle ──────────────────────────────────────────

    def _start(self, container_id: str) -> None:
        with _runtime_errors(container_id):
            self._get(container_id).start()

    def _stop(self, container_id: str, timeout: int) -> None:
        with _runtime_errors(container_id):
            self._get(container_id).stop(timeout=timeout)

    def _remove(self, container_id: str, force: bool) -> None:
        with _runtime_errors(container_id):
            self._get(container_id).remove(force=force)

    async def start_container(self, container_id: str) -> None:
        await asyncio.to_thread(self._start, container_id)

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        await asyncio.to_thread(self._stop, container_id, timeout)

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        await asyncio.to_thread(self._remove, container_id, force)

    async def list_sandbox_containers(self, all: bool = True) -> list[ContainerSummary]:
        def _list() -> list[ContainerSummary]:
            with _runtime_errors():
                containers = self.client.containers.list(
                    all=all, filters={"label": SANDBOX_LABEL})
            return [_summarize(c) for c in containers]
        return await asyncio.to_thread(_list)

    def _create_and_prepare(self, spec: LaunchSpec) -> str:
        name = f"{spec.container_prefix}-{spec.repo_name}-{int(time.time())}"
        environment = {
            "REPO_NAME": spec.repo_name,
            "BRANCH_NAME": spec.branch_name,
            "DEFAULT_SHELL": spec.shell,
            **spec.environment,
            **spec.credential_env,
        }
        container = self.client.containers.create(
            spec.image,
            command=["sleep", "infinity"],
            name=name,
            detach=True,
            tty=True,
            stdin_open=True,
            working_dir=CONTAINER_WORKDIR,
            environment=environment,
            labels={
                SANDBOX_LABEL: "1",
                "agentbox.repo": str(spec.work_dir),
                "agentbox.branch": spec.branch_name,
            },
            restart_policy={"Name": spec.restart_policy},
        )
        try:
            container.start()
            container.exec_run(["mkdir", "-p", CONTAINER_WORKDIR])

            logger.info("Copying %d files into %s", len(spec.files), container.short_id)
            archive = _build_tar(spec.work_dir, [*spec.files, ".git"])
            container.put_archive(CONTAINER_WORKDIR, archive)

            for dest, content in spec.credential_files.items():
                parent = os.path.dirname(dest) or "/"
                container.exec_run(["mkdir", "-p", parent])
                container.put_archive(
                    parent, _single_file_tar(os.path.basename(dest), content))

            result = container.exec_run(
                ["/bin/bash", "-lc", git_setup_script(spec)], demux=True)
            if result.exit_code != 0:
                _, stderr = result.output
                raise ContainerStateError(
                    container.id,
                    f"Container setup failed: "
                    f"{(stderr or b'').decode('utf-8', errors='replace').strip()}",
                )
        except (DockerException, ContainerStateError):
            try:
                container.remove(force=True)
            except DockerException as e:
                logger.warning("Failed to remove half-started container: %s", e)
            raise
        return container.id

    def _launch(self, spec: LaunchSpec) -> ContainerSummary:
        with _runtime_errors():
            container_id = self._create_and_prepare(spec)
            return _summarize(self._get(container_id))

    async def launch(self, spec: LaunchSpec) -> ContainerSummary:
        """Create, start and prepare a session container."""
        return await asyncio.to_thread(self._launch, spec)

    # ── Exec / IO ──────────────────────────────────────────

    def _exec_run(self, container_id: str, cmd: list[str], workdir: str | None,
                  user: str | None) -> CommandResult:
        with _runtime_errors(container_id):
            container = self._get(container_id)
        kwargs: dict[str, Any] = {"demux": True}
        if workdir:
            kwargs["workdir"] = workdir
        if user:
            kwargs["user"] = user
        try:
            result = container.exec_run(cmd, **kwargs)
        except APIError as e:
            return CommandResult(success=False, stderr=str(e))
        stdout, stderr = result.output or (None, None)
        return CommandResult(
            success=result.exit_code == 0,
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
            exit_code=result.exit_code,
        )

    async def exec_run(self, container_id: str, cmd: list[str],
                       workdir: str | None = None, user: str | None = None) -> CommandResult:
        return await asyncio.to_thread(self._exec_run, container_id, cmd, workdir, user)

    def _open_exec(self, container_id: str, cmd: list[str]) -> ExecSession:
        api = self.client.api
        with _runtime_errors(container_id):
            exec_id = api.exec_create(
                container_id, cmd,
                stdin=True, stdout=True, stderr=True, tty=True,
            )["Id"]
            sock = api.exec_start(exec_id, tty=True, socket=True)
        return ExecSession(api, exec_id, sock)

    async def open_exec(self, container_id: str,
                        cmd: list[str] | None = None) -> ExecSession:
        """Interactive login shell running the session entrypoint."""
        cmd = cmd or ["/bin/bash", "-l", "-c", SESSION_ENTRYPOINT]
        return await asyncio.to_thread(self._open_exec, container_id, cmd)

    def logs(self, container_id: str, follow: bool = False, tail: int = 50) -> Iterator[bytes]:
        """Blocking log stream (stdout and stderr interleaved)."""
        with _runtime_errors(container_id):
            container = self._get(container_id)
            yield from container.logs(stream=True, follow=follow, tail=tail)

    def _export(self, container_id: str, src: str, dest: Path) -> None:
        with _runtime_errors(container_id):
            bits, _ = self._get(container_id).get_archive(src)
            with open(dest, "wb") as f:
                for chunk in bits:
                    f.write(chunk)

    async def export_path(self, container_id: str, src: str, dest: Path) -> None:
        """Write a tar archive of `src` inside the container to `dest`."""
        await asyncio.to_thread(self._export, container_id, src, dest)

    def close(self) -> None:
        try:
            self.client.close()
        except DockerException:
            pass
