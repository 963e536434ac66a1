"""Shared fakes for agentbox tests.

Docker, git, the terminal and the human operator are replaced by
in-memory stand-ins implementing the same narrow interfaces.
"""

import asyncio
import io
import tarfile
from pathlib import Path
from typing import Sequence

import pytest

from agentbox.attach import LocalTerminal
from agentbox.commands import CommandResult, CommandRunner
from agentbox.errors import ContainerStateError
from agentbox.prompts import Operator
from agentbox.runtime import ContainerState, ContainerSummary, LaunchSpec
from agentbox.sessions import SessionRecord, SessionStore
from agentbox.shadow import ShadowRepo


# ── Command runner ────────────────────────────────────────────

class FakeRunner(CommandRunner):
    """Answers commands by longest matching argv prefix."""

    def __init__(self, responses: dict[tuple[str, ...], CommandResult] | None = None):
        self.responses = dict(responses or {})
        self.calls: list[list[str]] = []

    def on(self, *prefix: str, stdout: str = "", success: bool = True,
           stderr: str = "") -> "FakeRunner":
        self.responses[prefix] = CommandResult(
            success=success, stdout=stdout, stderr=stderr,
            exit_code=0 if success else 1)
        return self

    async def run(self, args: list[str], cwd=None) -> CommandResult:
        self.calls.append(list(args))
        best: tuple[str, ...] | None = None
        for prefix in self.responses:
            if tuple(args[:len(prefix)]) == prefix:
                if best is None or len(prefix) > len(best):
                    best = prefix
        if best is None:
            return CommandResult(success=False, stderr=f"unexpected: {args}", exit_code=127)
        return self.responses[best]

    def called(self, *prefix: str) -> bool:
        return any(tuple(c[:len(prefix)]) == prefix for c in self.calls)


# ── Operator ──────────────────────────────────────────────────

class ScriptedOperator(Operator):
    """Replays canned answers and records every question."""

    def __init__(self, choices: Sequence[str] = (), confirms: Sequence[bool] = (),
                 answers: Sequence[str] = ()):
        self.choices = list(choices)
        self.confirms = list(confirms)
        self.answers = list(answers)
        self.asked: list[str] = []

    async def choose(self, message, choices, default=None) -> str:
        self.asked.append(message)
        return self.choices.pop(0)

    async def confirm(self, message, default=False) -> bool:
        self.asked.append(message)
        return self.confirms.pop(0)

    async def ask(self, message, default=None) -> str:
        self.asked.append(message)
        return self.answers.pop(0) if self.answers else default


# ── Container runtime ─────────────────────────────────────────

def workspace_tar(files: dict[str, bytes]) -> bytes:
    """What get_archive("/workspace") returns: entries under workspace/."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        info = tarfile.TarInfo("workspace")
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
        tar.addfile(info)
        for name, content in files.items():
            info = tarfile.TarInfo(f"workspace/{name}")
            info.size = len(content)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


class FakeStream:
    """Remote side of an exec: scripted output, recorded input."""

    def __init__(self, chunks: Sequence[bytes] = (), hold_open: bool = False):
        self._chunks: asyncio.Queue[bytes] = asyncio.Queue()
        for chunk in chunks:
            self._chunks.put_nowait(chunk)
        if not hold_open:
            self._chunks.put_nowait(b"")
        self.written: list[bytes] = []
        self.sizes: list[tuple[int, int]] = []
        self.closed = 0

    def end(self) -> None:
        self._chunks.put_nowait(b"")

    async def resize(self, rows: int, cols: int) -> None:
        self.sizes.append((rows, cols))

    async def read(self, size: int = 4096) -> bytes:
        return await self._chunks.get()

    async def write(self, data: bytes) -> None:
        self.written.append(data)

    def close(self) -> None:
        self.closed += 1


class FakeRuntime:
    """In-memory stand-in for RuntimeClient."""

    def __init__(self):
        self.containers: dict[str, ContainerSummary] = {}
        self.launched: list[LaunchSpec] = []
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.removed: list[str] = []
        self.workspace: dict[str, bytes] = {"README.md": b"hello\n"}
        self.streams: list[FakeStream] = []
        self.stream_factory = lambda: FakeStream([b"welcome\r\n"])
        self.fail_start = False

    def add(self, container_id: str, state: str = "running", name: str = "",
            branch: str = "") -> ContainerSummary:
        summary = ContainerSummary(
            id=container_id, name=name or f"agentbox-{container_id[:6]}",
            state=state, branch=branch)
        self.containers[container_id] = summary
        return summary

    def _find(self, container_id: str) -> ContainerSummary:
        if container_id not in self.containers:
            raise ContainerStateError(container_id)
        return self.containers[container_id]

    async def state(self, container_id: str) -> ContainerState:
        c = self.containers.get(container_id)
        if c is None:
            return ContainerState.GONE
        return ContainerState.RUNNING if c.is_running else ContainerState.STOPPED

    async def start_container(self, container_id: str) -> None:
        if self.fail_start:
            raise ContainerStateError(container_id, "cannot start")
        self._find(container_id).state = "running"
        self.started.append(container_id)

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        self._find(container_id).state = "exited"
        self.stopped.append(container_id)

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        self._find(container_id)
        del self.containers[container_id]
        self.removed.append(container_id)

    async def list_sandbox_containers(self, all: bool = True) -> list[ContainerSummary]:
        return [c for c in self.containers.values() if all or c.is_running]

    async def launch(self, spec: LaunchSpec) -> ContainerSummary:
        self.launched.append(spec)
        container_id = f"{len(self.launched):012d}" + "f" * 52
        return self.add(container_id, branch=spec.branch_name)

    async def exec_run(self, container_id, cmd, workdir=None, user=None) -> CommandResult:
        return CommandResult(success=False, stderr="no exec in fake")

    async def open_exec(self, container_id: str, cmd=None) -> FakeStream:
        self._find(container_id)
        stream = self.stream_factory()
        self.streams.append(stream)
        return stream

    async def export_path(self, container_id: str, src: str, dest: Path) -> None:
        self._find(container_id)
        Path(dest).write_bytes(workspace_tar(self.workspace))

    def close(self) -> None:
        pass


# ── Terminal ──────────────────────────────────────────────────

class FakeTerminal(LocalTerminal):
    def __init__(self, rows: int = 40, cols: int = 120):
        self.rows = rows
        self.cols = cols
        self.raw = False
        self.restored = 0
        self.output = bytearray()
        self.subscribed = False
        self.unsubscribed = 0
        self.on_input = None
        self.on_resize = None
        self.on_interrupt = None
        self.input_paused = False

    def size(self) -> tuple[int, int]:
        return self.rows, self.cols

    def enter_raw(self) -> None:
        self.raw = True

    def restore(self) -> None:
        self.raw = False
        self.restored += 1

    def write(self, data: bytes) -> None:
        self.output.extend(data)

    def subscribe(self, on_input, on_resize, on_interrupt) -> None:
        self.subscribed = True
        self.on_input = on_input
        self.on_resize = on_resize
        self.on_interrupt = on_interrupt

    def unsubscribe(self) -> None:
        self.subscribed = False
        self.unsubscribed += 1

    def pause_input(self) -> None:
        self.input_paused = True

    def resume_input(self) -> None:
        self.input_paused = False


# ── Fixtures ──────────────────────────────────────────────────

@pytest.fixture
def store(tmp_path) -> SessionStore:
    return SessionStore(tmp_path / "cache" / "sessions.json")


@pytest.fixture
def shadows(tmp_path) -> ShadowRepo:
    return ShadowRepo(tmp_path / "cache" / "shadows")


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


def make_record(container_id: str, shadows: ShadowRepo, **overrides) -> SessionRecord:
    fields = dict(
        container_id=container_id,
        container_name=f"agentbox-{container_id[:6]}",
        repo_path="/home/dev/project",
        branch_name="agentbox/2024-05-01-1714521600000",
        original_branch="main",
        shadow_repo_path=str(shadows.path_for(container_id[:12])),
    )
    fields.update(overrides)
    return SessionRecord(**fields)
