"""Session recovery after crashes, reboots and disconnects.

Three sources of truth can disagree after a crash: the session store,
the container runtime and the shadow repo on disk. The engine joins them
into RecoverableSession views and picks actions from a fixed table:

    container   shadow   actions
    running     any      reattach
    stopped     any      resume (restart, then reattach)
    gone        yes      push | copy | show | discard
    gone        no       remove (unrecoverable, record is pruned)

Sub-action failures never escape the engine. They come back as a failed
ActionOutcome with the shadow repo and record left exactly as they were.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from rich.console import Console

from agentbox.commands import CommandRunner, LocalCommandRunner
from agentbox.errors import (
    ContainerStateError,
    RecoveryActionError,
    RuntimeConnectivityError,
)
from agentbox.git import GitRepo
from agentbox.prompts import Operator
from agentbox.runtime import ContainerState, RuntimeClient
from agentbox.sessions import SessionRecord, SessionStatus, SessionStore, utc_now
from agentbox.shadow import ShadowRepo

logger = logging.getLogger(__name__)

console = Console()

Reattach = Callable[[SessionRecord], Awaitable[None]]
RunnerFactory = Callable[[Path], CommandRunner]


class RecoveryAction(str, Enum):
    REATTACH = "reattach"
    RESUME = "resume"
    PUSH = "push"
    COPY = "copy"
    SHOW = "show"
    DISCARD = "discard"
    REMOVE = "remove"


ACTION_LABELS = {
    RecoveryAction.PUSH: "Push to remote (if remote is configured)",
    RecoveryAction.COPY: "Copy to a local path",
    RecoveryAction.SHOW: "Show the shadow repo path (and keep it)",
    RecoveryAction.DISCARD: "Discard (delete shadow repo and session record)",
}


def available_actions(state: ContainerState, shadow_exists: bool) -> tuple[RecoveryAction, ...]:
    """The decision table. Order is the order offered to the operator."""
    if state == ContainerState.RUNNING:
        return (RecoveryAction.REATTACH,)
    if state == ContainerState.STOPPED:
        return (RecoveryAction.RESUME,)
    if shadow_exists:
        return (
            RecoveryAction.PUSH,
            RecoveryAction.COPY,
            RecoveryAction.SHOW,
            RecoveryAction.DISCARD,
        )
    return (RecoveryAction.REMOVE,)


@dataclass(frozen=True)
class RecoverableSession:
    """A SessionRecord joined with live runtime and filesystem facts."""
    record: SessionRecord
    container_state: ContainerState
    shadow_exists: bool

    @property
    def container_id(self) -> str:
        return self.record.container_id

    @property
    def session_id(self) -> str:
        return self.record.session_id

    @property
    def recoverable(self) -> bool:
        return self.container_state != ContainerState.GONE or self.shadow_exists

    @property
    def actions(self) -> tuple[RecoveryAction, ...]:
        return available_actions(self.container_state, self.shadow_exists)


@dataclass
class ActionOutcome:
    """What a recovery action did."""
    action: RecoveryAction
    success: bool
    message: str
    retired: bool = False  # session record removed from the store


def describe_age(iso_timestamp: str, now: datetime | None = None) -> str:
    """'5m ago', '3h ago', '2d ago'."""
    try:
        then = datetime.fromisoformat(iso_timestamp)
    except ValueError:
        return "unknown"
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    minutes = max(0, int((now - then).total_seconds() // 60))
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def _recovery_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")


class RecoveryEngine:
    """Reconciles stored sessions with reality and runs recovery actions.

    Usage:
        engine = RecoveryEngine(store, runtime, shadows, operator, reattach=attach)
        sessions = await engine.scan()
        outcome = await engine.recover(sessions[0])
    """

    def __init__(
        self,
        store: SessionStore,
        runtime: RuntimeClient,
        shadows: ShadowRepo,
        operator: Operator,
        reattach: Reattach | None = None,
        runner_factory: RunnerFactory | None = None,
        out: Console | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.shadows = shadows
        self.operator = operator
        self._reattach = reattach
        self._runner_factory = runner_factory or (lambda path: LocalCommandRunner(cwd=path))
        self.console = out or console

    # ── Reconciliation ─────────────────────────────────────

    async def classify(self, record: SessionRecord) -> RecoverableSession:
        state = await self.runtime.state(record.container_id)
        shadow_exists = await self.shadows.exists(record.shadow_repo_path)
        return RecoverableSession(record, state, shadow_exists)

    async def scan(self, prune: bool = True) -> list[RecoverableSession]:
        """Recoverable sessions, in store order.

        Sessions whose container is gone and whose shadow repo is missing
        are never returned; with prune=True their records are deleted.
        """
        results = []
        for record in await self.store.load():
            session = await self.classify(record)
            if session.recoverable:
                results.append(session)
            elif prune:
                logger.info("Pruning unrecoverable session %s", record.session_id)
                await self.store.remove_session(record.container_id)
        return results

    async def prune_missing_containers(self) -> int:
        """Drop records whose container and shadow repo are both gone."""
        removed = 0
        for record in await self.store.load():
            session = await self.classify(record)
            if not session.recoverable:
                await self.store.remove_session(record.container_id)
                removed += 1
        return removed

    async def remove_orphan_shadows(self) -> int:
        """Delete shadow directories that no session record points at."""
        known = {r.session_id for r in await self.store.load()}
        removed = 0
        for entry in await self.shadows.list_entries():
            if entry in known:
                continue
            await self.shadows.remove(self.shadows.path_for(entry))
            removed += 1
        return removed

    # ── Dispatch ───────────────────────────────────────────

    async def recover(self, session: RecoverableSession) -> ActionOutcome:
        """Run the action the table prescribes, asking the operator if needed."""
        actions = session.actions
        if actions == (RecoveryAction.REATTACH,):
            return await self.reattach(session)
        if actions == (RecoveryAction.RESUME,):
            return await self.resume(session)
        if actions == (RecoveryAction.REMOVE,):
            return await self.remove_unrecoverable(session)

        self.console.print(
            f"[yellow]Container {session.session_id} is gone, "
            f"but shadow repo exists at:[/yellow]")
        self.console.print(f"  {session.record.shadow_repo_path}")
        choice = await self.operator.choose(
            "What would you like to do with the shadow repo?",
            [(a.value, ACTION_LABELS[a]) for a in actions],
        )
        return await self.run_action(session, RecoveryAction(choice))

    async def run_action(self, session: RecoverableSession,
                         action: RecoveryAction) -> ActionOutcome:
        if action not in session.actions:
            return ActionOutcome(
                action, False,
                f"'{action.value}' is not available for a "
                f"{session.container_state.value} container")

        handlers = {
            RecoveryAction.REATTACH: self.reattach,
            RecoveryAction.RESUME: self.resume,
            RecoveryAction.PUSH: self.push_shadow,
            RecoveryAction.COPY: self.copy_shadow,
            RecoveryAction.SHOW: self.show_shadow,
            RecoveryAction.DISCARD: self.discard_shadow,
            RecoveryAction.REMOVE: self.remove_unrecoverable,
        }
        return await handlers[action](session)

    # ── Live container ─────────────────────────────────────

    async def reattach(self, session: RecoverableSession) -> ActionOutcome:
        """Mark active, refresh activity time, hand off to UI/terminal."""
        record = await self.store.update_session(
            session.container_id,
            status=SessionStatus.ACTIVE,
            last_activity_time=utc_now(),
        ) or session.record
        if self._reattach is not None:
            await self._reattach(record)
        return ActionOutcome(
            RecoveryAction.REATTACH, True,
            f"Reattached to container {session.session_id}")

    async def resume(self, session: RecoverableSession) -> ActionOutcome:
        self.console.print(f"[blue]Restarting container {session.session_id}...[/blue]")
        try:
            await self.runtime.start_container(session.container_id)
        except (ContainerStateError, RuntimeConnectivityError) as e:
            return ActionOutcome(
                RecoveryAction.RESUME, False,
                f"Failed to restart container {session.session_id}: {e}")
        outcome = await self.reattach(session)
        outcome.action = RecoveryAction.RESUME
        return outcome

    # ── Gone container, shadow repo present ────────────────

    async def push_shadow(self, session: RecoverableSession) -> ActionOutcome:
        shadow_path = Path(session.record.shadow_repo_path)
        repo = GitRepo(self._runner_factory(shadow_path), shadow_path)

        if not await repo.has_remote("origin"):
            return ActionOutcome(
                RecoveryAction.PUSH, False,
                f"No remote 'origin' configured in shadow repo. "
                f"Shadow repo path: {shadow_path}")

        try:
            branch = await self._stage_commit_push(repo)
        except RecoveryActionError as e:
            return ActionOutcome(
                RecoveryAction.PUSH, False,
                f"Push failed: {e}. Shadow repo preserved at: {shadow_path}")

        await self.store.remove_session(session.container_id)
        return ActionOutcome(
            RecoveryAction.PUSH, True,
            f"Pushed branch '{branch}' to remote.", retired=True)

    async def _stage_commit_push(self, repo: GitRepo) -> str:
        added = await repo.add_all()
        if not added.success:
            raise RecoveryActionError(f"git add failed: {added.message}")

        committed = await repo.commit(
            f"[recovery] Recovered changes from {_recovery_timestamp()}")
        if not committed.success:
            logger.debug("Recovery commit skipped: %s", committed.message)

        branch_result = await repo.git("branch", "--show-current")
        branch = branch_result.stdout.strip()
        if not branch_result.success or not branch:
            raise RecoveryActionError("shadow repo is not on a branch")

        pushed = await repo.push("origin", branch, set_upstream=True)
        if not pushed.success:
            raise RecoveryActionError(pushed.message)
        return branch

    async def copy_shadow(self, session: RecoverableSession) -> ActionOutcome:
        default_dest = Path.cwd() / f"recovered-{session.session_id}"
        dest = await self.operator.ask("Enter destination path", default=str(default_dest))
        try:
            copied = await self.shadows.copy(session.record.shadow_repo_path, dest)
        except OSError as e:
            return ActionOutcome(
                RecoveryAction.COPY, False,
                f"Copy failed: {e}. Shadow repo preserved at: "
                f"{session.record.shadow_repo_path}")

        await self.store.remove_session(session.container_id)
        return ActionOutcome(
            RecoveryAction.COPY, True, f"Copied to: {copied}", retired=True)

    async def show_shadow(self, session: RecoverableSession) -> ActionOutcome:
        return ActionOutcome(
            RecoveryAction.SHOW, True,
            f"Shadow repo path: {session.record.shadow_repo_path} "
            f"(session record preserved)")

    async def discard_shadow(self, session: RecoverableSession) -> ActionOutcome:
        confirmed = await self.operator.confirm(
            "Are you sure? This will delete the shadow repo permanently.",
            default=False,
        )
        if not confirmed:
            return ActionOutcome(RecoveryAction.DISCARD, True, "Discard cancelled.")

        try:
            await self.shadows.remove(session.record.shadow_repo_path)
        except OSError as e:
            return ActionOutcome(
                RecoveryAction.DISCARD, False, f"Failed to delete shadow repo: {e}")

        await self.store.remove_session(session.container_id)
        return ActionOutcome(
            RecoveryAction.DISCARD, True,
            "Shadow repo and session record removed.", retired=True)

    # ── Nothing left ───────────────────────────────────────

    async def remove_unrecoverable(self, session: RecoverableSession) -> ActionOutcome:
        await self.store.remove_session(session.container_id)
        return ActionOutcome(
            RecoveryAction.REMOVE, True,
            f"Session {session.session_id} is unrecoverable "
            f"(container and shadow repo both gone). Record cleaned up.",
            retired=True)
