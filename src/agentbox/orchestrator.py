"""Session orchestration.

SandboxSession drives one run of `agentbox start`:

1. Verify the working directory is a git repo
2. Resolve the target branch (PR, remote branch, or configured/generated)
3. Discover credentials and launch the container
4. Register the session record and seed the shadow repo
5. Start commit monitoring and the commit reaction loop
6. Hand off to the browser UI or attach the terminal
7. Clean up exactly once, whatever ended the session

The host repository's checked-out branch is never touched.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax

from agentbox.attach import AttachmentChannel, LocalTerminal, PosixTerminal
from agentbox.commands import CommandRunner, ContainerCommandRunner, LocalCommandRunner
from agentbox.config import SandboxConfig
from agentbox.credentials import CredentialProvider
from agentbox.errors import (
    ConfigurationError,
    ExternalToolError,
    NotAGitRepositoryError,
    PersistenceError,
)
from agentbox.git import GitRepo, create_pull_request, resolve_pr_branch
from agentbox.monitor import CommitEvent, GitMonitor
from agentbox.prompts import Operator
from agentbox.runtime import LaunchSpec, RuntimeClient
from agentbox.sessions import (
    ExitType,
    SessionConfigSnapshot,
    SessionRecord,
    SessionStatus,
    SessionStore,
    utc_now,
)
from agentbox.shadow import ShadowRepo
from agentbox.web import WebUIServer

logger = logging.getLogger(__name__)

console = Console()


# ── Branch resolution ──────────────────────────────────

@dataclass(frozen=True)
class BranchTarget:
    """Branch to use in the container and how to fetch it.

    At most one of pr_fetch_ref / remote_fetch_ref is set.
    """
    branch_name: str
    pr_fetch_ref: str | None = None
    remote_fetch_ref: str | None = None


def generate_branch_name(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"agentbox/{now.strftime('%Y-%m-%d')}-{int(now.timestamp() * 1000)}"


def parse_remote_branch(value: str) -> tuple[str, str]:
    """'origin/feature/x' -> ('origin', 'feature/x')."""
    remote, _, branch = value.partition("/")
    if not remote or not branch:
        raise ConfigurationError(
            f'Remote branch must be in format "remote/branch" '
            f'(e.g., "origin/feature-branch"), got {value!r}')
    return remote, branch


async def resolve_branch(
    config: SandboxConfig,
    runner: CommandRunner,
    cwd: str | Path | None = None,
    now: datetime | None = None,
) -> BranchTarget:
    """Pick the container branch. PR number wins over remote branch."""
    if config.pr_number is not None:
        branch = await resolve_pr_branch(runner, config.pr_number, cwd=cwd)
        return BranchTarget(
            branch_name=branch,
            pr_fetch_ref=f"pull/{config.pr_number}/head:{branch}",
        )
    if config.remote_branch:
        remote, branch = parse_remote_branch(config.remote_branch)
        return BranchTarget(branch_name=branch, remote_fetch_ref=f"{remote}/{branch}")
    return BranchTarget(branch_name=config.target_branch or generate_branch_name(now))


# ── Commit reaction loop ───────────────────────────────

class CommitAction(str, Enum):
    CONTINUE = "continue"
    PUSH = "push"
    PUSH_PR = "push-pr"
    EXIT = "exit"


COMMIT_CHOICES = [
    (CommitAction.CONTINUE.value, "Nothing (continue working)"),
    (CommitAction.PUSH.value, "Push branch to remote"),
    (CommitAction.PUSH_PR.value, "Push branch and create PR"),
    (CommitAction.EXIT.value, "Exit (end session)"),
]


def render_commit(out: Console, event: CommitEvent, diff: str) -> None:
    out.print(Panel(
        f"[bold]{event.short_sha}[/bold] {event.subject}\n"
        f"[dim]{event.author} on {event.branch}[/dim]",
        title="New commit",
        border_style="cyan",
    ))
    if diff.strip():
        out.print(Syntax(diff, "diff", theme="ansi_dark", word_wrap=True))
    else:
        out.print("[dim](empty diff)[/dim]")


class CommitReactionLoop:
    """Turns commit notifications into one operator decision at a time.

    Events are pulled from the monitor sequentially, so a commit that
    lands while a prompt is open waits its turn. A failure while handling
    one commit is reported and the loop moves on to the next.

    before_prompt/after_prompt bracket everything the loop prints and
    asks, so an attached terminal can hand the keyboard back meanwhile.
    """

    def __init__(
        self,
        monitor: GitMonitor,
        repo: GitRepo,
        operator: Operator,
        on_exit: Callable[[], Awaitable[None]],
        on_commit: Callable[[CommitEvent], Awaitable[None]] | None = None,
        out: Console | None = None,
        before_prompt: Callable[[], None] | None = None,
        after_prompt: Callable[[], None] | None = None,
    ):
        self.monitor = monitor
        self.repo = repo
        self.operator = operator
        self.on_exit = on_exit
        self.on_commit = on_commit
        self.console = out or console
        self.before_prompt = before_prompt
        self.after_prompt = after_prompt
        self.handled: list[tuple[CommitEvent, CommitAction]] = []
        self.failed: list[CommitEvent] = []
        self.input_closed = False
        self._exited = False

    async def run(self) -> None:
        async for event in self.monitor.events():
            try:
                await self.handle(event)
            except Exception as e:
                self.failed.append(event)
                logger.warning("Handling commit %s failed: %s", event.short_sha, e,
                               exc_info=True)
                self.console.print(
                    f"[yellow]Could not handle commit {event.short_sha}: {e}[/yellow]")
            if self._exited:
                return

    async def _ask(self) -> CommitAction:
        if self.input_closed:
            return CommitAction.CONTINUE
        try:
            answer = await self.operator.choose(
                "What would you like to do?", COMMIT_CHOICES,
                default=CommitAction.CONTINUE.value)
        except EOFError:
            self.input_closed = True
            logger.warning("Operator input closed; further commits are not prompted")
            self.console.print(
                "[yellow]No input available; continuing without commit prompts[/yellow]")
            return CommitAction.CONTINUE
        return CommitAction(answer)

    async def handle(self, event: CommitEvent) -> CommitAction:
        if self.on_commit is not None:
            try:
                await self.on_commit(event)
            except Exception as e:
                logger.warning("Commit hook failed: %s", e)

        diff = await self.repo.diff(event.parent, event.sha)
        if self.before_prompt is not None:
            self.before_prompt()
        try:
            render_commit(self.console, event, diff)
            choice = await self._ask()
            self.handled.append((event, choice))

            if choice == CommitAction.CONTINUE:
                self.console.print("[blue]Continuing...[/blue]")
            elif choice == CommitAction.PUSH:
                await self.push()
            elif choice == CommitAction.PUSH_PR:
                await self.push_and_create_pr()
        finally:
            if self.after_prompt is not None:
                self.after_prompt()

        if choice == CommitAction.EXIT:
            self._exited = True
            await self.on_exit()
        return choice

    async def push(self) -> bool:
        try:
            branch = await self.repo.current_branch()
        except ExternalToolError as e:
            self.console.print(f"[yellow]Push failed: {e}[/yellow]")
            return False
        result = await self.repo.push("origin", branch)
        if not result.success:
            self.console.print(f"[yellow]Push failed: {result.message}[/yellow]")
            return False
        self.console.print(f"[green]✓ Pushed branch: {branch}[/green]")
        return True

    async def push_and_create_pr(self) -> bool:
        if not await self.push():
            return False
        result = await create_pull_request(self.repo.runner, cwd=self.repo.path)
        if result.success:
            self.console.print("[green]✓ Created pull request[/green]")
        else:
            logger.info("gh pr create failed: %s", result.message)
            self.console.print(
                "[yellow]Could not create PR automatically. "
                "Please create it manually.[/yellow]")
        return True


# ── Session ────────────────────────────────────────────

class SandboxSession:
    """One interactive sandbox session from launch to cleanup.

    Usage:
        session = SandboxSession(config, runtime, store, shadows, ConsoleOperator())
        exit_code = await session.run()
    """

    def __init__(
        self,
        config: SandboxConfig,
        runtime: RuntimeClient,
        store: SessionStore,
        shadows: ShadowRepo,
        operator: Operator,
        work_dir: Path | None = None,
        host_runner: CommandRunner | None = None,
        container_runner_factory: Callable[[str], CommandRunner] | None = None,
        credentials: CredentialProvider | None = None,
        terminal: LocalTerminal | None = None,
        web_server: WebUIServer | None = None,
        out: Console | None = None,
    ):
        self.config = config
        self.runtime = runtime
        self.store = store
        self.shadows = shadows
        self.operator = operator
        self.work_dir = Path(work_dir or Path.cwd()).resolve()
        self.host_runner = host_runner or LocalCommandRunner(cwd=self.work_dir)
        self._container_runner_factory = container_runner_factory or (
            lambda cid: ContainerCommandRunner(runtime, cid))
        self.credentials = credentials or CredentialProvider(
            config.agent_config_path, runner=self.host_runner)
        self.terminal = terminal
        self.web_server = web_server
        self.console = out or console

        self.record: SessionRecord | None = None
        self.monitor: GitMonitor | None = None
        self.reaction_loop: CommitReactionLoop | None = None
        self._reaction_task: asyncio.Task | None = None
        self._channel: AttachmentChannel | None = None
        self._prompt_open = False
        self._ended = asyncio.Event()
        self._exit_code = 0
        self._cleanup_started = False
        self.cleanup_runs = 0

    @property
    def container_id(self) -> str | None:
        return self.record.container_id if self.record else None

    async def run(self) -> int:
        """Run the session; returns the process exit status."""
        try:
            await self.prepare()
        except BaseException:
            if self.record is not None:
                await self.cleanup(ExitType.CRASH, stop_container=False)
            raise

        if self.config.use_web_ui:
            handoff = asyncio.create_task(self._web_handoff())
        else:
            handoff = asyncio.create_task(self._terminal_handoff())
        ended = asyncio.create_task(self._ended.wait())

        try:
            done, _ = await asyncio.wait(
                {handoff, ended}, return_when=asyncio.FIRST_COMPLETED)
            if handoff in done:
                self._exit_code = handoff.result()
        except BaseException:
            await self.cleanup(ExitType.CRASH, stop_container=False)
            raise
        finally:
            for task in (handoff, ended):
                task.cancel()
            await asyncio.gather(handoff, ended, return_exceptions=True)

        await self.cleanup()
        return self._exit_code

    async def prepare(self) -> None:
        host = GitRepo(self.host_runner, self.work_dir)
        if not await host.is_repo():
            raise NotAGitRepositoryError(
                "Not a git repository. Please run agentbox from within a git repository.")

        original_branch = await host.current_branch()
        self.console.print(f"[blue]Current branch: {original_branch or '(detached)'}[/blue]")

        target = await resolve_branch(self.config, self.host_runner, cwd=self.work_dir)
        if target.pr_fetch_ref:
            self.console.print(
                f"[blue]PR #{self.config.pr_number} uses branch: {target.branch_name}[/blue]")
        elif target.remote_fetch_ref:
            self.console.print(f"[blue]Will use remote branch: {target.remote_fetch_ref}[/blue]")
        else:
            self.console.print(
                f"[blue]Will create branch in container: {target.branch_name}[/blue]")

        creds = await self.credentials.discover()
        if creds is None:
            self.console.print("[yellow]No credentials found; log in inside the container.[/yellow]")

        spec = LaunchSpec(
            branch_name=target.branch_name,
            work_dir=self.work_dir,
            repo_name=self.work_dir.name,
            image=self.config.docker_image,
            files=await host.list_files(self.config.include_untracked),
            credential_env=creds.env if creds else {},
            credential_files=creds.files if creds else {},
            pr_fetch_ref=target.pr_fetch_ref,
            remote_fetch_ref=target.remote_fetch_ref,
            container_prefix=self.config.container_prefix,
            restart_policy=self.config.restart_policy,
            shell=self.config.default_shell,
            environment=dict(self.config.environment),
            setup_commands=list(self.config.setup_commands),
        )
        container = await self.runtime.launch(spec)
        self.console.print(f"[green]✓ Started container: {container.short_id}[/green]")

        record = SessionRecord(
            container_id=container.id,
            container_name=container.name,
            repo_path=str(self.work_dir),
            branch_name=target.branch_name,
            original_branch=original_branch,
            shadow_repo_path=str(self.shadows.path_for(container.id[:12])),
            web_ui_port=self.config.web_ui_port if self.config.use_web_ui else None,
            config=SessionConfigSnapshot(
                docker_image=self.config.docker_image,
                default_shell=self.config.default_shell,
                auto_commit=self.config.auto_commit,
                auto_commit_interval_minutes=self.config.auto_commit_interval_minutes,
                restart_policy=self.config.restart_policy,
            ),
        )
        try:
            await self.store.add_session(record)
        except PersistenceError:
            await self.runtime.remove_container(container.id, force=True)
            raise
        self.record = record
        await self._sync_shadow()

        container_repo = GitRepo(self._container_runner_factory(container.id))
        self.monitor = GitMonitor(
            container_repo, interval=self.config.monitor_interval_seconds)
        await self.monitor.start(target.branch_name)
        self.reaction_loop = CommitReactionLoop(
            self.monitor, container_repo, self.operator,
            on_exit=self.end_session,
            on_commit=self._on_commit,
            out=self.console,
            before_prompt=self._prompt_opened,
            after_prompt=self._prompt_closed,
        )
        self._reaction_task = asyncio.create_task(self.reaction_loop.run())
        self._reaction_task.add_done_callback(self._reaction_loop_done)
        self.console.print("[blue]✓ Git monitoring started[/blue]")

    def _prompt_opened(self) -> None:
        self._prompt_open = True
        if self._channel is not None:
            self._channel.pause()

    def _prompt_closed(self) -> None:
        self._prompt_open = False
        if self._channel is not None:
            self._channel.resume()

    def _reaction_loop_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        error = task.exception()
        logger.error("Commit loop stopped: %s", error, exc_info=error)
        self.console.print(f"[red]Commit handling stopped unexpectedly: {error}[/red]")
        self._exit_code = 1
        self._ended.set()

    async def _sync_shadow(self) -> None:
        if self.record is None:
            return
        try:
            await self.shadows.sync_from_container(
                self.runtime, self.record.container_id, self.record.session_id)
        except Exception as e:
            logger.warning("Shadow repo sync failed: %s", e)

    async def _on_commit(self, event: CommitEvent) -> None:
        await self._sync_shadow()
        if self.record is not None:
            await self.store.update_session(
                self.record.container_id, last_activity_time=utc_now())

    async def _web_handoff(self) -> int:
        if self.web_server is None:
            self.web_server = WebUIServer(
                self.runtime, host=self.config.web_ui_host, port=self.config.web_ui_port)
        self.web_server.set_repo_info(str(self.work_dir), self.record.branch_name)
        url = await self.web_server.start()
        full_url = f"{url}?container={self.record.container_id}"
        await self.web_server.open_in_browser(full_url)
        self.console.print(f"\n[green]✓ Web UI available at: {full_url}[/green]")
        self.console.print("[yellow]Keep this terminal open to maintain the session[/yellow]")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._ended.set)
        try:
            await self._ended.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        return 0

    async def _terminal_handoff(self) -> int:
        self.console.print("\n[green]✓ Attaching to container terminal...[/green]")
        stream = await self.runtime.open_exec(self.record.container_id)
        self._channel = AttachmentChannel(
            stream, self.terminal or PosixTerminal(), on_teardown=self.cleanup)
        if self._prompt_open:
            self._channel.pause()
        return await self._channel.run()

    async def end_session(self) -> None:
        """Operator chose to end the session from the commit prompt."""
        await self.cleanup()
        self._exit_code = 0
        self._ended.set()

    async def cleanup(self, exit_type: ExitType = ExitType.INTENTIONAL,
                      stop_container: bool = True) -> None:
        """Stop everything this session started. Safe to call repeatedly."""
        if self._cleanup_started:
            return
        self._cleanup_started = True
        self.cleanup_runs += 1

        async def stop_reaction_loop() -> None:
            task = self._reaction_task
            if task is None or task is asyncio.current_task():
                return
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        async def stop_container_step() -> None:
            if stop_container and self.record is not None:
                await self.runtime.stop_container(self.record.container_id)

        async def stop_web() -> None:
            if self.web_server is not None:
                await self.web_server.stop()

        async def update_record() -> None:
            if self.record is None:
                return
            status = SessionStatus.STOPPED if stop_container else self.record.status
            await self.store.update_session(
                self.record.container_id,
                status=status,
                exit_type=exit_type,
                last_activity_time=utc_now(),
            )

        async def stop_monitor() -> None:
            if self.monitor is not None:
                await self.monitor.stop()

        steps = [
            ("git monitor", stop_monitor),
            ("commit loop", stop_reaction_loop),
            ("shadow sync", self._sync_shadow),
            ("container", stop_container_step),
            ("web UI", stop_web),
            ("session record", update_record),
        ]
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.warning("Cleanup step '%s' failed: %s", name, e)
                self.console.print(f"[yellow]Cleanup: {name} failed: {e}[/yellow]")
