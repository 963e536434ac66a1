"""CLI interface for agentbox.

Quick start:
    agentbox                         # Start a session, hand off to the browser
    agentbox start --no-web          # Start a session in this terminal
    agentbox start --pr 42           # Work on an existing pull request
    agentbox recover                 # Pick up sessions after a crash or reboot
    agentbox clean --shadows         # Remove stopped containers and stale shadow repos
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import typer
import yaml
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from agentbox import __version__
from agentbox.attach import AttachmentChannel, PosixTerminal
from agentbox.config import (
    DEFAULT_CONFIG_FILE,
    SHELLS,
    SandboxConfig,
    get_session_store_path,
    get_shadow_base_path,
    load_config,
    validate_config,
)
from agentbox.errors import (
    AgentboxError,
    ConfigurationError,
    ContainerStateError,
    RuntimeConnectivityError,
)
from agentbox.orchestrator import SandboxSession
from agentbox.prompts import ConsoleOperator
from agentbox.recovery import RecoverableSession, RecoveryEngine, describe_age
from agentbox.runtime import ContainerSummary, RuntimeClient
from agentbox.sessions import SessionRecord, SessionStatus, SessionStore, utc_now
from agentbox.shadow import ShadowRepo
from agentbox.web import WebUIServer

app = typer.Typer(
    name="agentbox",
    help="Run an AI coding agent in an isolated container bound to your git repo",
    no_args_is_help=False,
    invoke_without_command=True,
)

console = Console()

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _run(coro_factory: Callable[[], Awaitable[T]]) -> T:
    """Run an async command body; AgentboxError -> red message, exit 1."""
    try:
        return asyncio.run(coro_factory())
    except AgentboxError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _load(config_path: str = DEFAULT_CONFIG_FILE) -> SandboxConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)


def _runtime(config: SandboxConfig) -> RuntimeClient:
    try:
        return RuntimeClient.from_config(config)
    except AgentboxError as e:
        console.print(f"[red]{e}[/red]")
        console.print("[dim]Is the docker daemon running?[/dim]")
        raise typer.Exit(1)


def _store() -> SessionStore:
    return SessionStore(get_session_store_path())


def _shadows() -> ShadowRepo:
    return ShadowRepo(get_shadow_base_path())


def _check_shell(shell: str | None) -> None:
    if shell is not None and shell not in SHELLS:
        console.print(f"[red]--shell must be one of: {', '.join(SHELLS)}[/red]")
        raise typer.Exit(1)


async def _select_container(runtime: RuntimeClient, container_id: str | None,
                            running_only: bool, action: str) -> ContainerSummary | None:
    """Resolve an id prefix, or ask the operator to pick one."""
    containers = await runtime.list_sandbox_containers(all=not running_only)
    if running_only:
        containers = [c for c in containers if c.is_running]

    if container_id:
        for c in containers:
            if c.id.startswith(container_id) or c.name == container_id:
                return c
        raise ContainerStateError(container_id)

    if not containers:
        console.print("[yellow]No agentbox containers found.[/yellow]")
        return None
    if len(containers) == 1:
        return containers[0]

    choice = await ConsoleOperator(console).choose(
        f"Select a container to {action}",
        [(c.id, f"{c.name} ({c.short_id}) - {c.state}") for c in containers],
    )
    return next(c for c in containers if c.id == choice)


async def _attach_terminal(runtime: RuntimeClient, store: SessionStore,
                           container_id: str) -> int:
    """Attach this terminal to a container; the container keeps running after."""
    async def detach() -> None:
        await store.update_session(container_id, last_activity_time=utc_now())

    stream = await runtime.open_exec(container_id)
    channel = AttachmentChannel(stream, PosixTerminal(), on_teardown=detach)
    exit_code = await channel.run()
    console.print(f"\n[blue]Detached from {container_id[:12]} ({channel.reason})[/blue]")
    return exit_code


async def _serve_web(runtime: RuntimeClient, config: SandboxConfig,
                     record: SessionRecord) -> None:
    """Browser handoff for an existing container; returns on Ctrl+C."""
    server = WebUIServer(runtime, host=config.web_ui_host,
                         port=record.web_ui_port or config.web_ui_port)
    server.set_repo_info(record.repo_path, record.branch_name)
    url = await server.start()
    full_url = f"{url}?container={record.container_id}"
    await server.open_in_browser(full_url)
    console.print(f"[green]✓ Web UI available at: {full_url}[/green]")
    console.print("[dim]Press Ctrl+C to stop the web UI (the container keeps running)[/dim]")
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        pass
    finally:
        await server.stop()


def _start_session(config: SandboxConfig) -> None:
    runtime = _runtime(config)

    async def run_session() -> int:
        session = SandboxSession(
            config, runtime, _store(), _shadows(), ConsoleOperator(console))
        return await session.run()

    console.print(f"[bold cyan]agentbox[/bold cyan] [dim]v{__version__}[/dim]")
    try:
        exit_code = _run(run_session)
    except KeyboardInterrupt:
        exit_code = 0
    finally:
        runtime.close()
    if exit_code:
        raise typer.Exit(exit_code)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    shell: str = typer.Option(
        None, "--shell", help="Start with 'claude' or 'bash' shell"),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Run an AI coding agent in an isolated container.

    Run with no arguments to start a session with the web UI.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    if ctx.invoked_subcommand is not None:
        return

    _check_shell(shell)
    config = _load()
    if shell:
        config.default_shell = shell
    config.use_web_ui = True
    _start_session(config)


@app.command()
def start(
    config_path: str = typer.Option(
        DEFAULT_CONFIG_FILE, "--config", "-c", help="Configuration file"),
    name: str = typer.Option(
        None, "--name", "-n", help="Container name prefix"),
    no_push: bool = typer.Option(
        False, "--no-push", help="Disable automatic branch pushing"),
    no_create_pr: bool = typer.Option(
        False, "--no-create-pr", help="Disable automatic PR creation"),
    include_untracked: bool = typer.Option(
        False, "--include-untracked", help="Include untracked files in the container"),
    branch: str = typer.Option(
        None, "--branch", "-b", help="Branch to create in the container"),
    remote_branch: str = typer.Option(
        None, "--remote-branch", help="Check out a remote branch (e.g. origin/feature)"),
    pr: int = typer.Option(
        None, "--pr", help="Check out the branch of a pull request"),
    shell: str = typer.Option(
        None, "--shell", help="Start with 'claude' or 'bash' shell"),
    no_web: bool = typer.Option(
        False, "--no-web", help="Attach in this terminal instead of the web UI"),
) -> None:
    """Start a new sandbox session."""
    _check_shell(shell)
    config = _load(config_path)
    if name:
        config.container_prefix = name
    if no_push:
        config.auto_push = False
    if no_create_pr:
        config.auto_create_pr = False
    if include_untracked:
        config.include_untracked = True
    if branch:
        config.target_branch = branch
    if remote_branch:
        config.remote_branch = remote_branch
    if pr is not None:
        config.pr_number = pr
    if shell:
        config.default_shell = shell
    config.use_web_ui = not no_web
    try:
        validate_config(config)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)
    _start_session(config)


@app.command()
def attach(
    container_id: str = typer.Argument(None, help="Container id, id prefix or name"),
) -> None:
    """Attach this terminal to a running container."""
    config = _load()
    runtime = _runtime(config)
    store = _store()

    async def run_attach() -> int:
        target = await _select_container(runtime, container_id, True, "attach to")
        if target is None:
            return 0
        console.print(f"[blue]Attaching to {target.name}...[/blue]")
        await store.update_session(
            target.id, status=SessionStatus.ACTIVE, last_activity_time=utc_now())
        return await _attach_terminal(runtime, store, target.id)

    try:
        exit_code = _run(run_attach)
    finally:
        runtime.close()
    if exit_code:
        raise typer.Exit(exit_code)


@app.command("list")
def list_containers(
    all: bool = typer.Option(False, "--all", "-a", help="Show stopped containers too"),
) -> None:
    """List agentbox containers."""
    config = _load()
    runtime = _runtime(config)

    async def run_list() -> list[ContainerSummary]:
        containers = await runtime.list_sandbox_containers(all=all)
        return containers if all else [c for c in containers if c.is_running]

    try:
        containers = _run(run_list)
    finally:
        runtime.close()

    if not containers:
        console.print("[dim]No agentbox containers found.[/dim]")
        return

    table = Table(title="agentbox containers")
    table.add_column("ID", style="cyan", width=12)
    table.add_column("Name")
    table.add_column("Branch")
    table.add_column("State", width=10)
    table.add_column("Started")

    for c in containers:
        color = "green" if c.is_running else "yellow"
        table.add_row(
            c.short_id,
            c.name,
            c.branch,
            f"[{color}]{c.state}[/{color}]",
            describe_age(c.started_at) if c.started_at else "",
        )
    console.print(table)


@app.command("ls", hidden=True)
def ls(
    all: bool = typer.Option(False, "--all", "-a", help="Show stopped containers too"),
) -> None:
    """Alias for list."""
    list_containers(all=all)


@app.command()
def stop(
    container_id: str = typer.Argument(None, help="Container id, id prefix or name"),
    all: bool = typer.Option(False, "--all", "-a", help="Stop all agentbox containers"),
) -> None:
    """Stop agentbox containers."""
    config = _load()
    runtime = _runtime(config)
    store = _store()

    async def run_stop() -> int:
        if all:
            targets = [c for c in await runtime.list_sandbox_containers(all=False)
                       if c.is_running]
        else:
            target = await _select_container(runtime, container_id, True, "stop")
            targets = [target] if target else []

        for c in targets:
            console.print(f"[blue]Stopping {c.name}...[/blue]")
            await runtime.stop_container(c.id)
            await store.update_session(
                c.id, status=SessionStatus.STOPPED, last_activity_time=utc_now())
        return len(targets)

    try:
        stopped = _run(run_stop)
    finally:
        runtime.close()
    if stopped:
        console.print(f"[green]✓ Stopped {stopped} container(s)[/green]")


@app.command()
def logs(
    container_id: str = typer.Argument(None, help="Container id, id prefix or name"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
) -> None:
    """Show container logs."""
    config = _load()
    runtime = _runtime(config)
    try:
        target = _run(lambda: _select_container(runtime, container_id, False, "show logs for"))
        if target is None:
            return
        try:
            for chunk in runtime.logs(target.id, follow=follow, tail=lines):
                sys.stdout.buffer.write(chunk)
                sys.stdout.buffer.flush()
        except KeyboardInterrupt:
            pass
        except (ContainerStateError, RuntimeConnectivityError) as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)
    finally:
        runtime.close()


@app.command()
def clean(
    force: bool = typer.Option(
        False, "--force", "-f", help="Remove all containers (including running)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    shadows: bool = typer.Option(
        False, "--shadows", help="Also remove shadow repos no session points at"),
) -> None:
    """Remove stopped containers and stale session records."""
    config = _load()
    runtime = _runtime(config)
    store = _store()
    shadow_repo = _shadows()
    operator = ConsoleOperator(console)

    async def run_clean() -> None:
        containers = await runtime.list_sandbox_containers(all=True)
        targets = containers if force else [c for c in containers if not c.is_running]
        if targets:
            kind = "" if force else "stopped "
            console.print(f"Found {len(targets)} {kind}container(s)")
            if yes or await operator.confirm("Remove them?", default=False):
                for c in targets:
                    if c.is_running:
                        await runtime.stop_container(c.id)
                    await runtime.remove_container(c.id)
                    console.print(f"[dim]Removed {c.name}[/dim]")
        else:
            console.print(f"[dim]No {'' if force else 'stopped '}containers.[/dim]")

        engine = RecoveryEngine(store, runtime, shadow_repo, operator, out=console)
        pruned = await engine.prune_missing_containers()
        if pruned:
            console.print(f"[green]✓ Pruned {pruned} unrecoverable session record(s)[/green]")

        if shadows:
            removed = await engine.remove_orphan_shadows()
            console.print(f"[green]✓ Removed {removed} orphaned shadow repo(s)[/green]")

    try:
        _run(run_clean)
    finally:
        runtime.close()


@app.command()
def purge(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Remove ALL agentbox containers, session records and shadow repos."""
    config = _load()
    runtime = _runtime(config)
    store = _store()
    shadow_repo = _shadows()

    async def run_purge() -> int:
        containers = await runtime.list_sandbox_containers(all=True)
        console.print(
            f"[yellow]This will remove {len(containers)} container(s), every session "
            f"record and every shadow repo.[/yellow]")
        if not yes and not await ConsoleOperator(console).confirm(
                "Are you sure?", default=False):
            console.print("[dim]Aborted.[/dim]")
            return 0

        failed = 0
        for c in containers:
            try:
                await runtime.remove_container(c.id, force=True)
                console.print(f"[dim]Removed {c.name}[/dim]")
            except (ContainerStateError, RuntimeConnectivityError) as e:
                failed += 1
                console.print(f"[yellow]Could not remove {c.name}: {e}[/yellow]")

        await store.clear_all()
        await shadow_repo.remove_all()
        console.print("[green]✓ Purged all agentbox state[/green]")
        return failed

    try:
        failed = _run(run_purge)
    finally:
        runtime.close()
    if failed:
        console.print(f"[red]{failed} container(s) could not be removed[/red]")
        raise typer.Exit(1)


@app.command("config")
def show_config(
    path: str = typer.Option(
        DEFAULT_CONFIG_FILE, "--path", "-p", help="Configuration file to show"),
) -> None:
    """Show the effective configuration."""
    config = _load(path)
    resolved = Path(path).expanduser().resolve()
    if resolved.exists():
        console.print(f"[dim]Loaded from {resolved}[/dim]")
    else:
        console.print(f"[dim]{resolved} not found; showing defaults[/dim]")
    console.print(Syntax(
        yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=True),
        "yaml", theme="ansi_dark"))


def _print_sessions(sessions: list[RecoverableSession]) -> None:
    table = Table(title="Recoverable sessions")
    table.add_column("Session", style="cyan", width=12)
    table.add_column("Repo")
    table.add_column("Branch")
    table.add_column("Container", width=10)
    table.add_column("Shadow", width=7)
    table.add_column("Last active")
    table.add_column("Actions")

    state_colors = {"running": "green", "stopped": "yellow", "gone": "red"}
    for s in sessions:
        color = state_colors[s.container_state.value]
        table.add_row(
            s.session_id,
            Path(s.record.repo_path).name,
            s.record.branch_name,
            f"[{color}]{s.container_state.value}[/{color}]",
            "yes" if s.shadow_exists else "no",
            describe_age(s.record.last_activity_time),
            ", ".join(a.value for a in s.actions),
        )
    console.print(table)


@app.command()
def recover(
    list_only: bool = typer.Option(
        False, "--list", "-l", help="List recoverable sessions and exit"),
    no_web: bool = typer.Option(
        False, "--no-web", help="Reattach in this terminal instead of the web UI"),
) -> None:
    """Recover sessions left behind by a crash, reboot or disconnect."""
    config = _load()
    runtime = _runtime(config)
    store = _store()
    operator = ConsoleOperator(console)

    async def reattach(record: SessionRecord) -> None:
        if no_web:
            await _attach_terminal(runtime, store, record.container_id)
        else:
            await _serve_web(runtime, config, record)

    engine = RecoveryEngine(
        store, runtime, _shadows(), operator, reattach=reattach, out=console)

    async def run_recover() -> bool:
        sessions = await engine.scan()
        if not sessions:
            console.print("[dim]No recoverable sessions found.[/dim]")
            return True
        _print_sessions(sessions)
        if list_only:
            return True

        if len(sessions) == 1:
            selected = sessions[0]
        else:
            choice = await operator.choose(
                "Select a session to recover",
                [(s.container_id,
                  f"{s.session_id} {Path(s.record.repo_path).name} "
                  f"({s.record.branch_name}, {s.container_state.value})")
                 for s in sessions],
            )
            selected = next(s for s in sessions if s.container_id == choice)

        outcome = await engine.recover(selected)
        color = "green" if outcome.success else "red"
        console.print(f"[{color}]{outcome.message}[/{color}]")
        return outcome.success

    try:
        ok = _run(run_recover)
    except KeyboardInterrupt:
        ok = True
    finally:
        runtime.close()
    if not ok:
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show the agentbox version."""
    console.print(f"agentbox {__version__}")


if __name__ == "__main__":
    app()
