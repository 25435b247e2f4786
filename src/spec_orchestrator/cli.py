from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click
import psutil

from spec_orchestrator.backends.base import CommandError
from spec_orchestrator.config import (
    DEFAULT_CONFIG_FILE,
    ENV_SPEC,
    OrchestratorConfig,
    apply_env_overrides,
    load_config,
    save_config,
)
from spec_orchestrator.control import ControlService, RunRegistry, build_server
from spec_orchestrator.driver import Orchestrator
from spec_orchestrator.errors import OrchestratorError
from spec_orchestrator.logging_setup import FILE_LOG_NAME, setup_logging
from spec_orchestrator.parser import format_plan, load_spec, scan_isolation_conflicts, spec_name
from spec_orchestrator.state import (
    CheckpointStore,
    checkpoint_path,
    clear_skips,
    lock_path,
    skip_requests_path,
)
from spec_orchestrator.state.lock import read_holder
from spec_orchestrator.workspace import WorkspaceManager, workspace_path

T = TypeVar("T")

EXIT_INTERRUPTED = 130
EXIT_TERMINATED = 143


class RunTerminated(Exception):
    """Raised when SIGTERM cancelled the running orchestration."""


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_config(repo_root: Path, config_value: str) -> OrchestratorConfig:
    try:
        return apply_env_overrides(load_config(_resolve_config_path(repo_root, config_value)))
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc


def _parse_from(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> tuple[int, int] | None:
    if value is None:
        return None
    phase, dot, step = value.partition(".")
    if not dot or not phase.isdigit() or not step.isdigit():
        raise click.BadParameter("expected N.M, for example 2.3")
    return int(phase), int(step)


def _run_with_signals(coro: Coroutine[Any, Any, T]) -> T:
    """Run ``coro`` to completion; SIGTERM cancels it so cleanup runs before exit."""

    async def main() -> T:
        task = asyncio.current_task()
        loop = asyncio.get_running_loop()
        terminated = False

        def on_terminate() -> None:
            nonlocal terminated
            terminated = True
            if task is not None:
                task.cancel()

        try:
            loop.add_signal_handler(signal.SIGTERM, on_terminate)
            installed = True
        except (NotImplementedError, RuntimeError):
            installed = False
        try:
            return await coro
        except asyncio.CancelledError:
            if terminated:
                raise RunTerminated() from None
            raise
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGTERM)

    return asyncio.run(main())


spec_argument = click.argument(
    "spec",
    envvar=ENV_SPEC,
    type=click.Path(dir_okay=False, path_type=Path),
)
config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True
)


@click.group()
def cli() -> None:
    """Spec orchestrator CLI."""


@cli.command("init")
@config_option
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(repo_root, config_value)
    save_config(config_path, config)
    config.base_dir(repo_root).mkdir(parents=True, exist_ok=True)
    click.echo(f"Config: {config_path}")
    click.echo(f"State directory: {config.base_dir(repo_root)}")


@cli.command("run")
@spec_argument
@click.option("--dry-run", is_flag=True, default=False, help="Parse and print the plan only.")
@click.option("--quiet", is_flag=True, default=False, help="Capture agent output.")
@click.option("--fail-fast", is_flag=True, default=False, help="Abort on the first failure.")
@click.option("--no-worktree", is_flag=True, default=False, help="Run in the repository root.")
@click.option("--verbose", is_flag=True, default=False, help="Debug logging and output mirroring.")
@click.option(
    "--from", "start_at", default=None, callback=_parse_from, help="Start at step N.M."
)
@config_option
def run_command(
    spec: Path,
    dry_run: bool,
    quiet: bool,
    fail_fast: bool,
    no_worktree: bool,
    verbose: bool,
    start_at: tuple[int, int] | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config(repo_root, config_value)
    if quiet or verbose:
        config.agent.streaming = False
    if fail_fast:
        config.execution.fail_fast = True
    if no_worktree:
        config.workspace.enabled = False

    log_dir = config.log_dir(repo_root, spec_name(spec))
    setup_logging(verbose, None if dry_run else log_dir / FILE_LOG_NAME)
    orchestrator = Orchestrator(config, repo_root, verbose=verbose)
    try:
        summary = _run_with_signals(
            orchestrator.run(spec, start_at=start_at, dry_run=dry_run)
        )
    except KeyboardInterrupt:
        click.echo("\nInterrupted; progress is kept in the checkpoint.", err=True)
        raise SystemExit(EXIT_INTERRUPTED) from None
    except RunTerminated:
        click.echo("\nTerminated; progress is kept in the checkpoint.", err=True)
        raise SystemExit(EXIT_TERMINATED) from None
    except (OrchestratorError, CommandError) as exc:
        raise click.ClickException(f"Orchestrator failed: {exc}\n   Logs: {log_dir}") from exc

    if summary.completed:
        click.echo(f"\nSteps executed: {len(summary.executed_steps)}")


@cli.command("plan")
@spec_argument
@config_option
def plan_command(spec: Path, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config(repo_root, config_value)
    try:
        parsed = load_spec(spec)
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(format_plan(parsed, config.execution.step_timeout_ms))
    report = scan_isolation_conflicts(
        parsed, config.isolation.conflicting_commands, config.isolation.launchers
    )
    if report.has_conflicts:
        click.echo(f"\nRequires --no-worktree: {', '.join(report.found_commands)}")
        click.echo(f"Affected: {', '.join(report.affected)}")


@cli.command("status")
@spec_argument
@config_option
def status_command(spec: Path, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config(repo_root, config_value)
    name = spec_name(spec)
    base_dir = config.base_dir(repo_root)
    try:
        checkpoint = CheckpointStore().load(checkpoint_path(base_dir, name))
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc
    worktree = workspace_path(base_dir, name)
    payload = {
        "spec": name,
        "checkpoint": checkpoint.to_dict() if checkpoint else None,
        "lock_holder": read_holder(lock_path(base_dir, name)),
        "workspace": str(worktree) if worktree.exists() else None,
        "log_dir": str(config.log_dir(repo_root, name)),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("clean")
@spec_argument
@click.option("--checkpoint", "remove_checkpoint", is_flag=True, default=False)
@config_option
def clean_command(spec: Path, remove_checkpoint: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config(repo_root, config_value)
    name = spec_name(spec)
    base_dir = config.base_dir(repo_root)
    holder = read_holder(lock_path(base_dir, name))
    if holder is not None and psutil.pid_exists(holder):
        raise click.ClickException(f"A run for {name} is in progress (PID {holder}).")

    worktree = workspace_path(base_dir, name)
    if worktree.exists():
        try:
            WorkspaceManager().remove(repo_root, worktree)
        except OrchestratorError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Removed worktree {worktree}")
    else:
        click.echo("No worktree to remove.")
    if remove_checkpoint:
        CheckpointStore().delete(checkpoint_path(base_dir, name))
        clear_skips(skip_requests_path(base_dir, name))
        click.echo("Removed checkpoint.")


@cli.command("serve")
@click.option("--verbose", is_flag=True, default=False)
@config_option
def serve_command(verbose: bool, config_value: str) -> None:
    """Serve the run/status/retry/skip/abort tools over MCP stdio."""
    repo_root = Path.cwd().resolve()
    config = _load_config(repo_root, config_value)
    setup_logging(verbose)
    service = ControlService(RunRegistry(), config, repo_root)
    build_server(service).run()
