from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import click

from spec_orchestrator.backends.base import AgentBackend
from spec_orchestrator.backends.claude import ClaudeCodeAgent
from spec_orchestrator.backends.process import ProcessRunner
from spec_orchestrator.config import OrchestratorConfig
from spec_orchestrator.errors import GateFailedError, ParseError, WorkspaceError
from spec_orchestrator.executor import Sleep, StepExecutor
from spec_orchestrator.parser import (
    IsolationReport,
    Spec,
    format_plan,
    load_spec,
    scan_isolation_conflicts,
)
from spec_orchestrator.state.checkpoint import Checkpoint, CheckpointStore, checkpoint_path
from spec_orchestrator.state.lock import LockManager, lock_path
from spec_orchestrator.state.skips import clear_skips, pending_skips, skip_requests_path
from spec_orchestrator.verifier import Verifier
from spec_orchestrator.workspace import (
    WorkspaceInfo,
    WorkspaceManager,
    handoff_instructions,
    workspace_path,
)

logger = logging.getLogger(__name__)

# Progress markers echoed for every phase and step; the control server scrapes them.
PHASE_MARKER_PATTERN = re.compile(r"PHASE (\d+):")
STEP_MARKER_PATTERN = re.compile(r"Step ([\d.]+):")
BANNER = "=" * 50


@dataclass(slots=True)
class RunSummary:
    spec_name: str
    log_dir: Path
    completed: bool = False
    executed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)
    passed_gates: list[int] = field(default_factory=list)
    workspace: WorkspaceInfo | None = None
    isolation: IsolationReport = field(default_factory=IsolationReport)


def _relative_base(config: OrchestratorConfig, repo_root: Path) -> str:
    base = config.base_dir(repo_root)
    try:
        return base.relative_to(repo_root).as_posix()
    except ValueError:
        return config.paths.base_dir


class Orchestrator:
    """Drives one spec through its phases, steps and gates inside a locked, checkpointed run."""

    def __init__(
        self,
        config: OrchestratorConfig,
        repo_root: Path,
        *,
        agent: AgentBackend | None = None,
        runner: ProcessRunner | None = None,
        workspace: WorkspaceManager | None = None,
        locks: LockManager | None = None,
        checkpoints: CheckpointStore | None = None,
        echo: Callable[..., None] = click.echo,
        sleep: Sleep = asyncio.sleep,
        verbose: bool = False,
    ) -> None:
        self.config = config
        self.repo_root = repo_root.resolve()
        self.runner = runner or ProcessRunner(grace_ms=config.execution.kill_grace_ms)
        self.agent = agent or ClaudeCodeAgent(
            config.agent.binary,
            config.agent.extra_args,
            runner=self.runner,
            verbose=verbose,
        )
        self.workspace = workspace or WorkspaceManager(
            branch_prefix=config.workspace.branch_prefix,
            ignored_paths=[_relative_base(config, self.repo_root)],
        )
        self.locks = locks or LockManager()
        self.checkpoints = checkpoints or CheckpointStore()
        self.echo = echo
        self.verifier = Verifier(self.runner)
        self.executor = StepExecutor(
            self.agent,
            self.verifier,
            self.workspace,
            config,
            sleep=sleep,
            echo=echo,
        )

    @property
    def base_dir(self) -> Path:
        return self.config.base_dir(self.repo_root)

    def load(self, spec_path: Path | str) -> Spec:
        return load_spec(spec_path)

    @staticmethod
    def resolve_start(spec: Spec, start_at: tuple[int, int] | None) -> tuple[int, int] | None:
        if start_at is None:
            return None
        step_id = f"{start_at[0]}.{start_at[1]}"
        position = spec.find_step(step_id)
        if position is None:
            raise ParseError(f"Step {step_id} not found in {spec.path}")
        return position

    def _check_isolation(self, spec: Spec) -> tuple[IsolationReport, bool]:
        use_worktree = self.config.workspace.enabled
        report = scan_isolation_conflicts(
            spec,
            self.config.isolation.conflicting_commands,
            self.config.isolation.launchers,
        )
        if report.has_conflicts and use_worktree:
            self.echo("\nWORKTREE LIMITATION DETECTED", err=True)
            self.echo(
                "   This spec runs commands that manage shared local infrastructure "
                "and cannot be isolated in a git worktree.",
                err=True,
            )
            self.echo(f"   Found commands: {', '.join(report.found_commands)}", err=True)
            self.echo(f"   Affected: {', '.join(report.affected)}", err=True)
            self.echo("   Auto-disabling worktree mode; running in the repository root.", err=True)
            use_worktree = False
        return report, use_worktree

    def _load_checkpoint(self, path: Path, spec: Spec, branch: str) -> Checkpoint:
        identity = str(spec.path.resolve())
        checkpoint = self.checkpoints.load(path)
        if checkpoint is None:
            checkpoint = Checkpoint.fresh(identity, spec.hash, branch)
            self.checkpoints.save(path, checkpoint)
            return checkpoint

        warning = CheckpointStore.validate(checkpoint, identity, spec.hash)
        if warning:
            self.echo(f"\nWARNING: {warning}", err=True)
        self.echo(
            f"\nResuming from checkpoint: phase index {checkpoint.phase}, "
            f"step index {checkpoint.step}"
        )
        return checkpoint

    async def _run_gate(self, cwd: Path, spec: Spec, phase_index: int, log_dir: Path) -> None:
        phase = spec.phases[phase_index]
        self.echo("\nRunning phase gate...")
        result = await self.verifier.run_all(
            cwd,
            list(phase.gate),
            log_dir / f"phase_{phase.number}_gate.txt",
            self.config.execution.verify_timeout_ms,
        )
        if not result.success:
            raise GateFailedError(phase.number, result.output)
        self.echo("   Phase gate passed")

    async def run(
        self,
        spec_path: Path | str,
        *,
        start_at: tuple[int, int] | None = None,
        dry_run: bool = False,
    ) -> RunSummary:
        spec = self.load(spec_path)
        log_dir = self.config.log_dir(self.repo_root, spec.name)
        summary = RunSummary(spec_name=spec.name, log_dir=log_dir)

        self.echo(f"Spec: {spec.path}")
        self.echo(f"Hash: {spec.hash[:12]}...")
        self.echo("\n" + format_plan(spec, self.config.execution.step_timeout_ms))

        summary.isolation, use_worktree = self._check_isolation(spec)
        start = self.resolve_start(spec, start_at)

        if dry_run:
            if summary.isolation.has_conflicts:
                self.echo("\nNote: this spec requires --no-worktree.")
            self.echo("\nDRY RUN: no execution performed.")
            return summary

        lock = lock_path(self.base_dir, spec.name)
        self.locks.acquire(lock)
        try:
            cwd = self.repo_root
            if use_worktree:
                info = self.workspace.ensure(
                    self.repo_root, workspace_path(self.base_dir, spec.name), spec.name
                )
                summary.workspace = info
                cwd = info.path
                verb = "Created" if info.created else "Using existing"
                self.echo(f"\n{verb} worktree: {info.path}")
                self.echo(f"   Branch: {info.branch}")

            log_dir.mkdir(parents=True, exist_ok=True)
            cp_path = checkpoint_path(self.base_dir, spec.name)
            skip_file = skip_requests_path(self.base_dir, spec.name)
            checkpoint = self._load_checkpoint(
                cp_path, spec, summary.workspace.branch if summary.workspace else ""
            )
            if start is not None:
                checkpoint = checkpoint.advance(*start)
                self.checkpoints.save(cp_path, checkpoint)
                self.echo(f"\nStarting from step {spec.phases[start[0]].steps[start[1]].id}")

            first_phase, first_step = checkpoint.phase, checkpoint.step
            for p in range(first_phase, len(spec.phases)):
                phase = spec.phases[p]
                self.echo(f"\n{BANNER}\nPHASE {phase.number}: {phase.name}\n{BANNER}")

                for s in range(first_step if p == first_phase else 0, len(phase.steps)):
                    step = phase.steps[s]
                    # Skip requests arrive from the control server while the run is live.
                    if step.id in pending_skips(skip_file):
                        self.echo(f"\nSkipping step {step.id} ({step.title}) on request")
                        summary.skipped_steps.append(step.id)
                    else:
                        self.echo(f"\n> Step {step.id}: {step.title}")
                        await self.executor.execute(cwd, step, log_dir)
                        summary.executed_steps.append(step.id)
                    checkpoint = checkpoint.advance(p, s + 1)
                    self.checkpoints.save(cp_path, checkpoint)

                if phase.gate:
                    await self._run_gate(cwd, spec, p, log_dir)
                    summary.passed_gates.append(phase.number)

                checkpoint = checkpoint.advance(p + 1, 0)
                self.checkpoints.save(cp_path, checkpoint)

            self.echo("\nAll phases complete!")
            self.checkpoints.delete(cp_path)
            clear_skips(skip_file)
            summary.completed = True
            self._finish(summary)
            return summary
        except Exception:
            logger.debug("Run of %s failed; logs in %s", spec.name, log_dir, exc_info=True)
            raise
        finally:
            self.locks.release(lock)

    def _finish(self, summary: RunSummary) -> None:
        info = summary.workspace
        if info is None:
            self.echo(f"\nChanges were committed in {self.repo_root}")
            return
        branch = self.workspace.current_branch(info.path) or info.branch
        self.echo("\n" + handoff_instructions(branch, info.path))
        if not self.config.workspace.auto_cleanup:
            return
        try:
            self.workspace.remove(self.repo_root, info.path)
        except WorkspaceError as exc:
            logger.warning("Could not remove worktree %s: %s", info.path, exc)
            self.echo(f"\nWARNING: worktree {info.path} was left in place: {exc}", err=True)
            return
        self.echo(f"\nRemoved worktree {info.path} (branch {branch} kept)")
