from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

import click

from spec_orchestrator.backends.base import AgentBackend, AgentResult
from spec_orchestrator.backends.claude import build_retry_prompt
from spec_orchestrator.config import ExecutionConfig, OrchestratorConfig
from spec_orchestrator.errors import StepFailedError, VerificationFailedError
from spec_orchestrator.parser import Step
from spec_orchestrator.verifier import Verifier, format_result
from spec_orchestrator.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def backoff_ms(attempt: int, execution: ExecutionConfig | None = None) -> int:
    """Delay after the failed 0-based ``attempt``: 250, 750, 2250, ... capped at the maximum."""
    execution = execution or ExecutionConfig()
    return min(
        execution.backoff_max_ms,
        execution.backoff_base_ms + attempt * attempt * execution.backoff_step_ms,
    )


def commit_message(step: Step) -> str:
    return f"orchestrator: step {step.id} - {step.title}"


def step_log_dir(log_dir: Path, step: Step) -> Path:
    return log_dir / f"step-{step.id}"


class StepExecutor:
    def __init__(
        self,
        agent: AgentBackend,
        verifier: Verifier,
        workspace: WorkspaceManager,
        config: OrchestratorConfig,
        *,
        sleep: Sleep = asyncio.sleep,
        echo: Callable[..., None] = click.echo,
    ) -> None:
        self.agent = agent
        self.verifier = verifier
        self.workspace = workspace
        self.config = config
        self.sleep = sleep
        self.echo = echo

    async def _back_off(self, attempt: int, what: str) -> None:
        wait = backoff_ms(attempt, self.config.execution)
        self.echo(f"   Backing off {wait}ms then retrying {what}...")
        await self.sleep(wait / 1000)

    async def execute(self, cwd: Path, step: Step, log_dir: Path) -> None:
        """Run ``step`` until the agent succeeds and verification passes, then commit.

        Raises ``StepFailedError`` or ``VerificationFailedError`` once attempts run out,
        or on the first failure when fail-fast is on.
        """
        execution = self.config.execution
        attempts_dir = step_log_dir(log_dir, step)
        attempts_dir.mkdir(parents=True, exist_ok=True)
        previous_error: str | None = None

        for attempt in range(execution.max_attempts):
            number = attempt + 1
            last_attempt = execution.fail_fast or number == execution.max_attempts
            if attempt > 0:
                self.echo(f"   Attempt {number}/{execution.max_attempts}")

            prompt = (
                build_retry_prompt(step.prompt, previous_error)
                if previous_error is not None
                else step.prompt
            )
            if step.timeout_ms is not None and step.timeout_ms != execution.step_timeout_ms:
                logger.debug(
                    "Step %s requests %sms; enforcing %sms",
                    step.id,
                    step.timeout_ms,
                    execution.step_timeout_ms,
                )
            result: AgentResult = await self.agent.invoke(
                cwd,
                prompt,
                attempts_dir / f"agent_attempt_{number}.txt",
                execution.step_timeout_ms,
                streaming=self.config.agent.streaming,
            )

            if not result.success:
                self.echo(f"   Agent reported failure: {result.summary[:100]}...", err=True)
                previous_error = result.summary
                if last_attempt:
                    raise StepFailedError(step, result.summary, number)
                await self._back_off(attempt, "step")
                continue

            if step.verify:
                self.echo("   Verifying...")
                verify_result = await self.verifier.run_all(
                    cwd,
                    list(step.verify),
                    attempts_dir / f"verify_attempt_{number}.txt",
                    execution.verify_timeout_ms,
                )
                self.echo(f"   {format_result(verify_result)}")
                if not verify_result.success:
                    previous_error = verify_result.output
                    if last_attempt:
                        raise VerificationFailedError(step, verify_result.output, number)
                    await self._back_off(attempt, "step")
                    continue

            message = commit_message(step)
            if not WorkspaceManager.is_git_repo(cwd):
                logger.warning("%s is not a git repository; skipping commit", cwd)
            elif self.workspace.commit_if_dirty(cwd, message):
                self.echo(f"   Committed: {message}")
            else:
                self.echo("   No changes to commit")
            return

        raise StepFailedError(
            step, f"no attempt made (max_attempts={execution.max_attempts})", 0
        )
