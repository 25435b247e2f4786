from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spec_orchestrator.parser import Step


class OrchestratorError(RuntimeError):
    """Base class for failures that end an orchestrator run."""


class ConfigError(OrchestratorError):
    """Raised when configuration or environment overrides are invalid."""


class ParseError(OrchestratorError):
    """Raised when a spec document does not match the plan grammar."""

    def __init__(self, message: str, *, line: int | None = None) -> None:
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)
        self.line = line


class LockContentionError(OrchestratorError):
    def __init__(self, path: Path, holder: int | None = None) -> None:
        holder_text = f" (held by PID {holder})" if holder is not None else ""
        super().__init__(
            f"Lockfile exists: {path}{holder_text}\n"
            "Another orchestrator run is in progress for this spec. "
            "If you are sure it is stale, delete the lockfile and try again."
        )
        self.path = path
        self.holder = holder


class CheckpointCorruptedError(OrchestratorError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(
            f"Checkpoint file is corrupted: {path}\n"
            "Delete it to restart from the beginning, or fix the JSON manually.\n"
            f"Error: {reason}"
        )
        self.path = path
        self.reason = reason


class WorkspaceError(OrchestratorError):
    """Raised when git workspace operations fail."""


class StepFailedError(OrchestratorError):
    def __init__(self, step: Step, summary: str, attempts: int) -> None:
        super().__init__(f"Step {step.id} failed after {attempts} attempts: {summary}")
        self.step = step
        self.summary = summary
        self.attempts = attempts


class VerificationFailedError(OrchestratorError):
    def __init__(self, step: Step, output: str, attempts: int) -> None:
        super().__init__(
            f"Step {step.id} verification failed after {attempts} attempts: {output[:500]}"
        )
        self.step = step
        self.output = output
        self.attempts = attempts


class GateFailedError(OrchestratorError):
    def __init__(self, phase_number: int, output: str) -> None:
        super().__init__(f"Phase {phase_number} gate failed:\n{output}")
        self.phase_number = phase_number
        self.output = output
