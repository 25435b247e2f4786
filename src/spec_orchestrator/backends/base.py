from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


class CommandError(RuntimeError):
    """Raised when a supervised child process does not finish successfully."""

    def __init__(self, message: str, *, command: list[str] | None = None) -> None:
        super().__init__(message)
        self.command = list(command or [])


class CommandFailedError(CommandError):
    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, command=command)
        self.exit_code = exit_code
        self.stderr = stderr


class CommandTimeoutError(CommandError):
    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        timeout_ms: int,
        partial_stdout: str = "",
    ) -> None:
        super().__init__(message, command=command)
        self.timeout_ms = timeout_ms
        self.partial_stdout = partial_stdout


@dataclass(slots=True, frozen=True)
class CommandOutput:
    stdout: str
    stderr: str


@dataclass(slots=True, frozen=True)
class AgentResult:
    success: bool
    summary: str


class ChildProcess(ABC):
    """Minimal process handle the runner supervises; signal escalation only uses these calls."""

    @abstractmethod
    async def start(self) -> None:
        """Spawn the process."""

    @abstractmethod
    def terminate(self) -> None:
        """Ask the process to exit."""

    @abstractmethod
    def kill(self) -> None:
        """Force the process to exit."""

    @abstractmethod
    async def wait(self) -> int:
        """Wait for exit and return the exit code."""

    @property
    @abstractmethod
    def pid(self) -> int | None: ...

    @property
    @abstractmethod
    def returncode(self) -> int | None: ...

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return None

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return None


class AgentBackend(ABC):
    @abstractmethod
    async def invoke(
        self,
        cwd: Path,
        prompt: str,
        log_file: Path,
        timeout_ms: int,
        *,
        streaming: bool,
    ) -> AgentResult:
        """Run the coding agent once against ``cwd`` and report whether it succeeded."""
