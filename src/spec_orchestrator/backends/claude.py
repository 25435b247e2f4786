from __future__ import annotations

import logging
import re
from pathlib import Path

from spec_orchestrator.backends.base import (
    AgentBackend,
    AgentResult,
    CommandError,
    CommandFailedError,
    CommandTimeoutError,
)
from spec_orchestrator.backends.process import ProcessRunner

logger = logging.getLogger(__name__)

SCAN_TAIL_CHARS = 1000
SUMMARY_TAIL_CHARS = 500
RETRY_ERROR_CHARS = 2000

CATASTROPHIC_PATTERNS = [
    re.compile(r"i (?:cannot|can't|am unable to) (?:complete|finish|proceed)", re.IGNORECASE),
    re.compile(r"(?:fatal|critical) error", re.IGNORECASE),
    re.compile(r"aborting due to", re.IGNORECASE),
    re.compile(r"permission denied.*cannot", re.IGNORECASE),
    re.compile(r"no such file or directory.*(?:required|needed)", re.IGNORECASE),
]


def detect_catastrophic(stdout: str) -> str | None:
    """Return a failure summary when the tail of ``stdout`` reads like the agent gave up."""
    tail = stdout[-SCAN_TAIL_CHARS:]
    for pattern in CATASTROPHIC_PATTERNS:
        if pattern.search(tail):
            return stdout[-SUMMARY_TAIL_CHARS:]
    return None


def build_retry_prompt(original_prompt: str, error: str) -> str:
    return (
        "RETRY CONTEXT: The previous attempt failed with the following error:\n"
        f"```\n{error[:RETRY_ERROR_CHARS]}\n```\n\n"
        "Please analyze this error, fix the issue, and try again.\n\n"
        "---\n\n"
        f"Original prompt:\n{original_prompt}"
    )


def _append(log_file: Path, text: str) -> None:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    with log_file.open("a", encoding="utf-8") as handle:
        handle.write(text)


class ClaudeCodeAgent(AgentBackend):
    def __init__(
        self,
        binary: str = "claude",
        extra_args: list[str] | None = None,
        *,
        runner: ProcessRunner | None = None,
        verbose: bool = False,
    ) -> None:
        self.binary = binary
        self.extra_args = (
            list(extra_args) if extra_args is not None else ["--dangerously-skip-permissions"]
        )
        self.runner = runner or ProcessRunner()
        self.verbose = verbose

    def build_command(self, prompt: str, *, streaming: bool) -> list[str]:
        if streaming:
            return [self.binary, *self.extra_args, prompt]
        return [self.binary, "--print", *self.extra_args, prompt]

    async def invoke(
        self,
        cwd: Path,
        prompt: str,
        log_file: Path,
        timeout_ms: int,
        *,
        streaming: bool,
    ) -> AgentResult:
        if streaming:
            return await self._invoke_streaming(cwd, prompt, log_file, timeout_ms)
        return await self._invoke_quiet(cwd, prompt, log_file, timeout_ms)

    async def _invoke_streaming(
        self, cwd: Path, prompt: str, log_file: Path, timeout_ms: int
    ) -> AgentResult:
        _append(log_file, f"=== PROMPT (streaming mode) ===\n{prompt}\n\n")
        command = self.build_command(prompt, streaming=True)
        try:
            returncode, timed_out = await self.runner.run_attached(
                cwd, command[0], command[1:], timeout_ms=timeout_ms
            )
        except CommandError as exc:
            _append(log_file, f"=== ERROR ===\n{exc}\n")
            return AgentResult(success=False, summary=str(exc))

        if timed_out:
            _append(log_file, f"=== TIMEOUT after {timeout_ms}ms ===\n")
            return AgentResult(success=False, summary=f"Agent timed out after {timeout_ms}ms")
        _append(log_file, f"=== EXIT CODE: {returncode} ===\n")
        if returncode != 0:
            return AgentResult(success=False, summary=f"Agent exited with code {returncode}")
        return AgentResult(success=True, summary="Completed (streaming mode)")

    async def _invoke_quiet(
        self, cwd: Path, prompt: str, log_file: Path, timeout_ms: int
    ) -> AgentResult:
        _append(log_file, f"=== PROMPT ===\n{prompt}\n\n=== RESPONSE ===\n")
        command = self.build_command(prompt, streaming=False)
        try:
            output = await self.runner.run(
                cwd,
                command[0],
                command[1:],
                log_file=log_file,
                stream_output=self.verbose,
                timeout_ms=timeout_ms,
            )
        except CommandTimeoutError as exc:
            _append(log_file, f"\n=== TIMEOUT after {timeout_ms}ms ===\n")
            return AgentResult(success=False, summary=str(exc))
        except CommandFailedError as exc:
            if exc.exit_code is None:
                _append(log_file, f"\n=== ERROR ===\n{exc}\n")
            else:
                _append(log_file, f"\n=== EXIT CODE: {exc.exit_code} ===\n")
            return AgentResult(success=False, summary=str(exc))

        _append(log_file, "\n=== EXIT CODE: 0 ===\n")
        catastrophic = detect_catastrophic(output.stdout)
        if catastrophic is not None:
            logger.debug("Agent output matched a catastrophic phrase")
            return AgentResult(success=False, summary=catastrophic)
        return AgentResult(success=True, summary=output.stdout[-SUMMARY_TAIL_CHARS:])
