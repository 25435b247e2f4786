from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from spec_orchestrator.backends.base import CommandError
from spec_orchestrator.backends.process import ProcessRunner
from spec_orchestrator.parser import VerifyCmd

logger = logging.getLogger(__name__)

OUTPUT_SEPARATOR = "\n---\n"


@dataclass(slots=True, frozen=True)
class VerifyResult:
    success: bool
    output: str
    failed_cmd: VerifyCmd | None = None


class Verifier:
    """Runs verification commands in order and stops at the first failure."""

    def __init__(self, runner: ProcessRunner) -> None:
        self.runner = runner

    async def run_all(
        self,
        cwd: Path,
        commands: list[VerifyCmd],
        log_file: Path | None,
        timeout_ms: int,
    ) -> VerifyResult:
        if not commands:
            return VerifyResult(success=True, output="No verification commands")

        sections: list[str] = []
        for command in commands:
            logger.debug("Verifying: %s", command.render())
            try:
                output = await self.runner.run(
                    cwd,
                    command.cmd,
                    list(command.args),
                    log_file=log_file,
                    timeout_ms=timeout_ms,
                )
            except CommandError as exc:
                sections.append(f"[failed] {command.render()}:\n{exc}")
                return VerifyResult(
                    success=False,
                    output=OUTPUT_SEPARATOR.join(sections),
                    failed_cmd=command,
                )
            sections.append(f"[ok] {command.render()}:\n{output.stdout}{output.stderr}")

        return VerifyResult(success=True, output=OUTPUT_SEPARATOR.join(sections))


def format_result(result: VerifyResult) -> str:
    if result.success:
        return "All verifications passed"
    if result.failed_cmd is None:
        return "Verification failed"
    return f"Verification failed: {result.failed_cmd.render()}"
