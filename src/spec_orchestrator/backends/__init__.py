from spec_orchestrator.backends.base import (
    AgentBackend,
    AgentResult,
    ChildProcess,
    CommandError,
    CommandFailedError,
    CommandOutput,
    CommandTimeoutError,
)
from spec_orchestrator.backends.claude import ClaudeCodeAgent, build_retry_prompt
from spec_orchestrator.backends.process import AsyncioChildProcess, ProcessRunner, supervise

__all__ = [
    "AgentBackend",
    "AgentResult",
    "AsyncioChildProcess",
    "ChildProcess",
    "ClaudeCodeAgent",
    "CommandError",
    "CommandFailedError",
    "CommandOutput",
    "CommandTimeoutError",
    "ProcessRunner",
    "build_retry_prompt",
    "supervise",
]
