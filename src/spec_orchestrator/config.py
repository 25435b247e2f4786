from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from spec_orchestrator.errors import ConfigError

DEFAULT_CONFIG_FILE = "orchestrator.toml"

ENV_SPEC = "ORCH_SPEC"
ENV_MAX_ATTEMPTS = "ORCH_MAX_ATTEMPTS"
ENV_STEP_TIMEOUT = "ORCH_STEP_TIMEOUT"
ENV_VERIFY_TIMEOUT = "ORCH_VERIFY_TIMEOUT"


@dataclass(slots=True)
class PathsConfig:
    base_dir: str = ".orchestrator"


@dataclass(slots=True)
class ExecutionConfig:
    max_attempts: int = 3
    step_timeout_ms: int = 60_000
    verify_timeout_ms: int = 120_000
    kill_grace_ms: int = 5_000
    backoff_base_ms: int = 250
    backoff_step_ms: int = 500
    backoff_max_ms: int = 10_000
    fail_fast: bool = False

    def validate(self) -> None:
        limits = (
            ("max_attempts", self.max_attempts, 1),
            ("step_timeout_ms", self.step_timeout_ms, 1),
            ("verify_timeout_ms", self.verify_timeout_ms, 1),
            ("kill_grace_ms", self.kill_grace_ms, 0),
            ("backoff_base_ms", self.backoff_base_ms, 0),
            ("backoff_step_ms", self.backoff_step_ms, 0),
            ("backoff_max_ms", self.backoff_max_ms, 0),
        )
        for name, value, minimum in limits:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"execution.{name} must be an integer, got {value!r}")
            if value < minimum:
                raise ConfigError(f"execution.{name} must be >= {minimum}, got {value}")


@dataclass(slots=True)
class AgentConfig:
    binary: str = "claude"
    extra_args: list[str] = field(default_factory=lambda: ["--dangerously-skip-permissions"])
    streaming: bool = True


@dataclass(slots=True)
class WorkspaceConfig:
    enabled: bool = True
    branch_prefix: str = "orchestrator"
    auto_cleanup: bool = False


@dataclass(slots=True)
class IsolationConfig:
    conflicting_commands: list[str] = field(
        default_factory=lambda: [
            "supabase",
            "supabase db",
            "supabase db reset",
            "supabase db push",
            "supabase db pull",
            "supabase migration",
            "supabase start",
            "supabase stop",
        ]
    )
    launchers: list[str] = field(default_factory=lambda: ["pnpm", "npx", "npm"])


@dataclass(slots=True)
class OrchestratorConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    isolation: IsolationConfig = field(default_factory=IsolationConfig)

    @classmethod
    def default(cls) -> OrchestratorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OrchestratorConfig:
        try:
            config = cls(
                paths=PathsConfig(**data.get("paths", {})),
                execution=ExecutionConfig(**data.get("execution", {})),
                agent=AgentConfig(**data.get("agent", {})),
                workspace=WorkspaceConfig(**data.get("workspace", {})),
                isolation=IsolationConfig(**data.get("isolation", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        config.execution.validate()
        return config

    def to_dict(self) -> dict:
        return {
            "paths": {
                "base_dir": self.paths.base_dir,
            },
            "execution": {
                "max_attempts": self.execution.max_attempts,
                "step_timeout_ms": self.execution.step_timeout_ms,
                "verify_timeout_ms": self.execution.verify_timeout_ms,
                "kill_grace_ms": self.execution.kill_grace_ms,
                "backoff_base_ms": self.execution.backoff_base_ms,
                "backoff_step_ms": self.execution.backoff_step_ms,
                "backoff_max_ms": self.execution.backoff_max_ms,
                "fail_fast": self.execution.fail_fast,
            },
            "agent": {
                "binary": self.agent.binary,
                "extra_args": list(self.agent.extra_args),
                "streaming": self.agent.streaming,
            },
            "workspace": {
                "enabled": self.workspace.enabled,
                "branch_prefix": self.workspace.branch_prefix,
                "auto_cleanup": self.workspace.auto_cleanup,
            },
            "isolation": {
                "conflicting_commands": list(self.isolation.conflicting_commands),
                "launchers": list(self.isolation.launchers),
            },
        }

    def base_dir(self, repo_root: Path) -> Path:
        base = Path(self.paths.base_dir)
        if not base.is_absolute():
            base = repo_root / base
        return base

    def log_dir(self, repo_root: Path, spec_name: str) -> Path:
        return self.base_dir(repo_root) / "logs" / spec_name


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: OrchestratorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["paths", "execution", "agent", "workspace", "isolation"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def _env_int(environ: Mapping[str, str], name: str, *, minimum: int) -> int | None:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def apply_env_overrides(
    config: OrchestratorConfig, environ: Mapping[str, str] | None = None
) -> OrchestratorConfig:
    env = os.environ if environ is None else environ
    max_attempts = _env_int(env, ENV_MAX_ATTEMPTS, minimum=1)
    if max_attempts is not None:
        config.execution.max_attempts = max_attempts
    step_timeout = _env_int(env, ENV_STEP_TIMEOUT, minimum=1)
    if step_timeout is not None:
        config.execution.step_timeout_ms = step_timeout
    verify_timeout = _env_int(env, ENV_VERIFY_TIMEOUT, minimum=1)
    if verify_timeout is not None:
        config.execution.verify_timeout_ms = verify_timeout
    return config


def load_config(path: Path) -> OrchestratorConfig:
    if not path.exists():
        return OrchestratorConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return OrchestratorConfig.from_dict(data)


def save_config(path: Path, config: OrchestratorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
