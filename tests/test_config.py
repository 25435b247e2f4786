import tomllib
from pathlib import Path

import pytest

from spec_orchestrator import __version__
from spec_orchestrator.config import (
    OrchestratorConfig,
    apply_env_overrides,
    dumps_toml,
    load_config,
    save_config,
)
from spec_orchestrator.errors import ConfigError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestrator.toml"
    config = OrchestratorConfig.default()
    config.paths.base_dir = ".state"
    config.execution.max_attempts = 5
    config.execution.step_timeout_ms = 90_000
    config.execution.fail_fast = True
    config.agent.binary = "/opt/bin/claude"
    config.agent.extra_args = ["--model", "sonnet"]
    config.workspace.branch_prefix = "auto"
    config.workspace.auto_cleanup = True
    config.isolation.conflicting_commands = ["docker compose"]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.paths.base_dir == ".state"
    assert loaded.execution.max_attempts == 5
    assert loaded.execution.step_timeout_ms == 90_000
    assert loaded.execution.verify_timeout_ms == 120_000
    assert loaded.execution.fail_fast is True
    assert loaded.agent.binary == "/opt/bin/claude"
    assert loaded.agent.extra_args == ["--model", "sonnet"]
    assert loaded.workspace.branch_prefix == "auto"
    assert loaded.workspace.auto_cleanup is True
    assert loaded.isolation.conflicting_commands == ["docker compose"]
    assert loaded.isolation.launchers == ["pnpm", "npx", "npm"]


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == OrchestratorConfig.default()


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(OrchestratorConfig.default())

    for section in ("[paths]", "[execution]", "[agent]", "[workspace]", "[isolation]"):
        assert section in rendered
    assert "max_attempts = 3" in rendered
    assert 'extra_args = ["--dangerously-skip-permissions"]' in rendered


def test_invalid_toml_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestrator.toml"
    config_path.write_text("[execution\nmax_attempts = 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(config_path)


def test_unknown_key_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestrator.toml"
    config_path.write_text("[execution]\nmax_tries = 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid configuration"):
        load_config(config_path)


@pytest.mark.parametrize(
    ("line", "message"),
    [
        ("max_attempts = 0", "execution.max_attempts must be >= 1"),
        ("max_attempts = -2", "execution.max_attempts must be >= 1"),
        ("step_timeout_ms = 0", "execution.step_timeout_ms must be >= 1"),
        ("verify_timeout_ms = 0", "execution.verify_timeout_ms must be >= 1"),
        ("kill_grace_ms = -1", "execution.kill_grace_ms must be >= 0"),
        ('max_attempts = "3"', "execution.max_attempts must be an integer"),
    ],
)
def test_out_of_range_execution_limits_are_rejected(
    tmp_path: Path, line: str, message: str
) -> None:
    config_path = tmp_path / "orchestrator.toml"
    config_path.write_text(f"[execution]\n{line}\n", encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(config_path)


def test_zero_grace_is_accepted(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestrator.toml"
    config_path.write_text("[execution]\nkill_grace_ms = 0\n", encoding="utf-8")

    assert load_config(config_path).execution.kill_grace_ms == 0


def test_env_overrides_replace_execution_limits() -> None:
    config = apply_env_overrides(
        OrchestratorConfig.default(),
        {
            "ORCH_MAX_ATTEMPTS": "7",
            "ORCH_STEP_TIMEOUT": "1000",
            "ORCH_VERIFY_TIMEOUT": " 2000 ",
        },
    )

    assert config.execution.max_attempts == 7
    assert config.execution.step_timeout_ms == 1000
    assert config.execution.verify_timeout_ms == 2000


def test_empty_env_values_are_ignored() -> None:
    config = apply_env_overrides(OrchestratorConfig.default(), {"ORCH_MAX_ATTEMPTS": ""})

    assert config.execution.max_attempts == 3


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("ORCH_MAX_ATTEMPTS", "three", "must be an integer"),
        ("ORCH_MAX_ATTEMPTS", "0", "must be >= 1"),
        ("ORCH_STEP_TIMEOUT", "-5", "must be >= 1"),
    ],
)
def test_invalid_env_values_raise(name: str, value: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        apply_env_overrides(OrchestratorConfig.default(), {name: value})


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
