import asyncio
import os
import subprocess
from pathlib import Path

import pytest

from spec_orchestrator.backends import AgentBackend, AgentResult
from spec_orchestrator.config import OrchestratorConfig
from spec_orchestrator.driver import Orchestrator
from spec_orchestrator.errors import (
    GateFailedError,
    LockContentionError,
    ParseError,
    WorkspaceError,
)
from spec_orchestrator.state.checkpoint import Checkpoint, CheckpointStore, checkpoint_path
from spec_orchestrator.state.lock import lock_path
from spec_orchestrator.state.skips import request_skip, skip_requests_path
from spec_orchestrator.workspace import workspace_path

SPEC_TEXT = """# Demo

## 4. Prompting Strategy

### Phase 1: First

#### Step 1.1: Make a

a.txt

##### Verify
- `test -f a.txt`

#### Gate
- `test -f a.txt`

### Phase 2: Second

#### Step 2.1: Make b

b.txt

#### Step 2.2: Make c

c.txt
"""


class FileWritingAgent(AgentBackend):
    """Creates the file named on the prompt's last line."""

    def __init__(self) -> None:
        self.prompts: list[str] = []

    async def invoke(
        self,
        cwd: Path,
        prompt: str,
        log_file: Path,
        timeout_ms: int,
        *,
        streaming: bool,
    ) -> AgentResult:
        _ = (log_file, timeout_ms, streaming)
        self.prompts.append(prompt)
        name = prompt.strip().splitlines()[-1]
        (cwd / name).write_text(f"{name}\n", encoding="utf-8")
        return AgentResult(success=True, summary=f"wrote {name}")


async def _no_sleep(seconds: float) -> None:
    _ = seconds


def _git(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(["git", *cmd], cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout


def _init_git_repo(repo_path: Path) -> None:
    _git(["init"], repo_path)
    _git(["config", "user.email", "test@example.com"], repo_path)
    _git(["config", "user.name", "Test User"], repo_path)
    (repo_path / "README.md").write_text("demo\n", encoding="utf-8")
    _git(["add", "README.md"], repo_path)
    _git(["commit", "-m", "seed"], repo_path)


def _setup(
    tmp_path: Path, spec_text: str = SPEC_TEXT, config: OrchestratorConfig | None = None
) -> tuple[Orchestrator, FileWritingAgent, Path, list[str]]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    spec_file = tmp_path / "demo.md"
    spec_file.write_text(spec_text, encoding="utf-8")
    agent = FileWritingAgent()
    echoed: list[str] = []
    orchestrator = Orchestrator(
        config or OrchestratorConfig.default(),
        repo,
        agent=agent,
        echo=lambda message="", **_: echoed.append(message),
        sleep=_no_sleep,
    )
    return orchestrator, agent, spec_file, echoed


def test_fresh_run_commits_each_step_in_the_worktree(tmp_path: Path) -> None:
    orchestrator, agent, spec_file, echoed = _setup(tmp_path)
    repo = orchestrator.repo_root

    summary = asyncio.run(orchestrator.run(spec_file))

    assert summary.completed is True
    assert summary.executed_steps == ["1.1", "2.1", "2.2"]
    assert summary.passed_gates == [1]
    assert len(agent.prompts) == 3
    worktree = workspace_path(repo / ".orchestrator", "demo")
    assert summary.workspace is not None
    assert summary.workspace.path == worktree
    subjects = _git(["log", "--format=%s"], worktree).splitlines()
    assert subjects == [
        "orchestrator: step 2.2 - Make c",
        "orchestrator: step 2.1 - Make b",
        "orchestrator: step 1.1 - Make a",
        "seed",
    ]
    assert not (repo / "a.txt").exists()
    assert not checkpoint_path(repo / ".orchestrator", "demo").exists()
    assert not lock_path(repo / ".orchestrator", "demo").exists()
    assert (repo / ".orchestrator" / "logs" / "demo" / "phase_1_gate.txt").exists()
    assert "\n> Step 2.1: Make b" in echoed
    assert any("PHASE 2: Second" in line for line in echoed)
    assert "\nAll phases complete!" in echoed


def test_resume_continues_exactly_at_the_checkpoint(tmp_path: Path) -> None:
    config = OrchestratorConfig.default()
    config.workspace.enabled = False
    orchestrator, agent, spec_file, echoed = _setup(tmp_path, config=config)
    repo = orchestrator.repo_root
    spec = orchestrator.load(spec_file)
    cp_path = checkpoint_path(repo / ".orchestrator", "demo")
    CheckpointStore().save(
        cp_path, Checkpoint.fresh(str(spec_file.resolve()), spec.hash, "").advance(1, 0)
    )

    summary = asyncio.run(orchestrator.run(spec_file))

    assert summary.executed_steps == ["2.1", "2.2"]
    assert summary.passed_gates == []
    assert [prompt.strip() for prompt in agent.prompts] == ["b.txt", "c.txt"]
    assert not (repo / "a.txt").exists()
    assert not cp_path.exists()
    assert any(line.startswith("\nResuming from checkpoint") for line in echoed)


def test_changed_spec_warns_but_resumes(tmp_path: Path) -> None:
    config = OrchestratorConfig.default()
    config.workspace.enabled = False
    orchestrator, _, spec_file, echoed = _setup(tmp_path, config=config)
    cp_path = checkpoint_path(orchestrator.base_dir, "demo")
    CheckpointStore().save(
        cp_path, Checkpoint.fresh(str(spec_file.resolve()), "0" * 64, "").advance(1, 1)
    )

    summary = asyncio.run(orchestrator.run(spec_file))

    assert summary.executed_steps == ["2.2"]
    assert any("Spec file has changed" in line for line in echoed)


def test_gate_failure_is_not_retried_and_keeps_checkpoint(tmp_path: Path) -> None:
    spec_text = SPEC_TEXT.replace("#### Gate\n- `test -f a.txt`", "#### Gate\n- `false`")
    config = OrchestratorConfig.default()
    config.workspace.enabled = False
    orchestrator, agent, spec_file, _ = _setup(tmp_path, spec_text, config)
    cp_path = checkpoint_path(orchestrator.base_dir, "demo")

    with pytest.raises(GateFailedError) as excinfo:
        asyncio.run(orchestrator.run(spec_file))

    assert excinfo.value.phase_number == 1
    assert len(agent.prompts) == 1
    checkpoint = CheckpointStore().load(cp_path)
    assert checkpoint is not None
    assert (checkpoint.phase, checkpoint.step) == (0, 1)
    assert not lock_path(orchestrator.base_dir, "demo").exists()


def test_held_lock_blocks_run_without_touching_checkpoint(tmp_path: Path) -> None:
    config = OrchestratorConfig.default()
    config.workspace.enabled = False
    orchestrator, agent, spec_file, _ = _setup(tmp_path, config=config)
    base = orchestrator.base_dir
    base.mkdir(parents=True)
    lock = lock_path(base, "demo")
    lock.write_text(f"{os.getppid()}\n", encoding="utf-8")
    cp_path = checkpoint_path(base, "demo")
    spec = orchestrator.load(spec_file)
    original = Checkpoint.fresh(str(spec_file.resolve()), spec.hash, "").advance(0, 1)
    CheckpointStore().save(cp_path, original)
    before = cp_path.read_text(encoding="utf-8")

    with pytest.raises(LockContentionError):
        asyncio.run(orchestrator.run(spec_file))

    assert agent.prompts == []
    assert cp_path.read_text(encoding="utf-8") == before
    assert lock.exists()


def test_dry_run_prints_plan_and_touches_nothing(tmp_path: Path) -> None:
    orchestrator, agent, spec_file, echoed = _setup(tmp_path)

    summary = asyncio.run(orchestrator.run(spec_file, dry_run=True))

    assert summary.completed is False
    assert agent.prompts == []
    assert not orchestrator.base_dir.exists()
    assert "\nDRY RUN: no execution performed." in echoed


def test_conflicting_commands_disable_the_worktree(tmp_path: Path) -> None:
    spec_text = SPEC_TEXT.replace(
        "- `test -f a.txt`\n\n#### Gate",
        "- `test -f a.txt`\n- `pnpm supabase db reset`\n\n#### Gate",
    )
    orchestrator, _, spec_file, echoed = _setup(tmp_path, spec_text)

    summary = asyncio.run(orchestrator.run(spec_file, dry_run=True))

    assert summary.isolation.has_conflicts is True
    assert "\nWORKTREE LIMITATION DETECTED" in echoed
    assert "\nNote: this spec requires --no-worktree." in echoed


def test_start_at_skips_earlier_steps(tmp_path: Path) -> None:
    config = OrchestratorConfig.default()
    config.workspace.enabled = False
    orchestrator, agent, spec_file, _ = _setup(tmp_path, config=config)

    summary = asyncio.run(orchestrator.run(spec_file, start_at=(2, 2)))

    assert summary.executed_steps == ["2.2"]
    assert [prompt.strip() for prompt in agent.prompts] == ["c.txt"]
    subjects = _git(["log", "--format=%s"], orchestrator.repo_root).splitlines()
    assert subjects[0] == "orchestrator: step 2.2 - Make c"


def test_start_at_unknown_step_is_rejected(tmp_path: Path) -> None:
    orchestrator, agent, spec_file, _ = _setup(tmp_path)

    with pytest.raises(ParseError, match="Step 3.1 not found"):
        asyncio.run(orchestrator.run(spec_file, start_at=(3, 1)))

    assert agent.prompts == []


def test_auto_cleanup_removes_worktree_and_keeps_branch(tmp_path: Path) -> None:
    config = OrchestratorConfig.default()
    config.workspace.auto_cleanup = True
    orchestrator, _, spec_file, _ = _setup(tmp_path, config=config)

    summary = asyncio.run(orchestrator.run(spec_file))

    assert summary.workspace is not None
    assert not summary.workspace.path.exists()
    branches = _git(["branch", "--list", summary.workspace.branch], orchestrator.repo_root)
    assert summary.workspace.branch in branches


def test_failed_worktree_removal_only_warns(tmp_path: Path, monkeypatch) -> None:
    config = OrchestratorConfig.default()
    config.workspace.auto_cleanup = True
    orchestrator, _, spec_file, echoed = _setup(tmp_path, config=config)

    def refuse(repo_root: Path, workspace: Path) -> None:
        raise WorkspaceError(f"git worktree remove {workspace} failed (exit 128): locked")

    monkeypatch.setattr(orchestrator.workspace, "remove", refuse)

    summary = asyncio.run(orchestrator.run(spec_file))

    assert summary.completed is True
    assert summary.workspace is not None
    assert summary.workspace.path.exists()
    assert any(line.startswith("\nWARNING: worktree") for line in echoed)


def test_requested_skip_passes_over_step_without_running_it(tmp_path: Path) -> None:
    config = OrchestratorConfig.default()
    config.workspace.enabled = False
    orchestrator, agent, spec_file, echoed = _setup(tmp_path, config=config)
    skip_file = skip_requests_path(orchestrator.base_dir, "demo")
    request_skip(skip_file, "2.1")

    summary = asyncio.run(orchestrator.run(spec_file))

    assert summary.completed is True
    assert summary.executed_steps == ["1.1", "2.2"]
    assert summary.skipped_steps == ["2.1"]
    assert len(agent.prompts) == 2
    assert not any("b.txt" in prompt for prompt in agent.prompts)
    assert not (orchestrator.repo_root / "b.txt").exists()
    assert "\nSkipping step 2.1 (Make b) on request" in echoed
    assert "\n> Step 2.1: Make b" not in echoed
    assert not skip_file.exists()


def test_skip_request_survives_a_failed_run(tmp_path: Path) -> None:
    spec_text = SPEC_TEXT.replace("#### Gate\n- `test -f a.txt`", "#### Gate\n- `false`")
    config = OrchestratorConfig.default()
    config.workspace.enabled = False
    orchestrator, _, spec_file, _ = _setup(tmp_path, spec_text, config)
    skip_file = skip_requests_path(orchestrator.base_dir, "demo")
    request_skip(skip_file, "2.2")

    with pytest.raises(GateFailedError):
        asyncio.run(orchestrator.run(spec_file))

    assert skip_file.read_text(encoding="utf-8") == "2.2\n"
