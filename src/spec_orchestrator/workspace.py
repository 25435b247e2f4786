from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from spec_orchestrator.errors import WorkspaceError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class WorkspaceInfo:
    path: Path
    branch: str
    created: bool


def workspace_path(base_dir: Path, spec_name: str) -> Path:
    return base_dir / f"worktree-{spec_name}"


class WorkspaceManager:
    """Git worktree per spec, on a branch named ``<prefix>/<spec>-<epoch-ms>``."""

    def __init__(
        self,
        *,
        branch_prefix: str = "orchestrator",
        ignored_paths: list[str] | None = None,
    ) -> None:
        self.branch_prefix = branch_prefix
        self.ignored_paths = [path.strip("/") for path in (ignored_paths or []) if path.strip("/")]

    @staticmethod
    def _run_git(
        cwd: Path, args: list[str], check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=cwd,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise WorkspaceError("git executable not found in PATH.") from exc
        if check and proc.returncode != 0:
            raise WorkspaceError(
                f"git {' '.join(args)} failed (exit {proc.returncode}): "
                f"{proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    @classmethod
    def is_git_repo(cls, path: Path) -> bool:
        if not path.is_dir():
            return False
        proc = cls._run_git(path, ["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def branch_name(self, spec_name: str) -> str:
        return f"{self.branch_prefix}/{spec_name}-{int(time.time() * 1000)}"

    def ensure(self, repo_root: Path, workspace: Path, spec_name: str) -> WorkspaceInfo:
        if not self.is_git_repo(repo_root):
            raise WorkspaceError(f"Not a git repository: {repo_root}")
        if workspace.exists():
            branch = self.current_branch(workspace) or "unknown"
            logger.debug("Reusing workspace %s on branch %s", workspace, branch)
            return WorkspaceInfo(path=workspace, branch=branch, created=False)

        workspace.parent.mkdir(parents=True, exist_ok=True)
        branch = self.branch_name(spec_name)
        self._run_git(repo_root, ["worktree", "add", "-b", branch, str(workspace)])
        logger.debug("Created workspace %s on branch %s", workspace, branch)
        return WorkspaceInfo(path=workspace, branch=branch, created=True)

    def current_branch(self, path: Path) -> str | None:
        if not path.exists():
            return None
        proc = self._run_git(path, ["branch", "--show-current"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        return candidate.strip('"')

    def _is_ignored(self, relative_path: str) -> bool:
        normalized = relative_path.rstrip("/")
        return any(
            normalized == ignored or normalized.startswith(f"{ignored}/")
            for ignored in self.ignored_paths
        )

    def dirty_paths(self, path: Path) -> list[str]:
        proc = self._run_git(path, ["status", "--porcelain", "--untracked-files=all"])
        dirty: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            changed = self._status_line_path(line)
            if changed and not self._is_ignored(changed):
                dirty.append(changed)
        return dirty

    def is_dirty(self, path: Path) -> bool:
        return bool(self.dirty_paths(path))

    def commit_if_dirty(self, path: Path, message: str) -> bool:
        if not self.is_dirty(path):
            return False
        pathspec = ["--", "."] + [f":(exclude){ignored}" for ignored in self.ignored_paths]
        self._run_git(path, ["add", "-A", *pathspec])
        self._run_git(path, ["commit", "-m", message])
        logger.debug("Committed %s: %s", path, message)
        return True

    def remove(self, repo_root: Path, workspace: Path) -> None:
        if not workspace.exists():
            return
        self._run_git(repo_root, ["worktree", "remove", "--force", str(workspace)])
        logger.debug("Removed workspace %s", workspace)


def handoff_instructions(branch: str | None, workspace: Path | None) -> str:
    branch_name = branch or "orchestrator/<spec>-<timestamp>"
    workspace_dir = str(workspace) if workspace else ".orchestrator/worktree-<spec>"
    return "\n".join(
        [
            "Post-run checklist:",
            "  1. Review changes",
            f"     git log --oneline HEAD..{branch_name}",
            f"     git diff HEAD...{branch_name}",
            "  2. Merge (pick one)",
            f"     git merge {branch_name}",
            f"     git merge --squash {branch_name}",
            "  3. Clean up the workspace after merging",
            f"     git worktree remove {workspace_dir}",
            f"     git branch -d {branch_name}",
        ]
    )
