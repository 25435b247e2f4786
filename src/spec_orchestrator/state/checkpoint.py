from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from spec_orchestrator.errors import CheckpointCorruptedError

CHECKPOINT_FIELDS = (
    "spec_path",
    "spec_hash",
    "phase",
    "step",
    "started_at",
    "last_step_at",
    "workspace_branch",
)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def checkpoint_path(base_dir: Path, spec_name: str) -> Path:
    return base_dir / f"{spec_name}.checkpoint.json"


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """Progress marker; ``phase``/``step`` index the next unit of work, never a finished one."""

    spec_path: str
    spec_hash: str
    phase: int
    step: int
    started_at: str
    last_step_at: str
    workspace_branch: str

    @classmethod
    def fresh(cls, spec_path: str, spec_hash: str, workspace_branch: str) -> Checkpoint:
        now = _utcnow_iso()
        return cls(
            spec_path=spec_path,
            spec_hash=spec_hash,
            phase=0,
            step=0,
            started_at=now,
            last_step_at=now,
            workspace_branch=workspace_branch,
        )

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Checkpoint:
        missing = [name for name in CHECKPOINT_FIELDS if name not in payload]
        if missing:
            raise ValueError(f"missing fields: {', '.join(missing)}")
        phase = payload["phase"]
        step = payload["step"]
        if not isinstance(phase, int) or not isinstance(step, int) or phase < 0 or step < 0:
            raise ValueError("phase and step must be non-negative integers")
        return cls(
            spec_path=str(payload["spec_path"]),
            spec_hash=str(payload["spec_hash"]),
            phase=phase,
            step=step,
            started_at=str(payload["started_at"]),
            last_step_at=str(payload["last_step_at"]),
            workspace_branch=str(payload["workspace_branch"] or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def advance(self, phase: int, step: int) -> Checkpoint:
        return replace(self, phase=phase, step=step, last_step_at=_utcnow_iso())


class CheckpointStore:
    def load(self, path: Path) -> Checkpoint | None:
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("checkpoint must be a JSON object")
            return Checkpoint.from_dict(payload)
        except (OSError, ValueError) as exc:
            raise CheckpointCorruptedError(path, str(exc)) from exc

    def save(self, path: Path, checkpoint: Checkpoint) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(checkpoint.to_dict(), ensure_ascii=False, indent=2)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(serialized)
            handle.flush()
            os.fsync(handle.fileno())
            temp_path = Path(handle.name)
        try:
            os.replace(temp_path, path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    def delete(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    @staticmethod
    def validate(checkpoint: Checkpoint, spec_path: str, spec_hash: str) -> str | None:
        if checkpoint.spec_path != spec_path:
            return (
                "Checkpoint was for a different spec file.\n"
                f"  Checkpoint: {checkpoint.spec_path}\n"
                f"  Current: {spec_path}\n"
                "Delete the checkpoint to start fresh, or specify the correct spec."
            )
        if checkpoint.spec_hash != spec_hash:
            return (
                "Spec file has changed since the run started.\n"
                f"  Checkpoint hash: {checkpoint.spec_hash[:12]}...\n"
                f"  Current hash: {spec_hash[:12]}...\n"
                "The orchestrator will continue, but results may be inconsistent.\n"
                "Consider deleting the checkpoint to start fresh."
            )
        return None
