from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import IO, Any

from spec_orchestrator.config import OrchestratorConfig
from spec_orchestrator.driver import PHASE_MARKER_PATTERN, STEP_MARKER_PATTERN
from spec_orchestrator.errors import OrchestratorError
from spec_orchestrator.parser import Spec, load_spec
from spec_orchestrator.state.checkpoint import CheckpointStore, checkpoint_path
from spec_orchestrator.state.skips import request_skip, skip_requests_path

logger = logging.getLogger(__name__)

RUN_STATUSES = ("running", "paused", "completed", "failed")
OUTPUT_TAIL_CHARS = 4000
STATUS_TAIL_CHARS = 2000
ABORT_GRACE_S = 5.0
SKIP_LOG_NAME = "skipped_steps.txt"

Launcher = Callable[[list[str], Path], subprocess.Popen]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def default_launcher(argv: list[str], cwd: Path) -> subprocess.Popen:
    return subprocess.Popen(
        argv,
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        start_new_session=os.name == "posix",
    )


def _signal(process: subprocess.Popen, *, force: bool) -> None:
    if process.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
        elif force:
            process.kill()
        else:
            process.terminate()
    except (ProcessLookupError, PermissionError):
        pass


@dataclass(slots=True)
class RunOptions:
    fail_fast: bool = False
    from_phase: int | None = None
    from_step: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RunOptions:
        data = data or {}
        return cls(
            fail_fast=bool(data.get("fail_fast", False)),
            from_phase=data.get("from_phase"),
            from_step=data.get("from_step"),
        )

    @property
    def start_step(self) -> str | None:
        if self.from_phase is None or self.from_step is None:
            return None
        return f"{self.from_phase}.{self.from_step}"

    def cli_args(self, *, resume: bool = False) -> list[str]:
        args: list[str] = []
        if self.fail_fast:
            args.append("--fail-fast")
        if not resume and self.start_step is not None:
            args.extend(["--from", self.start_step])
        return args


@dataclass(slots=True)
class RunRecord:
    run_id: str
    spec_path: str
    spec_name: str
    log_dir: Path
    checkpoint_file: Path
    skip_file: Path
    plan: list[tuple[int, list[str]]]
    options: RunOptions = field(default_factory=RunOptions)
    status: str = "running"
    current_phase: int = 0
    current_step: str = ""
    output: str = ""
    last_error: str | None = None
    started_at: str = field(default_factory=_utcnow_iso)
    process: subprocess.Popen | None = None

    @property
    def phase_count(self) -> int:
        return len(self.plan)

    @property
    def step_count(self) -> int:
        return sum(len(step_ids) for _, step_ids in self.plan)

    def append_output(self, text: str, *, scan_markers: bool) -> None:
        self.output = (self.output + text)[-OUTPUT_TAIL_CHARS:]
        if not scan_markers:
            return
        phase_match = PHASE_MARKER_PATTERN.search(text)
        if phase_match:
            self.current_phase = int(phase_match.group(1))
        step_match = STEP_MARKER_PATTERN.search(text)
        if step_match:
            self.current_step = step_match.group(1)

    def ordinal(self, phase_number: int, step_id: str) -> int:
        """Index in execution order, where each gate follows its phase's steps; -1 if unknown."""
        position = 0
        for number, step_ids in self.plan:
            for sid in step_ids:
                if number == phase_number and sid == step_id:
                    return position
                position += 1
            if number == phase_number and step_id == "gate":
                return position
            position += 1
        return -1

    def phase_of(self, step_id: str) -> int:
        return next((number for number, step_ids in self.plan if step_id in step_ids), 0)

    def step_after(self, phase_number: int, step_id: str) -> str:
        """Id of the step that follows ``step_id`` (or the gate of ``phase_number``)."""
        flat = [(number, sid) for number, step_ids in self.plan for sid in step_ids]
        if step_id == "gate":
            return next((sid for number, sid in flat if number > phase_number), "")
        for index, (_, sid) in enumerate(flat):
            if sid == step_id:
                return flat[index + 1][1] if index + 1 < len(flat) else ""
        return ""


def _tracked(record: RunRecord) -> tuple[int, str]:
    return record.current_phase, record.current_step


def _track(record: RunRecord, phase: int, step: str) -> None:
    record.current_phase = phase
    record.current_step = step


class RunRegistry:
    """Active runs keyed by run id; every read and write happens under one mutex."""

    def __init__(self) -> None:
        self._runs: dict[str, RunRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: RunRecord) -> None:
        with self._lock:
            self._runs[record.run_id] = record

    def get(self, run_id: str) -> RunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def run_ids(self) -> list[str]:
        with self._lock:
            return list(self._runs)

    def update(self, run_id: str, mutate: Callable[[RunRecord], Any]) -> Any:
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                return None
            return mutate(record)


class ControlService:
    """Handlers behind the control server tools; each returns a JSON-shaped dict."""

    def __init__(
        self,
        registry: RunRegistry,
        config: OrchestratorConfig,
        repo_root: Path,
        *,
        launcher: Launcher | None = None,
        checkpoints: CheckpointStore | None = None,
        abort_grace_s: float = ABORT_GRACE_S,
    ) -> None:
        self.registry = registry
        self.config = config
        self.repo_root = repo_root.resolve()
        self.launcher = launcher or default_launcher
        self.checkpoints = checkpoints or CheckpointStore()
        self.abort_grace_s = abort_grace_s

    def command(self, spec_path: str, options: RunOptions, *, resume: bool = False) -> list[str]:
        return [
            sys.executable,
            "-m",
            "spec_orchestrator",
            "run",
            spec_path,
            "--quiet",
            *options.cli_args(resume=resume),
        ]

    @staticmethod
    def _attach(record: RunRecord, process: subprocess.Popen) -> None:
        record.process = process

    @staticmethod
    def _append(
        record: RunRecord, process: subprocess.Popen, text: str, scan_markers: bool
    ) -> None:
        if record.process is process:
            record.append_output(text, scan_markers=scan_markers)

    def _spawn(self, run_id: str, argv: list[str]) -> subprocess.Popen:
        process = self.launcher(argv, self.repo_root)
        self.registry.update(run_id, partial(self._attach, process=process))
        readers = [
            threading.Thread(
                target=self._read_stream,
                args=(run_id, process, stream, is_stdout),
                daemon=True,
            )
            for stream, is_stdout in ((process.stdout, True), (process.stderr, False))
            if stream is not None
        ]
        for reader in readers:
            reader.start()
        threading.Thread(
            target=self._watch,
            args=(run_id, process, readers),
            daemon=True,
        ).start()
        logger.info("Run %s started PID %s", run_id, process.pid)
        return process

    def _read_stream(
        self, run_id: str, process: subprocess.Popen, stream: IO[str], is_stdout: bool
    ) -> None:
        for line in iter(stream.readline, ""):
            self.registry.update(
                run_id,
                partial(self._append, process=process, text=line, scan_markers=is_stdout),
            )
        stream.close()

    def _watch(
        self, run_id: str, process: subprocess.Popen, readers: list[threading.Thread]
    ) -> None:
        code = process.wait()
        for reader in readers:
            reader.join()

        def finish(record: RunRecord) -> None:
            if record.process is not process:
                return
            record.process = None
            if record.status != "running":
                return
            if code == 0:
                record.status = "completed"
            else:
                record.status = "failed"
                record.last_error = f"Process exited with code {code}"

        self.registry.update(run_id, finish)
        logger.info("Run %s exited with code %s", run_id, code)

    @staticmethod
    def _plan(spec: Spec) -> list[tuple[int, list[str]]]:
        return [(phase.number, [step.id for step in phase.steps]) for phase in spec.phases]

    def run(self, spec_path: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
        run_options = RunOptions.from_dict(options)
        try:
            spec = load_spec(spec_path)
            start_step = run_options.start_step
            if start_step is not None and spec.find_step(start_step) is None:
                raise OrchestratorError(f"Step {start_step} not found in {spec_path}")
        except OrchestratorError as exc:
            return {"run_id": "", "status": "error", "message": str(exc)}

        plan = self._plan(spec)
        first_phase = plan[0][0] if plan else 0
        first_step = next((ids[0] for _, ids in plan if ids), "")
        base_dir = self.config.base_dir(self.repo_root)
        record = RunRecord(
            run_id=str(uuid.uuid4()),
            spec_path=str(spec_path),
            spec_name=spec.name,
            log_dir=self.config.log_dir(self.repo_root, spec.name),
            checkpoint_file=checkpoint_path(base_dir, spec.name),
            skip_file=skip_requests_path(base_dir, spec.name),
            plan=plan,
            options=run_options,
            current_phase=run_options.from_phase or first_phase,
            current_step=run_options.start_step or first_step,
        )
        self.registry.add(record)
        try:
            self._spawn(record.run_id, self.command(record.spec_path, run_options))
        except OSError as exc:
            self.registry.update(
                record.run_id, partial(self._fail, reason=f"Failed to start: {exc}")
            )
            return {"run_id": record.run_id, "status": "error", "message": str(exc)}
        return {
            "run_id": record.run_id,
            "status": "started",
            "message": (
                f"Started orchestration for {spec.name} "
                f"({record.phase_count} phases, {record.step_count} steps)"
            ),
        }

    @staticmethod
    def _fail(record: RunRecord, reason: str) -> None:
        record.status = "failed"
        record.last_error = reason

    def _checkpoint_position(self, record: RunRecord) -> tuple[int, str] | None:
        """Phase number and step id the checkpoint points at; ``"gate"`` after the last step."""
        try:
            checkpoint = self.checkpoints.load(record.checkpoint_file)
        except OrchestratorError:
            return None
        if checkpoint is None or checkpoint.phase >= len(record.plan):
            return None
        number, step_ids = record.plan[checkpoint.phase]
        if checkpoint.step < len(step_ids):
            return number, step_ids[checkpoint.step]
        return number, "gate"

    def _position(self, record: RunRecord, tracked: tuple[int, str]) -> tuple[int, str]:
        """Checkpoint position, unless the tracked step is already past it."""
        checkpoint = self._checkpoint_position(record)
        if checkpoint is None or record.ordinal(*tracked) > record.ordinal(*checkpoint):
            return tracked
        return checkpoint

    @staticmethod
    def _log_files(log_dir: Path) -> list[str]:
        if not log_dir.is_dir():
            return []
        return sorted(str(path) for path in log_dir.rglob("*") if path.is_file())

    @staticmethod
    def _snapshot(record: RunRecord) -> dict[str, Any]:
        return {
            "run_id": record.run_id,
            "status": record.status,
            "current_phase": record.current_phase,
            "current_step": record.current_step,
            "phase_count": record.phase_count,
            "step_count": record.step_count,
            "last_output": record.output[-STATUS_TAIL_CHARS:],
            "last_error": record.last_error,
        }

    def status(self, run_id: str) -> dict[str, Any]:
        record = self.registry.get(run_id)
        if record is None:
            return {
                "run_id": run_id,
                "status": "not_found",
                "current_phase": 0,
                "current_step": "",
                "phase_count": 0,
                "step_count": 0,
                "last_output": "",
                "last_error": f"Run {run_id} not found",
                "logs": [],
            }

        result = self.registry.update(run_id, self._snapshot)
        result["current_phase"], result["current_step"] = self._position(
            record, (result["current_phase"], result["current_step"])
        )
        result["logs"] = self._log_files(record.log_dir)
        return result

    @staticmethod
    def _claim_retry(record: RunRecord) -> str | None:
        if record.status not in ("failed", "paused"):
            return f"Run is {record.status}, cannot retry"
        record.status = "running"
        record.last_error = None
        return None

    def retry(self, run_id: str, additional_context: str | None = None) -> dict[str, Any]:
        record = self.registry.get(run_id)
        if record is None:
            return {"status": "error", "message": f"Run {run_id} not found"}

        problem = self.registry.update(run_id, self._claim_retry)
        if problem:
            return {"status": "error", "message": problem}

        if additional_context:
            logger.info("Retry context for %s: %s", run_id, additional_context)
        try:
            self._spawn(run_id, self.command(record.spec_path, record.options, resume=True))
        except OSError as exc:
            self.registry.update(run_id, partial(self._fail, reason=f"Failed to start: {exc}"))
            return {"status": "error", "message": str(exc)}
        suffix = " with additional context" if additional_context else ""
        return {"status": "retrying", "message": f"Retrying from checkpoint{suffix}"}

    def _advance_checkpoint(self, record: RunRecord) -> str | None:
        try:
            checkpoint = self.checkpoints.load(record.checkpoint_file)
        except OrchestratorError as exc:
            return str(exc)
        if checkpoint is None:
            return "No checkpoint found"
        if checkpoint.phase >= len(record.plan):
            return "Run has no remaining steps"
        _, step_ids = record.plan[checkpoint.phase]
        if checkpoint.step < len(step_ids):
            advanced = checkpoint.advance(checkpoint.phase, checkpoint.step + 1)
        else:
            advanced = checkpoint.advance(checkpoint.phase + 1, 0)
        self.checkpoints.save(record.checkpoint_file, advanced)
        return None

    def skip(self, run_id: str, reason: str) -> dict[str, Any]:
        """Record a skip and move past the current step without executing it.

        A live run owns its checkpoint, so the skip is left as a request that the run
        honours when it reaches the step. Otherwise the on-disk checkpoint advances and
        the next ``retry`` resumes after the skipped step.
        """
        record = self.registry.get(run_id)
        if record is None:
            return {"status": "error", "message": f"Run {run_id} not found", "next_step": ""}

        running = self.registry.update(run_id, lambda current: current.status == "running")
        if running:
            tracked = self.registry.update(run_id, _tracked)
            phase_number, skipped = self._position(record, tracked)
            if skipped in ("", "gate"):
                return {
                    "status": "error",
                    "message": f"Phase {phase_number} gate cannot be skipped while running",
                    "next_step": "",
                }
            request_skip(record.skip_file, skipped)
        else:
            position = self._checkpoint_position(record)
            problem = self._advance_checkpoint(record)
            if problem or position is None:
                return {
                    "status": "error",
                    "message": problem or "No checkpoint found",
                    "next_step": "",
                }
            phase_number, skipped = position

        record.log_dir.mkdir(parents=True, exist_ok=True)
        with (record.log_dir / SKIP_LOG_NAME).open("a", encoding="utf-8") as handle:
            handle.write(f"{_utcnow_iso()} - Skipped step {skipped}: {reason}\n")

        next_step = record.step_after(phase_number, skipped)
        next_phase = record.phase_of(next_step) if next_step else phase_number
        self.registry.update(run_id, partial(_track, phase=next_phase, step=next_step))
        return {
            "status": "skipped",
            "message": f"Skipped step {skipped}: {reason}",
            "next_step": next_step,
        }

    @classmethod
    def _claim_abort(
        cls, record: RunRecord, reason: str
    ) -> tuple[str | None, subprocess.Popen | None]:
        if record.status == "completed":
            return "Run is completed, cannot abort", None
        cls._fail(record, f"Aborted: {reason}")
        return None, record.process

    def abort(self, run_id: str, reason: str) -> dict[str, Any]:
        record = self.registry.get(run_id)
        if record is None:
            return {"status": "error", "checkpoint": "", "message": f"Run {run_id} not found"}

        problem, process = self.registry.update(
            run_id, partial(self._claim_abort, reason=reason)
        )
        if problem:
            return {"status": "error", "checkpoint": "", "message": problem}
        if process is not None:
            _signal(process, force=False)
            try:
                process.wait(timeout=self.abort_grace_s)
            except subprocess.TimeoutExpired:
                _signal(process, force=True)
                process.wait()
        logger.info("Run %s aborted: %s", run_id, reason)
        return {"status": "aborted", "checkpoint": str(record.checkpoint_file)}
