"""Spec document grammar.

The executable plan lives under a ``## <N>. Prompting Strategy`` (or
``Prompt Execution Strategy``) heading and is scanned line by line:

    phase_header   := "### Phase " INT ": " TEXT
    step_header    := "#### Step " INT "." INT ": " TEXT
    gate_header    := "#### Gate"
    verify_header  := "##### Verify"
    timeout_header := "##### Timeout"
    command_item   := "- `" TEXT "`"
    timeout_value  := INT

Everything before the plan heading, and everything after the next ``## <N>.``
heading, is ignored.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from spec_orchestrator.errors import ParseError

PLAN_SECTION_PATTERN = re.compile(
    r"^## \d+\. (?:Prompting Strategy|Prompt Execution Strategy)\s*$"
)
SECTION_PATTERN = re.compile(r"^## \d+\.")
PHASE_HEADER_PATTERN = re.compile(r"^### Phase (\d+): (.+?)\s*$")
STEP_HEADER_PATTERN = re.compile(r"^#### Step (\d+)\.(\d+): (.+?)\s*$")
GATE_HEADER_PATTERN = re.compile(r"^#### Gate\s*$")
PHASE_SUBSECTION_PATTERN = re.compile(r"^#### ")
VERIFY_HEADER_PATTERN = re.compile(r"^##### Verify\s*$")
TIMEOUT_HEADER_PATTERN = re.compile(r"^##### Timeout\s*$")
STEP_SUBSECTION_PATTERN = re.compile(r"^##### ")
COMMAND_ITEM_PATTERN = re.compile(r"^- `([^`]+)`")
TIMEOUT_VALUE_PATTERN = re.compile(r"^\s*(\d+)\s*$")


@dataclass(slots=True, frozen=True)
class VerifyCmd:
    cmd: str
    args: list[str] = field(default_factory=list)

    def render(self) -> str:
        return " ".join([self.cmd, *self.args])


@dataclass(slots=True, frozen=True)
class Step:
    id: str
    title: str
    prompt: str
    verify: list[VerifyCmd] = field(default_factory=list)
    timeout_ms: int | None = None


@dataclass(slots=True, frozen=True)
class Phase:
    number: int
    name: str
    steps: list[Step] = field(default_factory=list)
    gate: list[VerifyCmd] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class Spec:
    path: Path
    hash: str
    phases: list[Phase] = field(default_factory=list)

    @property
    def name(self) -> str:
        return spec_name(self.path)

    @property
    def step_count(self) -> int:
        return sum(len(phase.steps) for phase in self.phases)

    def find_step(self, step_id: str) -> tuple[int, int] | None:
        for phase_index, phase in enumerate(self.phases):
            for step_index, step in enumerate(phase.steps):
                if step.id == step_id:
                    return phase_index, step_index
        return None


@dataclass(slots=True)
class IsolationReport:
    found_commands: list[str] = field(default_factory=list)
    affected: list[str] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.found_commands)

    def record(self, command: str, location: str) -> None:
        if command not in self.found_commands:
            self.found_commands.append(command)
        if location not in self.affected:
            self.affected.append(location)


@dataclass(slots=True)
class _StepBuilder:
    id: str
    number: int
    title: str
    line: int
    prompt_lines: list[str] = field(default_factory=list)
    verify: list[VerifyCmd] = field(default_factory=list)
    timeout_ms: int | None = None
    timeout_line: int | None = None

    def build(self) -> Step:
        if self.timeout_line is not None and self.timeout_ms is None:
            raise ParseError(
                f"Timeout for step {self.id} has no integer value", line=self.timeout_line
            )
        return Step(
            id=self.id,
            title=self.title,
            prompt="\n".join(self.prompt_lines).strip(),
            verify=list(self.verify),
            timeout_ms=self.timeout_ms,
        )


@dataclass(slots=True)
class _PhaseBuilder:
    number: int
    name: str
    steps: list[Step] = field(default_factory=list)
    gate: list[VerifyCmd] = field(default_factory=list)
    gate_line: int | None = None
    last_step_number: int = 0

    def build(self) -> Phase:
        return Phase(
            number=self.number, name=self.name, steps=list(self.steps), gate=list(self.gate)
        )


class _PlanScanner:
    def __init__(self) -> None:
        self.phases: list[Phase] = []
        self._phase: _PhaseBuilder | None = None
        self._step: _StepBuilder | None = None
        self._mode = "preamble"
        self._seen_step_ids: set[str] = set()

    def scan(self, lines: Iterable[tuple[int, str]]) -> list[Phase]:
        for line_no, line in lines:
            self._feed(line_no, line)
        self._close_phase()
        return self.phases

    def _feed(self, line_no: int, line: str) -> None:
        phase_match = PHASE_HEADER_PATTERN.match(line)
        if phase_match:
            self._phase_header(line_no, int(phase_match.group(1)), phase_match.group(2))
            return
        step_match = STEP_HEADER_PATTERN.match(line)
        if step_match:
            self._step_header(
                line_no,
                int(step_match.group(1)),
                int(step_match.group(2)),
                step_match.group(3),
            )
            return
        if GATE_HEADER_PATTERN.match(line):
            self._gate_header(line_no)
            return
        if self._step is not None:
            self._step_line(line_no, line)
            return
        if self._mode == "gate":
            self._gate_line(line_no, line)

    def _phase_header(self, line_no: int, number: int, name: str) -> None:
        self._close_phase()
        if self.phases and number <= self.phases[-1].number:
            raise ParseError(
                f"Phase {number} must be greater than phase {self.phases[-1].number}",
                line=line_no,
            )
        self._phase = _PhaseBuilder(number=number, name=name.strip())
        self._mode = "phase"

    def _step_header(self, line_no: int, phase_number: int, number: int, title: str) -> None:
        step_id = f"{phase_number}.{number}"
        phase = self._phase
        if phase is None:
            raise ParseError(f"Step {step_id} appears outside of a phase", line=line_no)
        if phase.gate_line is not None:
            raise ParseError(
                f"Step {step_id} appears after the gate of phase {phase.number}", line=line_no
            )
        if phase_number != phase.number:
            raise ParseError(
                f"Step {step_id} does not belong to phase {phase.number}", line=line_no
            )
        if step_id in self._seen_step_ids:
            raise ParseError(f"Duplicate step id {step_id}", line=line_no)
        if number <= phase.last_step_number:
            raise ParseError(
                f"Step {step_id} must come after step {phase.number}.{phase.last_step_number}",
                line=line_no,
            )
        self._close_step()
        self._seen_step_ids.add(step_id)
        phase.last_step_number = number
        self._step = _StepBuilder(id=step_id, number=number, title=title.strip(), line=line_no)
        self._mode = "prompt"

    def _gate_header(self, line_no: int) -> None:
        if self._phase is None:
            raise ParseError("Gate appears outside of a phase", line=line_no)
        self._close_step()
        self._phase.gate_line = line_no
        self._mode = "gate"

    def _step_line(self, line_no: int, line: str) -> None:
        step = self._step
        assert step is not None
        if VERIFY_HEADER_PATTERN.match(line):
            self._mode = "verify"
            return
        if TIMEOUT_HEADER_PATTERN.match(line):
            step.timeout_line = line_no
            self._mode = "timeout"
            return
        if self._mode == "prompt":
            step.prompt_lines.append(line)
            return
        if STEP_SUBSECTION_PATTERN.match(line):
            self._mode = "step_ignored"
            return
        if self._mode == "verify":
            command = _parse_command_item(line_no, line)
            if command is not None:
                step.verify.append(command)
            return
        if self._mode == "timeout" and line.strip():
            value = TIMEOUT_VALUE_PATTERN.match(line)
            if value is None:
                raise ParseError(
                    f"Timeout for step {step.id} must be a bare integer, got {line.strip()!r}",
                    line=line_no,
                )
            step.timeout_ms = int(value.group(1))
            self._mode = "step_ignored"

    def _gate_line(self, line_no: int, line: str) -> None:
        assert self._phase is not None
        if PHASE_SUBSECTION_PATTERN.match(line):
            self._mode = "phase"
            return
        command = _parse_command_item(line_no, line)
        if command is not None:
            self._phase.gate.append(command)

    def _close_step(self) -> None:
        if self._step is None:
            return
        assert self._phase is not None
        self._phase.steps.append(self._step.build())
        self._step = None

    def _close_phase(self) -> None:
        self._close_step()
        if self._phase is None:
            return
        self.phases.append(self._phase.build())
        self._phase = None


def _parse_command_item(line_no: int, line: str) -> VerifyCmd | None:
    match = COMMAND_ITEM_PATTERN.match(line)
    if match is None:
        return None
    parts = match.group(1).split()
    if not parts:
        raise ParseError("Command list item is empty", line=line_no)
    return VerifyCmd(cmd=parts[0], args=parts[1:])


def _plan_lines(content: str) -> list[tuple[int, str]]:
    lines = content.splitlines()
    start: int | None = None
    for index, line in enumerate(lines):
        if PLAN_SECTION_PATTERN.match(line):
            start = index
            break
    if start is None:
        raise ParseError(
            'Spec is missing the execution plan section. Expected a "## N. Prompting '
            'Strategy" or "## N. Prompt Execution Strategy" heading.'
        )
    end = len(lines)
    for index in range(start + 1, len(lines)):
        if SECTION_PATTERN.match(lines[index]):
            end = index
            break
    return [(index + 1, lines[index]) for index in range(start + 1, end)]


def compute_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def spec_name(path: Path | str) -> str:
    name = Path(path).name
    return name[: -len(".md")] if name.endswith(".md") else name


def parse_spec(content: str, path: Path | str) -> Spec:
    phases = _PlanScanner().scan(_plan_lines(content))
    return Spec(path=Path(path), hash=compute_hash(content), phases=phases)


def load_spec(path: Path | str) -> Spec:
    spec_path = Path(path)
    if not spec_path.is_file():
        raise ParseError(f"Spec file not found: {spec_path}")
    content = spec_path.read_text(encoding="utf-8")
    try:
        return parse_spec(content, spec_path)
    except ParseError as exc:
        error = ParseError(f"{spec_path}: {exc}")
        error.line = exc.line
        raise error from exc


def _matches_conflict(command: VerifyCmd, tokens: set[str], launchers: set[str]) -> bool:
    if command.cmd in tokens:
        return True
    return command.cmd in launchers and bool(command.args) and command.args[0] in tokens


def scan_isolation_conflicts(
    spec: Spec,
    conflicting_commands: Iterable[str],
    launchers: Iterable[str] = (),
) -> IsolationReport:
    """Find commands that manage shared local infrastructure and cannot run in a worktree."""
    phrases = [phrase.strip().lower() for phrase in conflicting_commands if phrase.strip()]
    tokens = {phrase.split()[0] for phrase in phrases}
    launcher_set = set(launchers)
    report = IsolationReport()

    for phase in spec.phases:
        for command in phase.gate:
            if _matches_conflict(command, tokens, launcher_set):
                report.record(command.render(), f"Phase {phase.number} Gate")
        for step in phase.steps:
            for command in step.verify:
                if _matches_conflict(command, tokens, launcher_set):
                    report.record(command.render(), f"Step {step.id}")
            prompt = step.prompt.lower()
            for phrase in phrases:
                if phrase in prompt:
                    report.record(phrase, f"Step {step.id}")
    return report


def format_plan(spec: Spec, step_timeout_ms: int) -> str:
    lines = ["Plan:"]
    verify_total = 0
    for phase in spec.phases:
        lines.append(f"  Phase {phase.number}: {phase.name}")
        for step in phase.steps:
            timeout_text = f"timeout: {step_timeout_ms // 1000}s"
            if step.timeout_ms is not None and step.timeout_ms != step_timeout_ms:
                # Per-step timeouts are shown but the global timeout is enforced.
                timeout_text += f", requested {step.timeout_ms // 1000}s"
            verify_text = f"verify: {len(step.verify)} cmd(s)" if step.verify else "no verify"
            lines.append(f"    - {step.id}: {step.title} ({timeout_text}, {verify_text})")
            verify_total += len(step.verify)
        if phase.gate:
            lines.append(f"    [GATE: {', '.join(command.cmd for command in phase.gate)}]")
            verify_total += len(phase.gate)
    lines.append("")
    lines.append(
        f"Total: {len(spec.phases)} phases, {spec.step_count} steps, "
        f"{verify_total} verification commands"
    )
    return "\n".join(lines)
