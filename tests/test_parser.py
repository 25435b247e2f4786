from pathlib import Path

import pytest

from spec_orchestrator.errors import ParseError
from spec_orchestrator.parser import (
    VerifyCmd,
    compute_hash,
    format_plan,
    load_spec,
    parse_spec,
    scan_isolation_conflicts,
    spec_name,
)

SPEC_TEXT = """# Add billing

## 1. Background

### Phase 9: Not part of the plan

## 4. Prompting Strategy

Intro text is ignored.

### Phase 1: Schema

#### Step 1.1: Create tables

Create the invoices table.
Keep it small.

##### Verify
- `pnpm test --filter db`
- `pnpm lint`

##### Timeout
300000

#### Step 1.2: Seed data

Seed the invoices.

#### Gate
- `pnpm build`

### Phase 2: API

#### Step 2.1: Endpoints

Add the endpoints.

##### Verify
- `pytest -q`

## 5. Rollout

### Phase 3: Ignored too
"""


def test_parse_spec_extracts_phases_steps_and_gates() -> None:
    spec = parse_spec(SPEC_TEXT, "docs/billing.md")

    assert [phase.number for phase in spec.phases] == [1, 2]
    assert spec.phases[0].name == "Schema"
    assert [step.id for step in spec.phases[0].steps] == ["1.1", "1.2"]
    first = spec.phases[0].steps[0]
    assert first.title == "Create tables"
    assert first.prompt == "Create the invoices table.\nKeep it small."
    assert first.verify == [
        VerifyCmd("pnpm", ["test", "--filter", "db"]),
        VerifyCmd("pnpm", ["lint"]),
    ]
    assert first.timeout_ms == 300000
    assert spec.phases[0].steps[1].verify == []
    assert spec.phases[0].steps[1].timeout_ms is None
    assert spec.phases[0].gate == [VerifyCmd("pnpm", ["build"])]
    assert spec.phases[1].gate == []
    assert spec.step_count == 3
    assert spec.name == "billing"
    assert spec.hash == compute_hash(SPEC_TEXT)
    assert spec.find_step("2.1") == (1, 0)
    assert spec.find_step("3.1") is None


def test_missing_plan_section_is_rejected() -> None:
    with pytest.raises(ParseError, match="execution plan section"):
        parse_spec("# Title\n\n### Phase 1: Orphan\n", "x.md")


def test_prompt_execution_strategy_heading_is_accepted() -> None:
    content = "## 2. Prompt Execution Strategy\n### Phase 1: Only\n#### Step 1.1: Do\nWork.\n"

    spec = parse_spec(content, "only.md")

    assert spec.phases[0].steps[0].prompt == "Work."


def test_plan_without_phases_parses_to_empty_plan() -> None:
    spec = parse_spec("## 3. Prompting Strategy\n\nNothing yet.\n", "empty.md")

    assert spec.phases == []
    assert spec.step_count == 0


@pytest.mark.parametrize(
    ("plan", "message", "line"),
    [
        (
            "### Phase 2: B\n### Phase 1: A\n",
            "must be greater than phase 2",
            3,
        ),
        ("#### Step 1.1: Loose\n", "outside of a phase", 2),
        ("### Phase 1: A\n#### Step 2.1: Wrong\n", "does not belong to phase 1", 3),
        (
            "### Phase 1: A\n#### Step 1.2: B\n#### Step 1.1: C\n",
            "must come after step 1.2",
            4,
        ),
        ("### Phase 1: A\n#### Step 1.1: B\n#### Step 1.1: C\n", "Duplicate step id 1.1", 4),
        ("### Phase 1: A\n#### Gate\n#### Step 1.1: Late\n", "after the gate", 4),
        (
            "### Phase 1: A\n#### Step 1.1: B\n##### Timeout\nsoon\n",
            "must be a bare integer",
            5,
        ),
        ("### Phase 1: A\n#### Step 1.1: B\n##### Timeout\n\n", "has no integer value", 4),
    ],
)
def test_grammar_errors_report_the_offending_line(plan: str, message: str, line: int) -> None:
    with pytest.raises(ParseError, match=message) as excinfo:
        parse_spec("## 1. Prompting Strategy\n" + plan, "bad.md")

    assert excinfo.value.line == line
    assert str(excinfo.value).startswith(f"line {line}: ")


def test_unknown_step_subsection_ends_the_verify_list() -> None:
    content = (
        "## 1. Prompting Strategy\n"
        "### Phase 1: A\n"
        "#### Step 1.1: B\n"
        "Prompt.\n"
        "##### Verify\n"
        "- `make test`\n"
        "##### Notes\n"
        "- `not a command`\n"
    )

    step = parse_spec(content, "notes.md").phases[0].steps[0]

    assert step.verify == [VerifyCmd("make", ["test"])]


def test_load_spec_reads_file_and_prefixes_errors(tmp_path: Path) -> None:
    good = tmp_path / "feature.md"
    good.write_text(SPEC_TEXT, encoding="utf-8")
    assert load_spec(good).step_count == 3

    with pytest.raises(ParseError, match="Spec file not found"):
        load_spec(tmp_path / "missing.md")

    bad = tmp_path / "bad.md"
    bad.write_text("## 1. Prompting Strategy\n#### Step 1.1: Loose\n", encoding="utf-8")
    with pytest.raises(ParseError) as excinfo:
        load_spec(bad)
    assert str(excinfo.value).startswith(str(bad))
    assert excinfo.value.line == 2


def test_spec_name_strips_markdown_suffix() -> None:
    assert spec_name("docs/specs/billing.md") == "billing"
    assert spec_name(Path("notes.txt")) == "notes.txt"


def test_isolation_scan_matches_commands_launchers_and_prompts() -> None:
    content = (
        "## 1. Prompting Strategy\n"
        "### Phase 1: Database\n"
        "#### Step 1.1: Migrate\n"
        "Run supabase db reset before changing the schema.\n"
        "##### Verify\n"
        "- `pnpm supabase migration list`\n"
        "#### Step 1.2: Types\n"
        "Regenerate types.\n"
        "##### Verify\n"
        "- `pnpm typecheck`\n"
        "#### Gate\n"
        "- `supabase test db`\n"
    )
    spec = parse_spec(content, "db.md")

    report = scan_isolation_conflicts(spec, ["supabase", "supabase db reset"], ["pnpm"])

    assert report.has_conflicts
    assert "supabase test db" in report.found_commands
    assert "pnpm supabase migration list" in report.found_commands
    assert "supabase db reset" in report.found_commands
    assert report.affected == ["Phase 1 Gate", "Step 1.1"]


def test_isolation_scan_ignores_unrelated_commands() -> None:
    spec = parse_spec(SPEC_TEXT, "billing.md")

    report = scan_isolation_conflicts(spec, ["supabase"], ["pnpm", "npx"])

    assert not report.has_conflicts
    assert report.affected == []


def test_format_plan_lists_steps_gates_and_totals() -> None:
    rendered = format_plan(parse_spec(SPEC_TEXT, "billing.md"), 60000)

    assert rendered.splitlines()[0] == "Plan:"
    assert "  Phase 1: Schema" in rendered
    assert "    - 1.1: Create tables (timeout: 60s, requested 300s, verify: 2 cmd(s))" in rendered
    assert "    - 1.2: Seed data (timeout: 60s, no verify)" in rendered
    assert "    [GATE: pnpm]" in rendered
    assert rendered.endswith("Total: 2 phases, 3 steps, 4 verification commands")
