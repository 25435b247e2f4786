from __future__ import annotations

from pathlib import Path


def skip_requests_path(base_dir: Path, spec_name: str) -> Path:
    return base_dir / f"{spec_name}.skip"


def request_skip(path: Path, step_id: str) -> None:
    """Ask the run that owns ``path`` to pass over ``step_id`` when it reaches it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(f"{step_id}\n")


def pending_skips(path: Path) -> set[str]:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return set()
    return {line.strip() for line in content.splitlines() if line.strip()}


def clear_skips(path: Path) -> None:
    path.unlink(missing_ok=True)
