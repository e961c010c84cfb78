"""Create the per-project state directory and keep it out of version control."""

from __future__ import annotations

from pathlib import Path

from ...constants import STATE_DIR_NAME

STATE_FILES = {
    "plans": "plans.yaml",
    "sessions": "sessions.yaml",
    "progress": "progress.yaml",
    "learnings": "learnings.yaml",
    "feedback": "feedback.yaml",
    "raw_events": "raw_events.jsonl",
}

_GITIGNORE_HEADER = "# Ralph runtime data"


def _ensure_gitignored(project_dir: Path) -> None:
    """Add the state directory to the project's .gitignore if not already present."""
    gitignore = project_dir / ".gitignore"
    entry = f"{STATE_DIR_NAME}/"
    if gitignore.exists():
        content = gitignore.read_text(encoding="utf-8")
        existing = {line.strip() for line in content.splitlines()}
        if entry in existing or entry.rstrip("/") in existing:
            return
        if content and not content.endswith("\n"):
            content += "\n"
        if _GITIGNORE_HEADER not in content:
            content += f"\n{_GITIGNORE_HEADER}\n"
        gitignore.write_text(content + f"{entry}\n", encoding="utf-8")
    else:
        gitignore.write_text(f"{_GITIGNORE_HEADER}\n{entry}\n", encoding="utf-8")


def ensure_state_root(project_dir: Path) -> Path:
    """Create ``<project>/.ralph`` with empty state files and return its path."""
    state_root = project_dir / STATE_DIR_NAME
    state_root.mkdir(parents=True, exist_ok=True)
    _ensure_gitignored(project_dir)

    for file_name in STATE_FILES.values():
        target = state_root / file_name
        if target.exists():
            continue
        if file_name.endswith(".yaml"):
            target.write_text("version: 1\n", encoding="utf-8")
        else:
            target.touch()
    return state_root
