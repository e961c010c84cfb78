"""Dependency container for file-backed repositories."""

from __future__ import annotations

from pathlib import Path

from .bootstrap import STATE_FILES, ensure_state_root
from .file_repos import (
    FileFeedbackRepository,
    FileNoteRepository,
    FilePlanRepository,
    FileRawEventRepository,
    FileSessionRepository,
)


class Container:
    """Wire the repositories that hold one project's plan and turn state."""
    def __init__(self, project_dir: Path) -> None:
        """Initialize the Container.

        Args:
            project_dir (Path): Project root; state lives under its ``.ralph`` directory.
        """
        self.project_dir = project_dir.resolve()
        self.state_root = ensure_state_root(self.project_dir)

        self.plans = FilePlanRepository(self._file("plans"), self._lock("plans"))
        self.sessions = FileSessionRepository(self._file("sessions"), self._lock("sessions"))
        self.progress = FileNoteRepository(self._file("progress"), self._lock("progress"), key="progress")
        self.learnings = FileNoteRepository(self._file("learnings"), self._lock("learnings"), key="learnings")
        self.feedback = FileFeedbackRepository(self._file("feedback"), self._lock("feedback"))
        self.raw_events = FileRawEventRepository(self._file("raw_events"), self._lock("raw_events"))

    def _file(self, name: str) -> Path:
        return self.state_root / STATE_FILES[name]

    def _lock(self, name: str) -> Path:
        return self.state_root / f"{name}.lock"

    @property
    def project_id(self) -> str:
        """Stable project identifier derived from the directory name."""
        return self.project_dir.name
