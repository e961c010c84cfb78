"""Thin wrapper around the Jujutsu (``jj``) command line."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_NOT_A_REPO_HINTS = ("there is no jj repo", "not a jj repository", "no such repo")


class VcsError(Exception):
    """A jj command failed."""

    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class VcsNotFoundError(VcsError):
    """The ``jj`` executable is not installed or not on PATH."""


class NotARepositoryError(VcsError):
    """The working directory is not inside a jj repository."""


class JJClient:
    """Run jj subcommands in one working directory.

    Every method raises :class:`VcsError` (or a subclass) on failure; callers
    that can degrade gracefully catch it.
    """

    def __init__(
        self,
        work_dir: Path,
        *,
        binary: str = "jj",
        timeout: Optional[float] = 120.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.work_dir = Path(work_dir)
        self._binary = binary
        self._timeout = timeout
        self._log = logger or logging.getLogger(__name__)

    def _run(self, *args: str) -> str:
        command = [self._binary, *args]
        self._log.debug("Running %s in %s", " ".join(command), self.work_dir)
        try:
            result = subprocess.run(
                command,
                cwd=self.work_dir,
                check=True,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise VcsNotFoundError(f"{self._binary} command not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise VcsError(f"jj {args[0]} timed out after {self._timeout}s") from exc
        except subprocess.CalledProcessError as exc:
            stderr = str(exc.stderr or "")
            lowered = stderr.lower()
            if any(hint in lowered for hint in _NOT_A_REPO_HINTS):
                raise NotARepositoryError(f"not a jj repository: {self.work_dir}", stderr=stderr) from exc
            raise VcsError(f"jj {args[0]} failed: {stderr.strip()}", stderr=stderr) from exc
        return result.stdout

    def current_change_id(self) -> str:
        """Return the change id of the working-copy change (``@``)."""
        change_id = self._run("log", "-r", "@", "-T", "change_id", "--no-graph").strip()
        if not change_id:
            raise VcsError("unable to determine current change id")
        return change_id

    def parent_revision_of(self, revision: str) -> str:
        """Return the change id of the first parent of ``revision``."""
        output = self._run("log", "-r", f"{revision}-", "-T", 'change_id ++ "\\n"', "--no-graph")
        for line in output.splitlines():
            if line.strip():
                return line.strip()
        raise VcsError(f"revision {revision} has no parent")

    def diff(self, from_rev: Optional[str] = None, to_rev: Optional[str] = None) -> str:
        """Diff between two revisions, or of the current change when both are omitted."""
        args = ["diff"]
        if from_rev:
            args += ["--from", from_rev]
        if to_rev:
            args += ["--to", to_rev]
        return self._run(*args)

    def show_current_change(self) -> str:
        return self._run("show")

    def new_change(self, description: str = "") -> str:
        """Start a new change on top of ``@`` and return its change id."""
        args = ["new"]
        if description:
            args += ["-m", description]
        self._run(*args)
        return self.current_change_id()

    def commit(self, description: str) -> None:
        """Finalize ``@`` under ``description`` and start an empty change on top."""
        self._run("commit", "-m", description)
