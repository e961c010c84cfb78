"""Launch the agent CLI and stream its decoded events while it runs."""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
from pathlib import Path
from typing import IO, Any, Callable, Iterator, Optional

from ..cancel import CancelToken
from ..config import AgentSettings
from ..constants import SESSION_EVENT_BUFFER_SIZE
from .events import StreamEvent
from .protocol import StreamDecodeError, parse_line

logger = logging.getLogger(__name__)

PopenFactory = Callable[..., "subprocess.Popen[bytes]"]

_END = object()
_TERMINATE_GRACE_SECONDS = 5.0
_PUT_POLL_SECONDS = 0.1


class AgentError(Exception):
    """Base class for agent subprocess failures."""


class AgentNotFoundError(AgentError):
    """Raised when the agent executable cannot be found."""

    def __init__(self, command: str) -> None:
        super().__init__(f"agent command not found: {command}")
        self.command = command


class AgentExitError(AgentError):
    """The agent process exited with a non-zero status."""

    def __init__(self, returncode: int, stderr: str = "") -> None:
        detail = stderr.strip()
        if detail:
            message = f"agent exited with code {returncode}: {detail}"
        else:
            message = f"agent exited with code {returncode}"
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class SessionCancelledError(AgentError):
    """The session was stopped before the agent finished on its own."""

    def __init__(self, *, deadline: bool = False) -> None:
        super().__init__("agent session deadline exceeded" if deadline else "agent session cancelled")
        self.deadline = deadline


class AgentSession:
    """Handle to one running agent process.

    A reader thread decodes stdout line by line into a bounded queue; a second
    thread collects stderr. :meth:`events` yields decoded events until the
    stream ends (EOF, a malformed line, or cancellation) and can only be
    consumed once. :meth:`wait` blocks until the process has exited.
    """

    def __init__(
        self,
        process: "subprocess.Popen[bytes]",
        *,
        cancel_token: Optional[CancelToken] = None,
        buffer_size: int = SESSION_EVENT_BUFFER_SIZE,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._process = process
        self._token = cancel_token
        self._log = logger or logging.getLogger(__name__)
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, buffer_size))
        self._done = threading.Event()
        self._abandoned = threading.Event()
        self._lock = threading.Lock()
        self._cancelled = False
        self._deadline = False
        self._error: Optional[BaseException] = None
        self._stderr_chunks: list[str] = []
        self._iterator: Optional[Iterator[StreamEvent]] = None

        self._stderr_thread = threading.Thread(target=self._collect_stderr, daemon=True)
        self._reader_thread = threading.Thread(target=self._read_stdout, daemon=True)
        self._stderr_thread.start()
        self._reader_thread.start()
        if self._token is not None:
            self._token.add_callback(self._on_token_cancelled)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self._process, "pid", None)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def stderr(self) -> str:
        return "".join(self._stderr_chunks)

    def events(self) -> Iterator[StreamEvent]:
        """Return the session's event iterator (the same one on every call)."""
        if self._iterator is None:
            self._iterator = self._drain()
        return self._iterator

    def __iter__(self) -> Iterator[StreamEvent]:
        return self.events()

    def wait(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        """Block until the process exits and return its error, if any.

        Returns:
            Optional[BaseException]: ``None`` on a clean exit, otherwise a
            :class:`SessionCancelledError`, :class:`StreamDecodeError` or
            :class:`AgentExitError`.
        """
        self._done.wait(timeout)
        with self._lock:
            return self._error

    def cancel(self) -> None:
        """Stop the agent process. Events already buffered are still delivered."""
        with self._lock:
            if self._cancelled or self._done.is_set():
                return
            self._cancelled = True
        self._log.info("Cancelling agent process pid=%s", self.pid)
        _terminate(self._process)

    def close(self) -> None:
        """Cancel the process and stop feeding the queue; for abandoned sessions."""
        self._abandoned.set()
        self.cancel()

    def _on_token_cancelled(self) -> None:
        self._deadline = bool(self._token is not None and self._token.deadline_exceeded)
        self.cancel()

    def _drain(self) -> Iterator[StreamEvent]:
        while True:
            item = self._queue.get()
            if item is _END:
                return
            yield item

    def _put(self, item: Any) -> bool:
        while not self._abandoned.is_set():
            try:
                self._queue.put(item, timeout=_PUT_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def _set_error(self, error: BaseException) -> None:
        with self._lock:
            if self._error is None:
                self._error = error

    def _read_stdout(self) -> None:
        stdout: Optional[IO[bytes]] = self._process.stdout
        try:
            if stdout is not None:
                for line in stdout:
                    try:
                        event = parse_line(line)
                    except StreamDecodeError as exc:
                        self._log.warning("Ending agent stream: %s", exc)
                        self._set_error(exc)
                        break
                    if event is None:
                        continue
                    if not self._put(event):
                        break
        except (OSError, ValueError) as exc:
            # Pipe closed underneath us after a kill.
            if not self._cancelled:
                self._set_error(AgentError(f"failed reading agent output: {exc}"))
        finally:
            self._finish()

    def _finish(self) -> None:
        stream_error = self._error is not None
        if stream_error and self._process.poll() is None:
            _terminate(self._process)
        returncode = self._process.wait()
        self._stderr_thread.join(timeout=_TERMINATE_GRACE_SECONDS)
        if self._token is not None:
            self._token.remove_callback(self._on_token_cancelled)
        if self._cancelled:
            self._set_error(SessionCancelledError(deadline=self._deadline))
        elif returncode:
            self._log.warning("Agent exited with code %s", returncode)
            self._set_error(AgentExitError(returncode, self.stderr))
        self._done.set()
        self._put(_END)

    def _collect_stderr(self) -> None:
        stderr = self._process.stderr
        if stderr is None:
            return
        try:
            for chunk in stderr:
                if isinstance(chunk, bytes):
                    chunk = chunk.decode("utf-8", errors="replace")
                self._stderr_chunks.append(chunk)
        except (OSError, ValueError):
            return


def _terminate(process: "subprocess.Popen[bytes]") -> None:
    if process.poll() is not None:
        return
    try:
        process.terminate()
        try:
            process.wait(timeout=_TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
    except ProcessLookupError:
        return


class AgentClient:
    """Starts agent sessions with a fixed argument contract.

    Example:
        client = AgentClient(AgentSettings(model="claude-sonnet-4-5"))
        session = client.run("Implement the plan")
        for event in session.events():
            ...
        error = session.wait()
    """

    def __init__(
        self,
        settings: Optional[AgentSettings] = None,
        *,
        cwd: Optional[Path] = None,
        popen: Optional[PopenFactory] = None,
        buffer_size: int = SESSION_EVENT_BUFFER_SIZE,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings or AgentSettings()
        self._cwd = cwd
        self._popen: PopenFactory = popen or subprocess.Popen
        self._buffer_size = buffer_size
        self._log = logger or logging.getLogger(__name__)

    @property
    def model(self) -> Optional[str]:
        return self.settings.model

    def build_args(self, prompt: str) -> list[str]:
        """Build the full command line for one prompt."""
        args = [
            self.settings.command,
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
        ]
        if self.settings.model:
            args += ["--model", self.settings.model]
        if self.settings.max_turns and self.settings.max_turns > 0:
            args += ["--max-turns", str(self.settings.max_turns)]
        args.append(prompt)
        return args

    def run(
        self,
        prompt: str,
        *,
        env: Optional[dict[str, str]] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> AgentSession:
        """Launch the agent for ``prompt``.

        Args:
            prompt (str): Prompt passed as the final positional argument.
            env (Optional[dict[str, str]]): Extra environment for this session only.
            cancel_token (Optional[CancelToken]): Token whose cancellation stops the process.

        Returns:
            AgentSession: Running session handle.

        Raises:
            AgentNotFoundError: If the agent executable does not exist.
            AgentError: If the process could not be started for another reason.
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        extra = {**self.settings.env, **(env or {})}
        process_env = {**os.environ, **extra} if extra else None
        args = self.build_args(prompt)
        self._log.debug("Starting agent: %s (prompt %d chars)", args[0], len(prompt))
        try:
            process = self._popen(
                args,
                cwd=str(self._cwd) if self._cwd else None,
                env=process_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentNotFoundError(self.settings.command) from exc
        except OSError as exc:
            raise AgentError(f"failed to start agent: {exc}") from exc
        return AgentSession(process, cancel_token=cancel_token, buffer_size=self._buffer_size, logger=self._log)
