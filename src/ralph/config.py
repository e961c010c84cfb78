"""Load and normalize runtime configuration from YAML."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import yaml

from .constants import (
    CONTEXT_LIMIT_PERCENT,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_ERROR_BACKOFF_SECONDS,
    DEFAULT_EVENT_BUFFER_SIZE,
    DEFAULT_MAX_DIFF_BYTES,
    DEFAULT_MAX_ITERATIONS,
    MIN_DIFF_BYTES,
    STATE_DIR_NAME,
)

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "RALPH_CONFIG"
CONFIG_FILE_NAME = "config.yaml"
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(Exception):
    """Raised when a configuration file exists but cannot be parsed."""


@dataclass(frozen=True)
class AgentSettings:
    """How the coding-agent subprocess is launched.

    Attributes:
        command: Executable name or path of the agent CLI.
        model: Optional model identifier passed through ``--model``.
        max_turns: Optional turn ceiling passed through ``--max-turns``.
        env: Extra environment variables for every agent process.
    """

    command: str = DEFAULT_AGENT_COMMAND
    model: Optional[str] = None
    max_turns: Optional[int] = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LoopSettings:
    """Iteration limits and thresholds for the orchestrator.

    Attributes:
        max_iterations: Iteration ceiling for a run.
        event_buffer_size: Capacity of the observer event queue.
        max_diff_bytes: Byte ceiling for the diff shown to the reviewer.
        context_limit_percent: Share of the context window that ends a turn early.
        suppress_done_after_edits: Ignore a done signal from a turn that edited files.
        error_backoff_seconds: Pause after a failed iteration.
    """

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    event_buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE
    max_diff_bytes: int = DEFAULT_MAX_DIFF_BYTES
    context_limit_percent: float = CONTEXT_LIMIT_PERCENT
    suppress_done_after_edits: bool = True
    error_backoff_seconds: float = DEFAULT_ERROR_BACKOFF_SECONDS


@dataclass(frozen=True)
class RalphConfig:
    agent: AgentSettings = field(default_factory=AgentSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    log_level: str = "INFO"
    source: Optional[Path] = None

    def with_overrides(
        self,
        *,
        model: Optional[str] = None,
        max_turns: Optional[int] = None,
        max_iterations: Optional[int] = None,
        log_level: Optional[str] = None,
    ) -> "RalphConfig":
        """Return a copy with command-line overrides applied.

        ``None`` leaves the configured value untouched.
        """
        agent = self.agent
        if model is not None or max_turns is not None:
            agent = replace(
                agent,
                model=model if model is not None else agent.model,
                max_turns=max_turns if max_turns is not None else agent.max_turns,
            )
        loop = self.loop
        if max_iterations is not None:
            loop = replace(loop, max_iterations=max_iterations)
        return replace(self, agent=agent, loop=loop, log_level=log_level or self.log_level)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _positive_int(value: Any, default: Optional[int]) -> Optional[int]:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _percent(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if 0.0 < parsed <= 100.0 else default


def _seconds(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if 0.0 <= parsed < float("inf") else default


def _parse_agent(raw: dict[str, Any]) -> AgentSettings:
    command = str(raw.get("command") or DEFAULT_AGENT_COMMAND).strip() or DEFAULT_AGENT_COMMAND
    model = str(raw.get("model") or "").strip() or None
    env = {
        str(key): str(value)
        for key, value in _as_dict(raw.get("env")).items()
        if str(key).strip() and value is not None
    }
    return AgentSettings(
        command=command,
        model=model,
        max_turns=_positive_int(raw.get("max_turns"), None),
        env=env,
    )


def _diff_ceiling(value: Any) -> int:
    parsed = _positive_int(value, DEFAULT_MAX_DIFF_BYTES) or DEFAULT_MAX_DIFF_BYTES
    if parsed < MIN_DIFF_BYTES:
        logger.warning("loop.max_diff_bytes=%s is below %s; using %s", parsed, MIN_DIFF_BYTES, DEFAULT_MAX_DIFF_BYTES)
        return DEFAULT_MAX_DIFF_BYTES
    return parsed


def _parse_loop(raw: dict[str, Any]) -> LoopSettings:
    suppress = raw.get("suppress_done_after_edits")
    return LoopSettings(
        max_iterations=_positive_int(raw.get("max_iterations"), DEFAULT_MAX_ITERATIONS) or DEFAULT_MAX_ITERATIONS,
        event_buffer_size=_positive_int(raw.get("event_buffer_size"), DEFAULT_EVENT_BUFFER_SIZE)
        or DEFAULT_EVENT_BUFFER_SIZE,
        max_diff_bytes=_diff_ceiling(raw.get("max_diff_bytes")),
        context_limit_percent=_percent(raw.get("context_limit_percent"), CONTEXT_LIMIT_PERCENT),
        suppress_done_after_edits=suppress if isinstance(suppress, bool) else True,
        error_backoff_seconds=_seconds(raw.get("error_backoff_seconds"), DEFAULT_ERROR_BACKOFF_SECONDS),
    )


def config_from_dict(data: Any, *, source: Optional[Path] = None) -> RalphConfig:
    """Build a :class:`RalphConfig` from a parsed YAML document.

    Args:
        data (Any): Parsed document. Non-mapping nodes are treated as empty.
        source (Optional[Path]): File the document came from, if any.

    Returns:
        RalphConfig: Normalized configuration with defaults for invalid values.
    """
    root = _as_dict(data)
    level = str(root.get("log_level") or "INFO").strip().upper()
    if level not in _LOG_LEVELS:
        level = "INFO"
    return RalphConfig(
        agent=_parse_agent(_as_dict(root.get("agent"))),
        loop=_parse_loop(_as_dict(root.get("loop"))),
        log_level=level,
        source=source,
    )


def candidate_paths(project_dir: Optional[Path] = None) -> list[Path]:
    """List config file locations in lookup order."""
    paths: list[Path] = []
    env_path = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if env_path:
        paths.append(Path(env_path).expanduser())
    base = (project_dir or Path.cwd()).resolve()
    paths.append(base / STATE_DIR_NAME / CONFIG_FILE_NAME)
    paths.append(Path.home() / ".config" / "ralph" / CONFIG_FILE_NAME)
    return paths


def load_config(path: Optional[Path] = None, *, project_dir: Optional[Path] = None) -> RalphConfig:
    """Load configuration from the first existing file.

    Args:
        path (Optional[Path]): Explicit config file. When given it must exist.
        project_dir (Optional[Path]): Project root used for the per-project file.

    Returns:
        RalphConfig: Parsed configuration, or defaults when no file exists.

    Raises:
        ConfigError: If the explicit file is missing or any chosen file is not valid YAML.
    """
    if path is not None:
        if not path.exists():
            raise ConfigError(f"config file not found: {path}")
        chosen: Optional[Path] = path
    else:
        chosen = next((p for p in candidate_paths(project_dir) if p.is_file()), None)
    if chosen is None:
        return RalphConfig()
    try:
        data = yaml.safe_load(chosen.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {chosen}: {exc}") from exc
    logger.debug("Loaded configuration from %s", chosen)
    return config_from_dict(data, source=chosen)
