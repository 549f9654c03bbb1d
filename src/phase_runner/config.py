"""Load optional runner configuration from `.phase_runner/config.yaml`."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from .constants import (
    CONFIG_FILE,
    CONFIG_FILE_JSON,
    DEFAULT_OPENCODE_URL,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_SESSION_TIMEOUT_SECONDS,
    MERGE_METHODS,
    PHASE_APPROVAL_MODES,
    STATE_DIR_NAME,
)


@dataclass(frozen=True)
class SessionSettings:
    base_url: str = DEFAULT_OPENCODE_URL
    directory: Optional[str] = None
    timeout_seconds: float = DEFAULT_SESSION_TIMEOUT_SECONDS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS


@dataclass(frozen=True)
class MergeSettings:
    auto_merge: bool = False
    base_branch: str = "main"
    method: str = "squash"
    delete_branch: bool = True
    draft: bool = False


@dataclass(frozen=True)
class OrchestratorSettings:
    phase_approval: str = "automatic"
    default_pipeline: str = "standard"


@dataclass(frozen=True)
class DevelopmentSettings:
    max_fix_iterations: int = 3


def _config_paths(project_dir: Path) -> list[Path]:
    state_dir = project_dir / STATE_DIR_NAME
    return [state_dir / CONFIG_FILE, state_dir / "config.yml", state_dir / CONFIG_FILE_JSON]


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    for path in _config_paths(project_dir):
        if not path.exists():
            continue
        try:
            text = path.read_text()
            data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            return {}, f"Failed to read {path}: {exc}"
        if data is None:
            return {}, None
        if not isinstance(data, dict):
            return {}, f"Config root in {path} is not a mapping"
        return data, None
    return {}, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _section(config: dict[str, Any], name: str) -> dict[str, Any]:
    raw = _get_nested(config, name)
    return raw if isinstance(raw, dict) else {}


def _positive_float(value: Any, default: float, key: str) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid {}={!r}; using {}", key, value, default)
        return default
    if number <= 0:
        logger.warning("Ignoring non-positive {}={!r}; using {}", key, value, default)
        return default
    return number


def get_session_settings(config: dict[str, Any]) -> SessionSettings:
    """Extract agent-session settings; `OPENCODE_URL` / `OPENCODE_DIRECTORY` win."""
    raw = _section(config, "sessions")
    base_url = os.environ.get("OPENCODE_URL") or raw.get("base_url") or DEFAULT_OPENCODE_URL
    directory = os.environ.get("OPENCODE_DIRECTORY") or raw.get("directory")
    return SessionSettings(
        base_url=str(base_url).rstrip("/"),
        directory=str(directory) if directory else None,
        timeout_seconds=_positive_float(
            raw.get("timeout_seconds"), DEFAULT_SESSION_TIMEOUT_SECONDS, "sessions.timeout_seconds"
        ),
        request_timeout_seconds=_positive_float(
            raw.get("request_timeout_seconds"),
            DEFAULT_REQUEST_TIMEOUT_SECONDS,
            "sessions.request_timeout_seconds",
        ),
    )


def get_merge_settings(config: dict[str, Any]) -> MergeSettings:
    raw = _section(config, "merge")
    method = raw.get("method", "squash")
    if method not in MERGE_METHODS:
        logger.warning("Unknown merge.method {!r}; using squash", method)
        method = "squash"
    return MergeSettings(
        auto_merge=bool(raw.get("auto_merge", False)),
        base_branch=str(raw.get("base_branch") or "main"),
        method=method,
        delete_branch=bool(raw.get("delete_branch", True)),
        draft=bool(raw.get("draft", False)),
    )


def get_orchestrator_settings(config: dict[str, Any]) -> OrchestratorSettings:
    raw = _section(config, "orchestrator")
    mode = raw.get("phase_approval", "automatic")
    if mode not in PHASE_APPROVAL_MODES:
        logger.warning("Unknown orchestrator.phase_approval {!r}; using automatic", mode)
        mode = "automatic"
    return OrchestratorSettings(
        phase_approval=mode,
        default_pipeline=str(raw.get("default_pipeline") or "standard"),
    )


def get_development_settings(config: dict[str, Any]) -> DevelopmentSettings:
    raw = _section(config, "development")
    value = raw.get("max_fix_iterations", 3)
    try:
        iterations = int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid development.max_fix_iterations={!r}", value)
        iterations = 3
    return DevelopmentSettings(max_fix_iterations=max(iterations, 0))
