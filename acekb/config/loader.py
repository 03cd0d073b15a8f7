"""Layered configuration loading.

Precedence, lowest first: built-in defaults, the user config
(``~/.config/ace/config.json``), the project config (``.ace.json`` in the
working directory), ``ACE_*`` environment variables, explicit overrides.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from acekb.config.schema import Config
from acekb.errors import ConfigError
from acekb.logging import get_logger

logger = get_logger(__name__)

PROJECT_CONFIG_NAME = ".ace.json"

_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "ACE_AGENTS_PATH": ("agentsPath",),
    "ACE_LOGS_DIR": ("logsDir",),
    "ACE_INSIGHTS_PATH": ("insightsPath",),
    "ACE_TRACES_PATH": ("tracesPath",),
    "ACE_CONFIDENCE": ("merge", "confidenceThreshold"),
    "ACE_MAX_LINES": ("archival", "maxLines"),
}

_PATH_FIELDS = ("agents_path", "logs_dir", "insights_path", "traces_path", "delta_queue")


def user_config_path() -> Path:
    return Path.home() / ".config" / "ace" / "config.json"


def _read_json_config(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to parse config file, ignoring it", path=str(path), error=str(exc))
        return None
    if not isinstance(data, dict):
        logger.warning("Config file is not a JSON object, ignoring it", path=str(path))
        return None
    return data


def _camelize(data: dict[str, Any]) -> dict[str, Any]:
    return {
        to_camel(key): _camelize(value) if isinstance(value, dict) else value
        for key, value in data.items()
    }


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    out: dict[str, Any] = {}
    for env_name, key_path in _ENV_KEYS.items():
        raw = os.environ.get(env_name)
        if raw is None or not raw.strip():
            continue
        cursor = out
        for part in key_path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[key_path[-1]] = raw.strip()
    return out


def _resolve_paths(config: Config, cwd: Path) -> Config:
    updates: dict[str, Any] = {}
    for name in _PATH_FIELDS:
        value = Path(getattr(config, name)).expanduser()
        if not value.is_absolute():
            updates[name] = str(cwd / value)
    retention = config.retention
    retention_updates: dict[str, Any] = {}
    for name in ("traces_archive_path", "insights_archive_path"):
        raw = getattr(retention, name)
        if raw and not Path(raw).expanduser().is_absolute():
            retention_updates[name] = str(cwd / raw)
    if retention_updates:
        updates["retention"] = retention.model_copy(update=retention_updates)
    archival = config.archival
    if archival.archive_path and not Path(archival.archive_path).expanduser().is_absolute():
        updates["archival"] = archival.model_copy(update={"archive_path": str(cwd / archival.archive_path)})
    return config.model_copy(update=updates)


def load_config(
    cwd: Path | None = None,
    overrides: dict[str, Any] | None = None,
    *,
    include_user_config: bool = True,
) -> Config:
    """Build a :class:`Config` from every configuration layer.

    Raises:
        ConfigError: if the merged values fail validation.
    """
    working_dir = (cwd or Path.cwd()).resolve()
    data: dict[str, Any] = {}
    layers: list[dict[str, Any] | None] = []
    if include_user_config:
        layers.append(_read_json_config(user_config_path()))
    layers.append(_read_json_config(working_dir / PROJECT_CONFIG_NAME))
    layers.append(_env_overrides())
    layers.append(overrides)
    for layer in layers:
        if layer:
            data = _deep_merge(data, _camelize(layer))

    try:
        config = Config.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid acekb configuration: {exc}") from exc
    return _resolve_paths(config, working_dir)
