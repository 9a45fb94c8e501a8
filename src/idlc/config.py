# src/idlc/config.py
"""Project configuration -- the ``.idlc/`` directory and its ``config.json``.

Layout::

    .idlc/
      config.json        engine settings (see EngineSettings)
      teams/*.json       team lifecycle documents
      fragments/*.json   shared fragments referenced with $ref
      idlc.log           structured JSON log
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, TypedDict

logger = logging.getLogger(__name__)

IDLC_DIR_NAME = ".idlc"
CONFIG_FILENAME = "config.json"
TEAMS_DIRNAME = "teams"
FRAGMENTS_DIRNAME = "fragments"


class EngineSettings(TypedDict):
    subscriber_timeout: float
    action_timeout: float
    tick_interval: float
    lock_wait: float
    max_cascade_depth: int
    enabled_templates: list[str]


DEFAULT_SETTINGS = EngineSettings(
    subscriber_timeout=5.0,
    action_timeout=10.0,
    tick_interval=30.0,
    lock_wait=0.0,
    max_cascade_depth=8,
    enabled_templates=["default"],
)

# lock_wait may be zero (fail fast); the other durations must be positive.
_POSITIVE_KEYS = ("subscriber_timeout", "action_timeout", "tick_interval")


def find_idlc_root(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for an .idlc/ directory.

    Returns the .idlc/ directory path (not the project root).
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = parent / IDLC_DIR_NAME
        if candidate.is_dir():
            return candidate
    msg = f"No {IDLC_DIR_NAME}/ directory found in {current} or any parent"
    raise FileNotFoundError(msg)


def _settings_from(raw: dict[str, Any], source: str) -> EngineSettings:
    settings = EngineSettings(
        subscriber_timeout=DEFAULT_SETTINGS["subscriber_timeout"],
        action_timeout=DEFAULT_SETTINGS["action_timeout"],
        tick_interval=DEFAULT_SETTINGS["tick_interval"],
        lock_wait=DEFAULT_SETTINGS["lock_wait"],
        max_cascade_depth=DEFAULT_SETTINGS["max_cascade_depth"],
        enabled_templates=list(DEFAULT_SETTINGS["enabled_templates"]),
    )
    for key in _POSITIVE_KEYS:
        if key not in raw:
            continue
        value = raw[key]
        if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
            logger.warning("Invalid %s %r in %s, using default %s", key, value, source, DEFAULT_SETTINGS[key])
            continue
        settings[key] = float(value)  # type: ignore[literal-required]

    if "lock_wait" in raw:
        value = raw["lock_wait"]
        if isinstance(value, bool) or not isinstance(value, int | float) or value < 0:
            logger.warning("Invalid lock_wait %r in %s, using default", value, source)
        else:
            settings["lock_wait"] = float(value)

    if "max_cascade_depth" in raw:
        value = raw["max_cascade_depth"]
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            logger.warning("Invalid max_cascade_depth %r in %s, using default", value, source)
        else:
            settings["max_cascade_depth"] = value

    if "enabled_templates" in raw:
        value = raw["enabled_templates"]
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            logger.warning("Invalid enabled_templates %r in %s, using default", value, source)
        else:
            settings["enabled_templates"] = list(value)
    return settings


def read_config(idlc_dir: Path) -> EngineSettings:
    """Read .idlc/config.json. Returns defaults if missing or corrupt.

    Individual invalid values fall back to their defaults with a warning.
    """
    config_path = idlc_dir / CONFIG_FILENAME
    if not config_path.exists():
        return _settings_from({}, str(config_path))
    try:
        raw = json.loads(config_path.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s, using defaults: %s", config_path, exc)
        return _settings_from({}, str(config_path))
    if not isinstance(raw, dict):
        logger.warning("%s must contain a JSON object, using defaults", config_path)
        return _settings_from({}, str(config_path))
    return _settings_from(raw, str(config_path))


def write_config(idlc_dir: Path, config: dict[str, Any] | EngineSettings) -> None:
    """Write .idlc/config.json."""
    config_path = idlc_dir / CONFIG_FILENAME
    config_path.write_text(json.dumps(config, indent=2) + "\n")
