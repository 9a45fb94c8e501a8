# src/idlc/registry.py
"""Registry of ResolvedConfigs by team, with version history and layered loading.

One engine instance serves many teams. Activation resolves a team's
TeamConfig, validates it, and publishes a new immutable ResolvedConfig
version. Earlier versions stay available so in-flight items keep working
until explicitly migrated. A failed activation never disturbs the active
version.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from idlc.resolver import ConfigResolutionError, ConfigResolver, ResolutionIssue
from idlc.schema import ResolvedConfig, TeamConfig
from idlc.types.workflow import ResolvedConfigInfo, StageInfo, StatusInfo
from idlc.validator import ValidationError, ValidationIssue, compile_config, validate_document

if TYPE_CHECKING:
    from idlc.collaborators import ConfigSource, ResolvedConfigStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckReport:
    """Outcome of a dry-run resolve + validate for one team."""

    team_id: str
    resolution_issues: tuple[ResolutionIssue, ...] = ()
    validation_issues: tuple[ValidationIssue, ...] = ()
    lineage: tuple[str, ...] = field(default=())

    @property
    def ok(self) -> bool:
        return not self.resolution_issues and not any(i.severity == "error" for i in self.validation_issues)


class ConfigRegistry:
    """Holds the active and historical ResolvedConfig versions for every team."""

    def __init__(self, source: ConfigSource, *, store: ResolvedConfigStore | None = None) -> None:
        self._source = source
        self._store = store
        self._resolver = ConfigResolver(source)
        self._lock = threading.Lock()
        self._active: dict[str, ResolvedConfig] = {}
        self._versions: dict[str, dict[int, ResolvedConfig]] = {}

    # -- Activation ----------------------------------------------------------

    def activate(self, team_id: str) -> ResolvedConfig:
        """Resolve, validate and activate the current TeamConfig for *team_id*.

        Raises:
            KeyError: If the source has no config for *team_id*.
            ConfigResolutionError: If resolution fails.
            ValidationError: If the merged document is inconsistent.
        """
        team = self._source.get_team_config(team_id)
        if team is None:
            msg = f"No team config found for '{team_id}'"
            raise KeyError(msg)
        doc = self._resolver.resolve(team)
        with self._lock:
            version = max(self._versions.get(team_id, {}), default=0) + 1
            config = compile_config(doc, version)
            self._versions.setdefault(team_id, {})[version] = config
            self._active[team_id] = config
        if self._store is not None:
            self._store.save_resolved(config)
        logger.info(
            "Activated config for team %s: version %d (%d statuses, %d rules)",
            team_id,
            version,
            len(config.statuses),
            len(config.rules),
        )
        return config

    def activate_all(self) -> tuple[list[ResolvedConfig], dict[str, Exception]]:
        """Activate every team the source knows. Failures are collected, not raised."""
        activated: list[ResolvedConfig] = []
        failures: dict[str, Exception] = {}
        for team_id in self._source.team_ids():
            try:
                activated.append(self.activate(team_id))
            except (ConfigResolutionError, ValidationError, KeyError) as exc:
                logger.error("Config for team %s not activated: %s", team_id, exc)
                failures[team_id] = exc
        return activated, failures

    def check(self, team_id: str) -> CheckReport:
        """Resolve and validate without activating."""
        team = self._source.get_team_config(team_id)
        if team is None:
            issue = ResolutionIssue("unknown_base", team_id, f"no team config found for '{team_id}'")
            return CheckReport(team_id=team_id, resolution_issues=(issue,))
        try:
            doc = self._resolver.resolve(team)
        except ConfigResolutionError as exc:
            return CheckReport(team_id=team_id, resolution_issues=tuple(exc.issues))
        return CheckReport(team_id=team_id, validation_issues=tuple(validate_document(doc)), lineage=doc.lineage)

    # -- Queries ---------------------------------------------------------------

    def active(self, team_id: str) -> ResolvedConfig:
        with self._lock:
            config = self._active.get(team_id)
        if config is None:
            msg = f"No active config for team '{team_id}'"
            raise KeyError(msg)
        return config

    def get_version(self, team_id: str, version: int) -> ResolvedConfig:
        with self._lock:
            config = self._versions.get(team_id, {}).get(version)
        if config is None and self._store is not None:
            config = self._store.load_resolved(team_id, version)
        if config is None:
            msg = f"No config version {version} for team '{team_id}'"
            raise KeyError(msg)
        return config

    def teams(self) -> list[str]:
        with self._lock:
            return sorted(self._active)

    def active_configs(self) -> list[ResolvedConfig]:
        with self._lock:
            return list(self._active.values())

    def close(self) -> None:
        with self._lock:
            self._active.clear()
            self._versions.clear()


def describe_config(config: ResolvedConfig) -> ResolvedConfigInfo:
    """JSON-compatible description of a ResolvedConfig."""
    return ResolvedConfigInfo(
        team_id=config.team_id,
        version=config.version,
        name=config.name,
        initial_status=config.initial_status,
        stages=[StageInfo(id=s.id, name=s.name, required=s.required, terminal=s.terminal) for s in config.stages],
        statuses=[StatusInfo(id=s.id, stage_id=s.stage_id, name=s.name) for s in config.statuses],
        edges={s.id: sorted(config.destinations(s.id)) for s in config.statuses},
        rules=[r.id for r in config.rules],
        warnings=list(config.warnings),
    )


# ---------------------------------------------------------------------------
# Directory-backed config source
# ---------------------------------------------------------------------------


class DirectoryConfigSource:
    """Layered config source backed by an ``.idlc/`` directory.

    Layer 1: built-in templates and fragments from ``templates_data``
    Layer 2: shared fragments from ``fragments/``
    Layer 3: team configs from ``teams/`` (may shadow a built-in name)

    Documents may be JSON (``*.json``) or YAML (``*.yaml``, ``*.yml``). Files
    are read once at construction; invalid files are skipped with a warning.
    """

    def __init__(self, idlc_dir: Path, *, enabled_templates: list[str] | None = None) -> None:
        from idlc.config import FRAGMENTS_DIRNAME, TEAMS_DIRNAME
        from idlc.templates_data import BUILT_IN_FRAGMENTS, BUILT_IN_TEMPLATES

        enabled = ["default"] if enabled_templates is None else enabled_templates
        self._builtins: dict[str, TeamConfig] = {}
        for name, raw in BUILT_IN_TEMPLATES.items():
            if name not in enabled:
                logger.debug("Skipping disabled built-in template: %s", name)
                continue
            self._builtins[name] = TeamConfig.from_dict(raw)
        self._fragments: dict[str, Any] = dict(BUILT_IN_FRAGMENTS)
        self._teams: dict[str, TeamConfig] = {}

        fragments_dir = idlc_dir / FRAGMENTS_DIRNAME
        if fragments_dir.is_dir():
            for path in _documents(fragments_dir):
                try:
                    data = _read_document(path)
                except (ValueError, yaml.YAMLError, OSError) as exc:
                    logger.warning("Skipping invalid fragment file %s: %s", path.name, exc)
                    continue
                if not isinstance(data, list | dict):
                    logger.warning("Skipping fragment file %s: must contain a list or object", path.name)
                    continue
                self._fragments[path.stem] = data
                logger.debug("Loaded fragment: %s", path.stem)

        teams_dir = idlc_dir / TEAMS_DIRNAME
        if teams_dir.is_dir():
            for path in _documents(teams_dir):
                try:
                    raw = _read_document(path)
                    if not isinstance(raw, dict):
                        msg = "team file must contain a mapping"
                        raise ValueError(msg)
                    team = TeamConfig.from_dict(raw)
                except (ValueError, yaml.YAMLError, OSError) as exc:
                    logger.warning("Skipping invalid team file %s: %s", path.name, exc)
                    continue
                self._teams[team.id] = team
                logger.info("Loaded team config: %s from %s", team.id, path.name)

    def get_team_config(self, team_id: str) -> TeamConfig | None:
        return self._teams.get(team_id) or self._builtins.get(team_id)

    def get_fragment(self, name: str) -> Any | None:
        return self._fragments.get(name)

    def team_ids(self) -> list[str]:
        return sorted(self._teams)


_DOCUMENT_PATTERNS = ("*.json", "*.yaml", "*.yml")


def _documents(directory: Path) -> Iterator[Path]:
    yield from sorted(p for pattern in _DOCUMENT_PATTERNS for p in directory.glob(pattern))


def _read_document(path: Path) -> Any:
    text = path.read_text()
    if path.suffix in (".yaml", ".yml"):
        return yaml.safe_load(text)
    return json.loads(text)
