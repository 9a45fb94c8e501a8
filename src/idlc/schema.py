# src/idlc/schema.py
"""Lifecycle schema model -- typed elements and parsing from JSON-compatible dicts.

Stages, statuses, transitions, complexity levels, automation rules and metric
thresholds are frozen dataclasses (configuration data). ``TeamConfig`` is the
raw, unresolved document a team owns; ``ResolvedConfig`` is the validated,
reference-free result that work items are bound to.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal

logger = logging.getLogger(__name__)

# Element ids are used as dict keys, log fields and file names.
_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")

WILDCARD = "*"
NEXT_STAGE = "@next"

SECTIONS: tuple[str, ...] = ("stages", "statuses", "transitions", "complexity", "automation", "metrics")

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

EnforcementLevel = Literal["soft", "hard"]
PredicateOp = Literal["equals", "not_equals", "in", "exists"]
ActionType = Literal["assign", "create_node", "create_edge", "create_document", "notify", "rollback", "auto_transition"]
MetricKind = Literal["stage_duration", "cycle_time", "loop_back_rate"]

_VALID_ENFORCEMENT: frozenset[str] = frozenset({"soft", "hard"})
_VALID_OPS: frozenset[str] = frozenset({"equals", "not_equals", "in", "exists"})
VALID_ACTION_TYPES: frozenset[str] = frozenset(
    {"assign", "create_node", "create_edge", "create_document", "notify", "rollback", "auto_transition"}
)
_VALID_METRICS: frozenset[str] = frozenset({"stage_duration", "cycle_time", "loop_back_rate"})

_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")


def check_id(value: Any, what: str) -> str:
    """Return *value* if it is a well-formed element id, else raise ValueError."""
    if not isinstance(value, str) or not _ID_PATTERN.match(value):
        msg = f"Invalid {what} id {value!r}: must match ^[A-Za-z0-9][A-Za-z0-9_.-]{{0,63}}$"
        raise ValueError(msg)
    return value


def parse_duration(value: Any) -> float:
    """Parse a duration into seconds.

    Accepts non-negative numbers (seconds) or strings such as ``"90s"``,
    ``"30m"``, ``"1h"``, ``"2d"``. A bare numeric string is seconds.
    """
    if isinstance(value, bool):
        msg = f"Invalid duration {value!r}"
        raise ValueError(msg)
    if isinstance(value, int | float):
        if value < 0:
            msg = f"Duration must not be negative, got {value}"
            raise ValueError(msg)
        return float(value)
    if isinstance(value, str):
        m = _DURATION_PATTERN.match(value)
        if m:
            return float(m.group(1)) * _DURATION_UNITS[m.group(2) or "s"]
    msg = f"Invalid duration {value!r}: use seconds or a string like '30m', '1h', '2d'"
    raise ValueError(msg)


def _str_tuple(raw: Mapping[str, Any], key: str, what: str) -> tuple[str, ...]:
    value = raw.get(key, [])
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        msg = f"{what}: '{key}' must be a list of strings"
        raise ValueError(msg)
    return tuple(value)


# ---------------------------------------------------------------------------
# Elements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Predicate:
    """Attribute-based predicate evaluated against a work item's attributes."""

    attribute: str
    op: PredicateOp = "equals"
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in _VALID_OPS:
            msg = f"Invalid predicate op '{self.op}': must be one of {sorted(_VALID_OPS)}"
            raise ValueError(msg)

    def matches(self, attributes: Mapping[str, Any]) -> bool:
        if self.op == "exists":
            return self.attribute in attributes
        actual = attributes.get(self.attribute)
        if self.op == "equals":
            return actual == self.value
        if self.op == "not_equals":
            return actual != self.value
        # "in"
        return isinstance(self.value, list | tuple | set | frozenset) and actual in self.value


@dataclass(frozen=True)
class Stage:
    """A coarse lifecycle phase; container for statuses."""

    id: str
    name: str
    description: str = ""
    required: bool = True
    terminal: bool = False
    skip_if: Predicate | None = None
    entry_criteria: tuple[str, ...] = ()
    exit_criteria: tuple[str, ...] = ()
    enforcement: EnforcementLevel = "soft"
    entry_status: str | None = None


@dataclass(frozen=True)
class Status:
    """A concrete state an item occupies, nested under exactly one stage."""

    id: str
    stage_id: str
    name: str
    description: str = ""
    color: str | None = None


@dataclass(frozen=True)
class Transition:
    """An edge declaration: one source status (or the wildcard) to a set of targets."""

    key: str
    from_status: str
    to_statuses: tuple[str, ...]
    except_statuses: tuple[str, ...] = ()

    @property
    def is_wildcard(self) -> bool:
        return self.from_status == WILDCARD


@dataclass(frozen=True)
class ApprovalRequirement:
    stage: str
    roles: frozenset[str]


@dataclass(frozen=True)
class ComplexityLevel:
    """Sizing level controlling stage skipping and approval gates."""

    id: str
    name: str
    points: tuple[float, float] | None = None
    skip_stages: tuple[str, ...] = ()
    required_stages: tuple[str, ...] = ()
    require_approval: tuple[ApprovalRequirement, ...] = ()

    def approval_roles(self, stage_id: str) -> frozenset[str]:
        """Union of roles that must sign off before leaving *stage_id*."""
        roles: set[str] = set()
        for req in self.require_approval:
            if req.stage == stage_id:
                roles |= req.roles
        return frozenset(roles)

    def covers(self, weight: float) -> bool:
        if self.points is None:
            return False
        low, high = self.points
        return low <= weight <= high


@dataclass(frozen=True)
class Action:
    """One step of an automation rule; ``params`` holds the type-specific keys."""

    type: ActionType
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.type not in VALID_ACTION_TYPES:
            msg = f"Invalid action type '{self.type}': must be one of {sorted(VALID_ACTION_TYPES)}"
            raise ValueError(msg)


@dataclass(frozen=True)
class AutomationRule:
    """Trigger descriptor plus ordered actions; ``duration`` makes it deferred."""

    id: str
    trigger: str
    from_statuses: tuple[str, ...] = ()
    to_status: str | None = None
    duration: float | None = None
    break_on: tuple[str, ...] = ()
    actions: tuple[Action, ...] = ()
    on_break: tuple[Action, ...] = ()

    @property
    def deferred(self) -> bool:
        return self.duration is not None

    @property
    def on_transition(self) -> bool:
        return self.trigger == "transition"


@dataclass(frozen=True)
class MetricThreshold:
    id: str
    metric: MetricKind
    threshold: float
    stage: str | None = None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def element_key(section: str, raw: Mapping[str, Any]) -> str:
    """Merge key of a raw element: its ``id``, or ``from`` for id-less transitions."""
    if "id" in raw:
        return str(raw["id"])
    if section == "transitions" and "from" in raw:
        return str(raw["from"])
    msg = f"{section}: element has no 'id'"
    raise KeyError(msg)


def parse_predicate(raw: Any) -> Predicate | None:
    if raw is None:
        return None
    if not isinstance(raw, dict) or "attribute" not in raw:
        msg = "skip_if must be a dict with an 'attribute' key"
        raise ValueError(msg)
    value = raw.get("value")
    if isinstance(value, list):
        value = tuple(value)
    return Predicate(attribute=raw["attribute"], op=raw.get("op", "equals"), value=value)


def parse_stage(raw: Mapping[str, Any]) -> Stage:
    stage_id = check_id(raw["id"], "stage")
    enforcement = raw.get("enforcement", "soft")
    if enforcement not in _VALID_ENFORCEMENT:
        msg = f"Stage '{stage_id}': invalid enforcement '{enforcement}' (must be 'soft' or 'hard')"
        raise ValueError(msg)
    return Stage(
        id=stage_id,
        name=raw.get("name", stage_id),
        description=raw.get("description") or "",
        required=bool(raw.get("required", True)),
        terminal=bool(raw.get("terminal", False)),
        skip_if=parse_predicate(raw.get("skip_if")),
        entry_criteria=_str_tuple(raw, "entry_criteria", f"Stage '{stage_id}'"),
        exit_criteria=_str_tuple(raw, "exit_criteria", f"Stage '{stage_id}'"),
        enforcement=enforcement,
        entry_status=raw.get("entry_status"),
    )


def parse_status(raw: Mapping[str, Any]) -> Status:
    status_id = check_id(raw["id"], "status")
    stage_id = raw.get("stage_id", raw.get("stage"))
    if not isinstance(stage_id, str):
        msg = f"Status '{status_id}': 'stage_id' is required"
        raise ValueError(msg)
    return Status(
        id=status_id,
        stage_id=stage_id,
        name=raw.get("name", status_id),
        description=raw.get("description") or "",
        color=raw.get("color"),
    )


def parse_transition(raw: Mapping[str, Any]) -> Transition:
    from_status = raw["from"]
    if not isinstance(from_status, str):
        msg = f"Transition 'from' must be a string, got {type(from_status).__name__}"
        raise ValueError(msg)
    what = f"Transition from '{from_status}'"
    to_statuses = _str_tuple(raw, "to", what)
    if not to_statuses:
        msg = f"{what}: 'to' must list at least one status"
        raise ValueError(msg)
    except_statuses = _str_tuple(raw, "except", what)
    if except_statuses and from_status != WILDCARD:
        msg = f"{what}: 'except' is only valid on wildcard transitions"
        raise ValueError(msg)
    return Transition(
        key=element_key("transitions", raw),
        from_status=from_status,
        to_statuses=to_statuses,
        except_statuses=except_statuses,
    )


def parse_complexity(raw: Mapping[str, Any]) -> ComplexityLevel:
    level_id = check_id(raw["id"], "complexity level")
    what = f"Complexity '{level_id}'"
    points = raw.get("points")
    if points is not None:
        if not isinstance(points, list) or len(points) != 2:
            msg = f"{what}: 'points' must be a [min, max] pair"
            raise ValueError(msg)
        points = (float(points[0]), float(points[1]))
    approvals = []
    for req in raw.get("require_approval", []) or []:
        if not isinstance(req, dict) or "stage" not in req:
            msg = f"{what}: require_approval entries need a 'stage'"
            raise ValueError(msg)
        approvals.append(ApprovalRequirement(stage=req["stage"], roles=frozenset(_str_tuple(req, "roles", what))))
    return ComplexityLevel(
        id=level_id,
        name=raw.get("name", level_id),
        points=points,
        skip_stages=_str_tuple(raw, "skip_stages", what),
        required_stages=_str_tuple(raw, "required_stages", what),
        require_approval=tuple(approvals),
    )


def parse_action(raw: Any) -> Action:
    if not isinstance(raw, dict) or "type" not in raw:
        msg = f"Action must be a dict with a 'type' key, got {raw!r}"
        raise ValueError(msg)
    params = {k: v for k, v in raw.items() if k != "type"}
    return Action(type=raw["type"], params=MappingProxyType(params))


def parse_rule(raw: Mapping[str, Any]) -> AutomationRule:
    rule_id = check_id(raw["id"], "automation rule")
    what = f"Rule '{rule_id}'"
    trigger = raw.get("trigger", "transition")
    if not isinstance(trigger, str) or not trigger:
        msg = f"{what}: 'trigger' must be a non-empty string"
        raise ValueError(msg)
    duration = raw.get("duration")
    to_status = raw.get("to")
    if to_status is not None and not isinstance(to_status, str):
        msg = f"{what}: 'to' must be a single status"
        raise ValueError(msg)
    on_break = tuple(parse_action(a) for a in raw.get("on_break", []) or [])
    break_on = _str_tuple(raw, "break_on", what)
    if (on_break or break_on) and duration is None:
        msg = f"{what}: 'break_on'/'on_break' require a 'duration'"
        raise ValueError(msg)
    return AutomationRule(
        id=rule_id,
        trigger=trigger,
        from_statuses=_str_tuple(raw, "from", what),
        to_status=to_status,
        duration=parse_duration(duration) if duration is not None else None,
        break_on=break_on,
        actions=tuple(parse_action(a) for a in raw.get("actions", []) or []),
        on_break=on_break,
    )


def parse_threshold(raw: Mapping[str, Any]) -> MetricThreshold:
    threshold_id = check_id(raw["id"], "metric threshold")
    metric = raw.get("metric")
    if metric not in _VALID_METRICS:
        msg = f"Metric threshold '{threshold_id}': metric must be one of {sorted(_VALID_METRICS)}"
        raise ValueError(msg)
    return MetricThreshold(
        id=threshold_id,
        metric=metric,
        threshold=float(raw["threshold"]),
        stage=raw.get("stage"),
    )


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TeamConfig:
    """A team's raw configuration, possibly extending a base and holding ``$ref`` entries."""

    id: str
    name: str = ""
    description: str = ""
    version: str = "1.0"
    extends: str | None = None
    initial_status: str | None = None
    sections: Mapping[str, tuple[Any, ...]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TeamConfig:
        """Build a TeamConfig from a JSON-compatible dict.

        The team id comes from ``team.id`` (or a top-level ``id``). Section
        contents are kept raw; they are only parsed after resolution.

        Raises:
            ValueError: If the team id is missing or a section is not a list.
        """
        team = raw.get("team") or {}
        if not isinstance(team, dict):
            msg = "'team' must be a dict"
            raise ValueError(msg)
        team_id = check_id(team.get("id", raw.get("id")), "team")
        sections: dict[str, tuple[Any, ...]] = {}
        for name in SECTIONS:
            value = raw.get(name, [])
            if value is None:
                value = []
            if not isinstance(value, list):
                msg = f"Team '{team_id}': '{name}' must be a list, got {type(value).__name__}"
                raise ValueError(msg)
            sections[name] = tuple(value)
        extends = raw.get("extends")
        if extends is not None and not isinstance(extends, str):
            msg = f"Team '{team_id}': 'extends' must be a string"
            raise ValueError(msg)
        logger.debug("Parsed team config: %s (extends=%s)", team_id, extends)
        return cls(
            id=team_id,
            name=team.get("name", team_id),
            description=team.get("description") or "",
            version=str(raw.get("version", "1.0")),
            extends=extends,
            initial_status=raw.get("initial_status"),
            sections=MappingProxyType(sections),
        )


@dataclass(frozen=True, eq=False)
class ResolvedConfig:
    """Validated, reference-free, inheritance-expanded workflow for one team.

    Immutable; shared read-only by every work item bound to it. ``edges`` is
    the expanded transition table (status -> legal destinations), computed
    once at validation time.
    """

    team_id: str
    version: int
    name: str
    description: str
    source_version: str
    initial_status: str
    stages: tuple[Stage, ...]
    statuses: tuple[Status, ...]
    transitions: tuple[Transition, ...]
    complexity_levels: tuple[ComplexityLevel, ...]
    rules: tuple[AutomationRule, ...]
    thresholds: tuple[MetricThreshold, ...]
    edges: Mapping[str, frozenset[str]]
    warnings: tuple[str, ...] = ()
    _stage_index: Mapping[str, int] = field(init=False, repr=False)
    _status_map: Mapping[str, Status] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "edges", MappingProxyType(dict(self.edges)))
        object.__setattr__(self, "_stage_index", MappingProxyType({s.id: i for i, s in enumerate(self.stages)}))
        object.__setattr__(self, "_status_map", MappingProxyType({s.id: s for s in self.statuses}))

    # -- Lookups -------------------------------------------------------------

    def get_stage(self, stage_id: str) -> Stage | None:
        idx = self._stage_index.get(stage_id)
        return None if idx is None else self.stages[idx]

    def get_status(self, status_id: str) -> Status | None:
        return self._status_map.get(status_id)

    def stage_of(self, status_id: str) -> Stage:
        """Stage owning *status_id*. Raises KeyError for unknown statuses."""
        status = self._status_map.get(status_id)
        if status is None:
            msg = f"Unknown status '{status_id}' for team '{self.team_id}'"
            raise KeyError(msg)
        stage = self.get_stage(status.stage_id)
        if stage is None:
            # Validation rejects documents whose statuses name unknown stages.
            msg = f"Status '{status_id}' references unknown stage '{status.stage_id}'"
            raise RuntimeError(msg)
        return stage

    def stage_position(self, stage_id: str) -> int:
        return self._stage_index[stage_id]

    def get_complexity(self, level_id: str | None) -> ComplexityLevel | None:
        if level_id is None:
            return None
        return next((c for c in self.complexity_levels if c.id == level_id), None)

    def complexity_for_weight(self, weight: float) -> ComplexityLevel | None:
        """First complexity level whose points range contains *weight*."""
        return next((c for c in self.complexity_levels if c.covers(weight)), None)

    def entry_status(self, stage_id: str) -> str | None:
        """Explicit ``entry_status`` of a stage, else its first declared status."""
        stage = self.get_stage(stage_id)
        if stage is None:
            return None
        if stage.entry_status:
            return stage.entry_status
        return next((s.id for s in self.statuses if s.stage_id == stage_id), None)

    def destinations(self, status_id: str) -> frozenset[str]:
        return self.edges.get(status_id, frozenset())

    def is_legal(self, from_status: str, to_status: str) -> bool:
        return to_status in self.edges.get(from_status, frozenset())

    def statuses_in(self, stage_ids: Iterable[str]) -> set[str]:
        wanted = set(stage_ids)
        return {s.id for s in self.statuses if s.stage_id in wanted}
