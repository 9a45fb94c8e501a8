# src/idlc/validator.py
"""Validation of merged documents and construction of ResolvedConfig.

Validation is pure: it needs nothing but the merged document. Each problem is
reported as a ValidationIssue with a distinct kind; only ``error`` severity
blocks activation, ``warning`` issues travel with the ResolvedConfig.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

from idlc.resolver import MergedDocument
from idlc.schema import (
    NEXT_STAGE,
    AutomationRule,
    ComplexityLevel,
    MetricThreshold,
    ResolvedConfig,
    Stage,
    Status,
    Transition,
    parse_complexity,
    parse_rule,
    parse_stage,
    parse_status,
    parse_threshold,
    parse_transition,
)

logger = logging.getLogger(__name__)

IssueKind = Literal[
    "unknown_stage",
    "unknown_status",
    "unreachable_start",
    "invalid_terminal_edge",
    "unknown_stage_ref",
    "unknown_status_ref",
    "unknown_except",
    "duplicate_id",
    "malformed_element",
    "no_statuses",
]
Severity = Literal["error", "warning"]

_T = TypeVar("_T")


@dataclass(frozen=True)
class ValidationIssue:
    kind: IssueKind
    message: str
    severity: Severity = "error"


class ValidationError(ValueError):
    """Raised when a merged document is not a well-formed state machine."""

    def __init__(self, team_id: str, issues: Sequence[ValidationIssue]) -> None:
        self.team_id = team_id
        self.issues = list(issues)
        errors = [i for i in self.issues if i.severity == "error"]
        details = "; ".join(f"[{i.kind}] {i.message}" for i in errors)
        super().__init__(f"Invalid config for team '{team_id}': {details}")


@dataclass(frozen=True)
class ParsedDocument:
    stages: tuple[Stage, ...]
    statuses: tuple[Status, ...]
    transitions: tuple[Transition, ...]
    complexity_levels: tuple[ComplexityLevel, ...]
    rules: tuple[AutomationRule, ...]
    thresholds: tuple[MetricThreshold, ...]
    initial_status: str | None


def expand_transitions(
    transitions: Iterable[Transition],
    status_ids: Sequence[str],
) -> dict[str, frozenset[str]]:
    """Build the status -> destinations table, expanding wildcards.

    A wildcard transition contributes its targets to every known status not
    listed in its ``except`` set. Unknown endpoints are dropped here; the
    validator reports them separately.
    """
    known = set(status_ids)
    table: dict[str, set[str]] = {s: set() for s in status_ids}
    for t in transitions:
        targets = {to for to in t.to_statuses if to in known}
        if t.is_wildcard:
            excluded = set(t.except_statuses)
            for s in status_ids:
                if s not in excluded:
                    table[s] |= targets
        elif t.from_status in known:
            table[t.from_status] |= targets
    return {s: frozenset(dests) for s, dests in table.items()}


def _parse_section(
    raw: list[dict[str, Any]],
    parser: Callable[[dict[str, Any]], _T],
    section: str,
    issues: list[ValidationIssue],
) -> list[_T]:
    parsed: list[_T] = []
    for element in raw:
        try:
            parsed.append(parser(element))
        except (ValueError, KeyError, TypeError) as exc:
            ident = element.get("id", element.get("from", "?"))
            issues.append(ValidationIssue("malformed_element", f"{section} '{ident}': {exc}"))
    return parsed


def _check_duplicates(ids: Iterable[str], section: str, issues: list[ValidationIssue]) -> None:
    seen: set[str] = set()
    for ident in ids:
        if ident in seen:
            issues.append(ValidationIssue("duplicate_id", f"{section}: duplicate id '{ident}'"))
        seen.add(ident)


def parse_document(doc: MergedDocument, issues: list[ValidationIssue]) -> ParsedDocument:
    """Parse every section of *doc*, recording malformed elements in *issues*."""
    s = doc.sections
    stages = _parse_section(s.get("stages", []), parse_stage, "stage", issues)
    statuses = _parse_section(s.get("statuses", []), parse_status, "status", issues)
    _check_duplicates((x.id for x in stages), "stages", issues)
    _check_duplicates((x.id for x in statuses), "statuses", issues)
    return ParsedDocument(
        stages=tuple(stages),
        statuses=tuple(statuses),
        transitions=tuple(_parse_section(s.get("transitions", []), parse_transition, "transition", issues)),
        complexity_levels=tuple(_parse_section(s.get("complexity", []), parse_complexity, "complexity", issues)),
        rules=tuple(_parse_section(s.get("automation", []), parse_rule, "automation rule", issues)),
        thresholds=tuple(_parse_section(s.get("metrics", []), parse_threshold, "metric threshold", issues)),
        initial_status=doc.initial_status,
    )


def validate_parsed(
    parsed: ParsedDocument,
) -> tuple[list[ValidationIssue], dict[str, frozenset[str]], str | None]:
    """Run every consistency check on a parsed document.

    Returns:
        (issues, expanded edge table, designated initial status)
    """
    issues: list[ValidationIssue] = []
    stage_ids = {st.id for st in parsed.stages}
    status_ids = [st.id for st in parsed.statuses]
    known_statuses = set(status_ids)

    if not parsed.stages or not parsed.statuses:
        issues.append(ValidationIssue("no_statuses", "config must declare at least one stage and one status"))

    for st in parsed.statuses:
        if st.stage_id not in stage_ids:
            msg = f"status '{st.id}' references unknown stage '{st.stage_id}'"
            issues.append(ValidationIssue("unknown_stage", msg))

    for t in parsed.transitions:
        if not t.is_wildcard and t.from_status not in known_statuses:
            issues.append(ValidationIssue("unknown_status", f"transition from unknown status '{t.from_status}'"))
        for to in t.to_statuses:
            if to not in known_statuses:
                issues.append(
                    ValidationIssue("unknown_status", f"transition {t.from_status}->{to} targets unknown status '{to}'")
                )
        for ex in t.except_statuses:
            if ex not in known_statuses:
                issues.append(
                    ValidationIssue("unknown_except", f"wildcard except clause references unknown status '{ex}'")
                )

    edges = expand_transitions(parsed.transitions, status_ids)

    # Terminal statuses may only lead to other terminal statuses.
    terminal_stages = {st.id for st in parsed.stages if st.terminal}
    stage_of = {st.id: st.stage_id for st in parsed.statuses}
    for sid in status_ids:
        if stage_of[sid] not in terminal_stages:
            continue
        for dest in sorted(edges[sid]):
            if stage_of.get(dest) not in terminal_stages:
                issues.append(
                    ValidationIssue(
                        "invalid_terminal_edge",
                        f"terminal status '{sid}' has outgoing transition to non-terminal status '{dest}'",
                    )
                )

    initial = parsed.initial_status
    if initial is not None and initial not in known_statuses:
        issues.append(ValidationIssue("unknown_status", f"initial_status '{initial}' is not a declared status"))
        initial = None
    if initial is None and status_ids:
        initial = status_ids[0]

    if initial is not None:
        _check_reachability(initial, edges, status_ids, issues)

    for st in parsed.stages:
        if st.entry_status is not None and stage_of.get(st.entry_status) != st.id:
            issues.append(
                ValidationIssue(
                    "unknown_status_ref",
                    f"stage '{st.id}' entry_status '{st.entry_status}' is not a status of that stage",
                )
            )

    for level in parsed.complexity_levels:
        refs = [*level.skip_stages, *level.required_stages, *(r.stage for r in level.require_approval)]
        for ref in refs:
            if ref not in stage_ids:
                issues.append(
                    ValidationIssue("unknown_stage_ref", f"complexity '{level.id}' references unknown stage '{ref}'")
                )

    for rule in parsed.rules:
        refs = list(rule.from_statuses)
        if rule.to_status is not None:
            refs.append(rule.to_status)
        for action in (*rule.actions, *rule.on_break):
            target = action.params.get("to")
            if action.type in ("auto_transition", "rollback") and target not in (None, NEXT_STAGE):
                refs.append(target)
        for ref in refs:
            if ref not in known_statuses:
                msg = f"automation rule '{rule.id}' references unknown status '{ref}'"
                issues.append(ValidationIssue("unknown_status_ref", msg))

    for th in parsed.thresholds:
        if th.stage is not None and th.stage not in stage_ids:
            msg = f"metric threshold '{th.id}' references unknown stage '{th.stage}'"
            issues.append(ValidationIssue("unknown_stage_ref", msg))
        if th.metric == "stage_duration" and th.stage is None:
            msg = f"metric threshold '{th.id}': stage_duration needs a stage"
            issues.append(ValidationIssue("malformed_element", msg))

    return issues, edges, initial


def _check_reachability(
    initial: str,
    edges: dict[str, frozenset[str]],
    status_ids: Sequence[str],
    issues: list[ValidationIssue],
) -> None:
    """Advisory checks around the designated start status."""
    if any(initial in dests for src, dests in edges.items() if src != initial):
        issues.append(
            ValidationIssue(
                "unreachable_start",
                f"initial status '{initial}' is also the target of a transition",
                severity="warning",
            )
        )
    reachable: set[str] = set()
    queue = deque([initial])
    while queue:
        current = queue.popleft()
        if current in reachable:
            continue
        reachable.add(current)
        queue.extend(d for d in edges.get(current, ()) if d not in reachable)
    for sid in status_ids:
        if sid not in reachable:
            issues.append(
                ValidationIssue(
                    "unreachable_start",
                    f"status '{sid}' is unreachable from initial status '{initial}'",
                    severity="warning",
                )
            )


def compile_config(doc: MergedDocument, version: int) -> ResolvedConfig:
    """Validate *doc* and build the immutable ResolvedConfig.

    Raises:
        ValidationError: If any error-severity issue is found.
    """
    issues: list[ValidationIssue] = []
    parsed = parse_document(doc, issues)
    check_issues, edges, initial = validate_parsed(parsed)
    issues.extend(check_issues)

    errors = [i for i in issues if i.severity == "error"]
    if errors or initial is None:
        logger.warning("Validation failed for team %s: %d error(s)", doc.team_id, len(errors))
        raise ValidationError(doc.team_id, issues)

    warnings = tuple(f"[{i.kind}] {i.message}" for i in issues if i.severity == "warning")
    for w in warnings:
        logger.warning("Quality: team %s: %s", doc.team_id, w)

    return ResolvedConfig(
        team_id=doc.team_id,
        version=version,
        name=doc.name,
        description=doc.description,
        source_version=doc.version,
        initial_status=initial,
        stages=parsed.stages,
        statuses=parsed.statuses,
        transitions=parsed.transitions,
        complexity_levels=parsed.complexity_levels,
        rules=parsed.rules,
        thresholds=parsed.thresholds,
        edges=edges,
        warnings=warnings,
    )


def validate_document(doc: MergedDocument) -> list[ValidationIssue]:
    """All issues (errors and warnings) for *doc*, without building a config."""
    issues: list[ValidationIssue] = []
    parsed = parse_document(doc, issues)
    check_issues, _, _ = validate_parsed(parsed)
    return issues + check_issues
