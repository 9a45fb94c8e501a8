# src/idlc/resolver.py
"""Config resolution -- ``extends`` inheritance and ``$ref`` fragment expansion.

Produces a single merged document per team. Merge rule is override-by-id: a
child element whose key matches a parent element replaces it entirely (in the
parent's position); new keys are appended. Output order is parent-then-child.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from idlc.schema import SECTIONS, TeamConfig, element_key

if TYPE_CHECKING:
    from idlc.collaborators import ConfigSource

logger = logging.getLogger(__name__)

ResolutionKind = Literal[
    "unknown_base",
    "unknown_fragment",
    "circular_extends",
    "circular_ref",
    "duplicate_id",
    "malformed",
]

# Bounds recursion on pathological fragment graphs that are not cyclic.
MAX_REF_DEPTH = 32


@dataclass(frozen=True)
class ResolutionIssue:
    kind: ResolutionKind
    team: str
    message: str


class ConfigResolutionError(ValueError):
    """Raised when a team's configuration cannot be resolved.

    Carries every issue found, not just the first, so operators can fix a
    config in one pass.
    """

    def __init__(self, team_id: str, issues: Sequence[ResolutionIssue]) -> None:
        self.team_id = team_id
        self.issues = list(issues)
        details = "; ".join(f"[{i.kind}] {i.message}" for i in self.issues)
        super().__init__(f"Cannot resolve config for team '{team_id}': {details}")


@dataclass(frozen=True)
class MergedDocument:
    """Structurally merged, reference-free document awaiting validation."""

    team_id: str
    name: str
    description: str
    version: str
    initial_status: str | None
    sections: dict[str, list[dict[str, Any]]]
    lineage: tuple[str, ...] = field(default=())


class ConfigResolver:
    """Resolves TeamConfigs against a source of base configs and fragments."""

    def __init__(self, source: ConfigSource) -> None:
        self._source = source

    def resolve(self, team: TeamConfig) -> MergedDocument:
        """Resolve *team* into a MergedDocument.

        Raises:
            ConfigResolutionError: On unknown bases or fragments, cycles, or
                duplicate/malformed elements.
        """
        issues: list[ResolutionIssue] = []
        doc = self._resolve_team(team, (), issues)
        if issues or doc is None:
            logger.warning("Resolution failed for team %s: %d issue(s)", team.id, len(issues))
            raise ConfigResolutionError(team.id, issues)
        logger.debug("Resolved team %s via lineage %s", team.id, " -> ".join(doc.lineage))
        return doc

    # -- extends -------------------------------------------------------------

    def _resolve_team(
        self,
        team: TeamConfig,
        chain: tuple[str, ...],
        issues: list[ResolutionIssue],
    ) -> MergedDocument | None:
        if team.id in chain:
            cycle = " -> ".join([*chain, team.id])
            issues.append(ResolutionIssue("circular_extends", chain[0], f"circular extends chain: {cycle}"))
            return None
        chain = (*chain, team.id)

        base: MergedDocument | None = None
        if team.extends is not None:
            parent = self._source.get_team_config(team.extends)
            if parent is None:
                msg = f"team '{team.id}' extends unknown config '{team.extends}'"
                issues.append(ResolutionIssue("unknown_base", team.id, msg))
                return None
            base = self._resolve_team(parent, chain, issues)
            if base is None:
                return None

        sections: dict[str, list[dict[str, Any]]] = {}
        for section in SECTIONS:
            own = self._expand(team.id, section, team.sections.get(section, ()), (), issues)
            inherited = base.sections.get(section, []) if base is not None else []
            sections[section] = self._merge(team.id, section, inherited, own, issues)

        return MergedDocument(
            team_id=team.id,
            name=team.name,
            description=team.description,
            version=team.version,
            initial_status=team.initial_status or (base.initial_status if base else None),
            sections=sections,
            lineage=(*(base.lineage if base else ()), team.id),
        )

    @staticmethod
    def _merge(
        team_id: str,
        section: str,
        inherited: list[dict[str, Any]],
        own: list[dict[str, Any]],
        issues: list[ResolutionIssue],
    ) -> list[dict[str, Any]]:
        merged: dict[str, dict[str, Any]] = {}
        for element in inherited:
            merged[element_key(section, element)] = element
        seen: set[str] = set()
        for element in own:
            try:
                key = element_key(section, element)
            except KeyError as exc:
                issues.append(ResolutionIssue("malformed", team_id, exc.args[0]))
                continue
            if key in seen:
                issues.append(ResolutionIssue("duplicate_id", team_id, f"{section}: duplicate id '{key}'"))
                continue
            seen.add(key)
            if key in merged:
                logger.debug("Team %s overrides %s element '%s'", team_id, section, key)
            merged[key] = element
        return list(merged.values())

    # -- $ref ----------------------------------------------------------------

    def _expand(
        self,
        team_id: str,
        section: str,
        elements: Sequence[Any],
        stack: tuple[str, ...],
        issues: list[ResolutionIssue],
    ) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for i, element in enumerate(elements):
            if not isinstance(element, dict):
                issues.append(
                    ResolutionIssue(
                        "malformed", team_id, f"{section}[{i}] must be a dict, got {type(element).__name__}"
                    )
                )
                continue
            if "$ref" not in element:
                out.append(dict(element))
                continue

            name = element["$ref"]
            if name in stack or len(stack) >= MAX_REF_DEPTH:
                cycle = " -> ".join([*stack, str(name)])
                issues.append(ResolutionIssue("circular_ref", team_id, f"circular $ref chain in {section}: {cycle}"))
                continue
            content = self._fragment_section(name, section)
            if content is None:
                issues.append(
                    ResolutionIssue("unknown_fragment", team_id, f"{section}: unknown fragment '{name}'")
                )
                continue
            if not isinstance(content, list):
                issues.append(
                    ResolutionIssue("malformed", team_id, f"fragment '{name}' section '{section}' must be a list")
                )
                continue
            out.extend(self._expand(team_id, section, content, (*stack, name), issues))
        return out

    def _fragment_section(self, name: Any, section: str) -> Any | None:
        if not isinstance(name, str):
            return None
        fragment = self._source.get_fragment(name)
        if fragment is None:
            return None
        if isinstance(fragment, list):
            return fragment
        if isinstance(fragment, dict):
            return fragment.get(section)
        return None
