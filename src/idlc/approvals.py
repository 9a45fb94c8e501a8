"""Approval gate tracking.

Gate status is a pure function of (complexity level, stage, recorded
sign-offs). Sign-offs live on the work item as ``stage -> role -> approver``;
recording a role that is already present is a no-op.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from idlc.schema import ComplexityLevel


@dataclass(frozen=True)
class GateStatus:
    stage: str
    required_roles: frozenset[str]
    missing_roles: frozenset[str]

    @property
    def satisfied(self) -> bool:
        return not self.missing_roles


def required_roles(level: ComplexityLevel | None, stage_id: str) -> frozenset[str]:
    if level is None:
        return frozenset()
    return level.approval_roles(stage_id)


def check_gate(
    level: ComplexityLevel | None,
    stage_id: str,
    signoffs: Mapping[str, Mapping[str, str]],
) -> GateStatus:
    """Evaluate the exit gate of *stage_id* against recorded sign-offs."""
    required = required_roles(level, stage_id)
    recorded = set(signoffs.get(stage_id, {}))
    return GateStatus(stage=stage_id, required_roles=required, missing_roles=required - recorded)


def record_signoff(
    signoffs: dict[str, dict[str, str]],
    stage_id: str,
    role: str,
    approver: str,
) -> bool:
    """Record *approver*'s sign-off for *role* on *stage_id*.

    Returns True if a new sign-off was recorded, False if the role was
    already signed off (the existing approver is kept).
    """
    roles = signoffs.setdefault(stage_id, {})
    if role in roles:
        return False
    roles[role] = approver
    return True
