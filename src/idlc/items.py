"""Work item records -- current status, sign-offs, criteria flags and history."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from idlc.types.core import HistoryEntryDict, WorkItemDict


@dataclass
class HistoryEntry:
    status: str
    stage: str
    entered_at: datetime
    exited_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.exited_at is None

    def to_dict(self) -> HistoryEntryDict:
        return {
            "status": self.status,
            "stage": self.stage,
            "entered_at": self.entered_at.isoformat(),
            "exited_at": self.exited_at.isoformat() if self.exited_at else None,
        }


@dataclass
class WorkItem:
    """A unit of work moving through a team's lifecycle.

    Owned by whichever system created it; the engine only mutates
    ``status``, ``history``, ``signoffs``, ``criteria``, ``config_version``
    and the bookkeeping fields ``version``/``updated_at``.
    """

    id: str
    team_id: str
    config_version: int
    status: str
    complexity: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    criteria: dict[str, bool] = field(default_factory=dict)
    # stage -> role -> approver identity
    signoffs: dict[str, dict[str, str]] = field(default_factory=dict)
    history: list[HistoryEntry] = field(default_factory=list)
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def current_entry(self) -> HistoryEntry | None:
        if self.history and self.history[-1].is_open:
            return self.history[-1]
        return None

    def previous_status(self) -> str | None:
        """Status held immediately before the current one, if any."""
        if len(self.history) < 2:
            return None
        return self.history[-2].status

    def closed_intervals(self) -> list[HistoryEntry]:
        return [h for h in self.history if not h.is_open]

    def copy(self) -> WorkItem:
        return copy.deepcopy(self)

    def to_dict(self) -> WorkItemDict:
        return {
            "id": self.id,
            "team_id": self.team_id,
            "config_version": self.config_version,
            "status": self.status,
            "complexity": self.complexity,
            "attributes": dict(self.attributes),
            "criteria": dict(self.criteria),
            "signoffs": {stage: dict(roles) for stage, roles in self.signoffs.items()},
            "history": [h.to_dict() for h in self.history],
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
