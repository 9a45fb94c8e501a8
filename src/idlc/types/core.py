"""TypedDicts for work item serialization."""

from __future__ import annotations

from typing import Any, TypeAlias, TypedDict

ISOTimestamp: TypeAlias = str


class HistoryEntryDict(TypedDict):
    status: str
    stage: str
    entered_at: ISOTimestamp
    exited_at: ISOTimestamp | None


class WorkItemDict(TypedDict):
    """Shape returned by ``WorkItem.to_dict()``."""

    id: str
    team_id: str
    config_version: int
    status: str
    complexity: str | None
    attributes: dict[str, Any]
    criteria: dict[str, bool]
    signoffs: dict[str, dict[str, str]]
    history: list[HistoryEntryDict]
    version: int
    created_at: ISOTimestamp | None
    updated_at: ISOTimestamp | None
