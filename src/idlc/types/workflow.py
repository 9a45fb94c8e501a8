"""TypedDicts for resolved config descriptions and transition options."""

from __future__ import annotations

from typing import TypedDict


class StageInfo(TypedDict):
    id: str
    name: str
    required: bool
    terminal: bool


class StatusInfo(TypedDict):
    id: str
    stage_id: str
    name: str


class ResolvedConfigInfo(TypedDict):
    """Full resolved config description returned by ``describe_config()``."""

    team_id: str
    version: int
    name: str
    initial_status: str
    stages: list[StageInfo]
    statuses: list[StatusInfo]
    edges: dict[str, list[str]]
    rules: list[str]
    warnings: list[str]


class TransitionOptionInfo(TypedDict):
    to: str
    stage: str
    crosses_stage: bool
    missing_roles: list[str]
    unmet_criteria: list[str]
    ready: bool
