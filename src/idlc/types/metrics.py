"""TypedDicts for metrics summaries."""

from __future__ import annotations

from typing import TypedDict


class TeamFlowSummary(TypedDict):
    team_id: str
    items: int
    throughput: int
    avg_cycle_time_hours: float | None
    avg_loop_back_rate: float | None
    transitions: int
