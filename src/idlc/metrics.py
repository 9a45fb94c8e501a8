"""Flow metrics for idlc -- cycle time, stage durations, loop-back rate.

Derived purely from TransitionApplied events. Threshold breaches are
delivered as ``metric_alert`` events to an alert sink (normally the
automation engine's external input); this module never acts on them.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING

from idlc.events import Event, ExternalEvent, TransitionApplied
from idlc.schema import MetricThreshold
from idlc.types.metrics import TeamFlowSummary

if TYPE_CHECKING:
    from idlc.engine import Clock
    from idlc.registry import ConfigRegistry

logger = logging.getLogger(__name__)

AlertSink = Callable[[ExternalEvent], None]


def _hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


@dataclass
class _Visit:
    stage: str
    entered_at: datetime
    exited_at: datetime | None = None


@dataclass
class _ItemTrack:
    team_id: str
    config_version: int
    created_at: datetime
    visits: list[_Visit] = field(default_factory=list)
    transitions: int = 0
    loop_backs: int = 0
    completed_at: datetime | None = None

    @property
    def current(self) -> _Visit | None:
        if self.visits and self.visits[-1].exited_at is None:
            return self.visits[-1]
        return None


class MetricsCollector:
    """Maintains per-item stage timelines and per-team transition counts."""

    def __init__(
        self,
        registry: ConfigRegistry,
        *,
        clock: Clock | None = None,
        alert_sink: AlertSink | None = None,
    ) -> None:
        self.registry = registry
        self.clock = clock or (lambda: datetime.now(UTC))
        self._alert_sink = alert_sink
        self._lock = threading.Lock()
        self._items: dict[str, _ItemTrack] = {}
        self._counts: dict[str, Counter[tuple[str, str]]] = {}
        self._alerted: set[tuple[str, str, int]] = set()

    def set_alert_sink(self, sink: AlertSink | None) -> None:
        self._alert_sink = sink

    # -- Intake --------------------------------------------------------------------

    def handle_event(self, event: Event) -> None:
        """Dispatcher subscriber. Only TransitionApplied events are tracked."""
        if not isinstance(event, TransitionApplied):
            return
        terminal = self._is_terminal(event.team_id, event.config_version, event.to_stage)
        with self._lock:
            track = self._items.get(event.item_id)
            if event.from_status is None or track is None:
                track = _ItemTrack(
                    team_id=event.team_id, config_version=event.config_version, created_at=event.occurred_at
                )
                track.visits.append(_Visit(event.to_stage, event.occurred_at))
                self._items[event.item_id] = track
                if event.from_status is None:
                    return
            track.config_version = event.config_version
            track.transitions += 1
            self._counts.setdefault(event.team_id, Counter())[(event.from_status, event.to_status)] += 1
            if event.from_stage != event.to_stage:
                visited = {v.stage for v in track.visits}
                current = track.current
                if current is not None:
                    current.exited_at = event.occurred_at
                if event.to_stage in visited:
                    track.loop_backs += 1
                track.visits.append(_Visit(event.to_stage, event.occurred_at))
            if terminal and track.completed_at is None:
                track.completed_at = event.occurred_at
        self.check_thresholds(event.occurred_at, item_ids=[event.item_id], depth=event.depth)

    def _is_terminal(self, team_id: str, version: int, stage_id: str) -> bool:
        try:
            stage = self.registry.get_version(team_id, version).get_stage(stage_id)
        except KeyError:
            return False
        return stage is not None and stage.terminal

    def _track(self, item_id: str) -> _ItemTrack:
        track = self._items.get(item_id)
        if track is None:
            msg = f"No metrics recorded for item: {item_id}"
            raise KeyError(msg)
        return track

    # -- Queries -------------------------------------------------------------------

    def cycle_time(self, item_id: str) -> float | None:
        """Hours from creation to first entry into a terminal stage, or None if not finished."""
        with self._lock:
            track = self._track(item_id)
            if track.completed_at is None:
                return None
            return _hours(track.created_at, track.completed_at)

    def stage_durations(self, item_id: str, now: datetime | None = None) -> dict[str, float]:
        """Hours spent per stage; the open visit counts up to *now*."""
        now = now or self.clock()
        durations: dict[str, float] = {}
        with self._lock:
            for visit in self._track(item_id).visits:
                end = visit.exited_at or now
                durations[visit.stage] = durations.get(visit.stage, 0.0) + _hours(visit.entered_at, end)
        return durations

    def loop_back_rate(self, item_id: str) -> float:
        """Fraction of an item's transitions that re-entered a previously visited stage."""
        with self._lock:
            track = self._track(item_id)
            if track.transitions == 0:
                return 0.0
            return track.loop_backs / track.transitions

    def transition_counts(self, team_id: str) -> MappingProxyType[tuple[str, str], int]:
        with self._lock:
            return MappingProxyType(dict(self._counts.get(team_id, {})))

    def team_summary(self, team_id: str) -> TeamFlowSummary:
        with self._lock:
            tracks = [t for t in self._items.values() if t.team_id == team_id]
            cycle_times = [_hours(t.created_at, t.completed_at) for t in tracks if t.completed_at is not None]
            rates = [t.loop_backs / t.transitions for t in tracks if t.transitions]
            transitions = sum(self._counts.get(team_id, Counter()).values())
        return TeamFlowSummary(
            team_id=team_id,
            items=len(tracks),
            throughput=len(cycle_times),
            avg_cycle_time_hours=round(sum(cycle_times) / len(cycle_times), 2) if cycle_times else None,
            avg_loop_back_rate=round(sum(rates) / len(rates), 3) if rates else None,
            transitions=transitions,
        )

    # -- Thresholds ----------------------------------------------------------------

    def check_thresholds(
        self,
        now: datetime | None = None,
        *,
        item_ids: list[str] | None = None,
        depth: int = 0,
    ) -> list[ExternalEvent]:
        """Compare tracked metrics with configured thresholds and emit alerts.

        Each (item, threshold, stage visit) alerts at most once. Alerts go to
        the alert sink, if one is set, and are also returned.
        """
        now = now or self.clock()
        alerts: list[ExternalEvent] = []
        with self._lock:
            candidates = [(i, self._items[i]) for i in (item_ids or list(self._items)) if i in self._items]
        for item_id, track in candidates:
            try:
                thresholds = self.registry.get_version(track.team_id, track.config_version).thresholds
            except KeyError:
                continue
            for threshold in thresholds:
                alert = self._evaluate(item_id, track, threshold, now, depth)
                if alert is not None:
                    alerts.append(alert)

        sink = self._alert_sink
        for alert in alerts:
            logger.info(
                "Metric alert %s for item %s: %s",
                alert.payload["threshold"],
                alert.item_id,
                alert.payload["value"],
                extra={"item": alert.item_id, "event": alert.type},
            )
            if sink is None:
                continue
            try:
                sink(alert)
            except Exception:
                logger.exception("Alert sink failed for item %s", alert.item_id)
        return alerts

    def _evaluate(
        self, item_id: str, track: _ItemTrack, threshold: MetricThreshold, now: datetime, depth: int
    ) -> ExternalEvent | None:
        with self._lock:
            if threshold.metric == "stage_duration":
                current = track.current
                if current is None or current.stage != threshold.stage:
                    return None
                value = _hours(current.entered_at, now)
                visit = len(track.visits) - 1
            elif threshold.metric == "cycle_time":
                if track.completed_at is not None:
                    return None
                value = _hours(track.created_at, now)
                visit = 0
            else:
                if not track.transitions:
                    return None
                value = track.loop_backs / track.transitions
                # A new loop-back re-arms the alert.
                visit = track.loop_backs
            if value <= threshold.threshold:
                return None
            key = (item_id, threshold.id, visit)
            if key in self._alerted:
                return None
            self._alerted.add(key)
        return ExternalEvent(
            type="metric_alert",
            item_id=item_id,
            team_id=track.team_id,
            payload=MappingProxyType(
                {
                    "threshold": threshold.id,
                    "metric": threshold.metric,
                    "stage": threshold.stage,
                    "value": round(value, 3),
                    "limit": threshold.threshold,
                }
            ),
            occurred_at=now,
            depth=depth,
        )
