"""Automation engine -- immediate rules and duration-gated watches.

Immediate rules run their actions as soon as a matching event arrives.
Deferred rules (those with a ``duration``) arm a watch keyed by
``(item, rule)``. The evaluator promotes a watch once its duration has
elapsed with the item still in the armed status; a ``break_on`` event
disarms it and runs ``on_break`` exactly once.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from idlc.actions import ActionContext, ActionOutcome, ActionRunner
from idlc.events import KNOWN_EVENT_TYPES, Event, ExternalEvent, TransitionApplied
from idlc.schema import Action, AutomationRule, ResolvedConfig

if TYPE_CHECKING:
    from idlc.collaborators import ItemStore
    from idlc.engine import Clock
    from idlc.registry import ConfigRegistry

logger = logging.getLogger(__name__)

TickHook = Callable[[datetime], object]


@dataclass(frozen=True)
class Watch:
    """An armed deferred rule for one item."""

    item_id: str
    team_id: str
    rule_id: str
    config_version: int
    armed_status: str
    armed_at: datetime
    due_at: datetime
    trigger: Event

    @property
    def key(self) -> tuple[str, str]:
        return (self.item_id, self.rule_id)


@dataclass(frozen=True)
class FiredWatch:
    watch: Watch
    outcomes: tuple[ActionOutcome, ...]


@dataclass
class _RuleTable:
    """Rules of one ResolvedConfig indexed by trigger."""

    immediate: dict[str, list[AutomationRule]] = field(default_factory=dict)
    deferred: dict[str, list[AutomationRule]] = field(default_factory=dict)
    by_id: dict[str, AutomationRule] = field(default_factory=dict)

    @classmethod
    def build(cls, config: ResolvedConfig) -> _RuleTable:
        table = cls()
        for rule in config.rules:
            target = table.deferred if rule.deferred else table.immediate
            target.setdefault(rule.trigger, []).append(rule)
            table.by_id[rule.id] = rule
        return table


def _matches(rule: AutomationRule, event: Event, current_status: str) -> bool:
    if isinstance(event, TransitionApplied):
        if rule.to_status is not None and rule.to_status != event.to_status:
            return False
        return not rule.from_statuses or event.from_status in rule.from_statuses
    return not rule.from_statuses or current_status in rule.from_statuses


class AutomationEngine:
    """Consumes lifecycle and external events; arms, breaks and promotes watches."""

    def __init__(
        self,
        registry: ConfigRegistry,
        store: ItemStore,
        runner: ActionRunner,
        *,
        clock: Clock | None = None,
        tick_interval: float = 30.0,
        max_cascade_depth: int = 8,
    ) -> None:
        self.registry = registry
        self.store = store
        self.runner = runner
        self.clock = clock or runner.engine.clock
        self.tick_interval = tick_interval
        self.max_cascade_depth = max_cascade_depth
        self._lock = threading.Lock()
        self._watches: dict[tuple[str, str], Watch] = {}
        self._tables: dict[tuple[str, int], _RuleTable] = {}
        self._tick_hooks: list[TickHook] = []
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -- Rule tables -------------------------------------------------------------

    def _table(self, team_id: str, version: int) -> _RuleTable:
        key = (team_id, version)
        with self._lock:
            table = self._tables.get(key)
        if table is None:
            table = _RuleTable.build(self.registry.get_version(team_id, version))
            with self._lock:
                self._tables.setdefault(key, table)
        return table

    # -- Event intake ------------------------------------------------------------

    def handle_event(self, event: Event) -> None:
        """Dispatcher subscriber: route one event through watches and rules."""
        if event.depth > self.max_cascade_depth:
            logger.warning(
                "Dropping %s event for item %s: automation cascade depth %d exceeds %d",
                event.type,
                event.item_id,
                event.depth,
                self.max_cascade_depth,
                extra={"item": event.item_id, "event": event.type},
            )
            return
        if isinstance(event, TransitionApplied):
            self._on_transition(event)
        else:
            self._on_external(event)

    def ingest(self, event: ExternalEvent) -> None:
        """Entry point for external events (metric samples, webhooks, alerts)."""
        if event.item_id is None and event.team_id is None:
            logger.warning("Ignoring %s event with neither item nor team", event.type, extra={"event": event.type})
            return
        if event.type not in KNOWN_EVENT_TYPES:
            logger.debug("Ingesting custom event type %s", event.type)
        if event.occurred_at is None:
            event = dataclasses.replace(event, occurred_at=self.clock())
        self.handle_event(event)

    def _on_transition(self, event: TransitionApplied) -> None:
        # Leaving the armed status disarms silently.
        with self._lock:
            stale = [
                key
                for key, w in self._watches.items()
                if w.item_id == event.item_id and w.armed_status != event.to_status
            ]
            for key in stale:
                del self._watches[key]
        for _, rule_id in stale:
            logger.info(
                "Disarmed watch %s for item %s: left armed status",
                rule_id,
                event.item_id,
                extra={"item": event.item_id, "rule": rule_id},
            )

        table = self._table(event.team_id, event.config_version)
        for rule in table.deferred.get("transition", []):
            if _matches(rule, event, event.to_status):
                self._arm(
                    rule, event, event.item_id, event.team_id, event.to_status, event.config_version, replace=True
                )
        for rule in table.immediate.get("transition", []):
            if _matches(rule, event, event.to_status):
                self._run(rule, rule.actions, event.item_id, event.team_id, event)

    def _on_external(self, event: ExternalEvent) -> None:
        if event.item_id is None:
            # Team-wide events only break watches; rule triggers need an item.
            self._break(event, lambda w: w.team_id == event.team_id)
            return
        try:
            item = self.store.load_item(event.item_id)
        except KeyError:
            logger.warning(
                "Ignoring %s event for unknown item %s", event.type, event.item_id, extra={"item": event.item_id}
            )
            return

        self._break(event, lambda w: w.item_id == item.id)

        table = self._table(item.team_id, item.config_version)
        for rule in table.deferred.get(event.type, []):
            if _matches(rule, event, item.status):
                self._arm(rule, event, item.id, item.team_id, item.status, item.config_version, replace=False)
        for rule in table.immediate.get(event.type, []):
            if _matches(rule, event, item.status):
                self._run(rule, rule.actions, item.id, item.team_id, event)

    # -- Watches -----------------------------------------------------------------

    def _arm(
        self,
        rule: AutomationRule,
        event: Event,
        item_id: str,
        team_id: str,
        status: str,
        version: int,
        *,
        replace: bool,
    ) -> None:
        if rule.duration is None:
            msg = f"Rule '{rule.id}' has no duration and cannot arm a watch"
            raise RuntimeError(msg)
        now = event.occurred_at or self.clock()
        watch = Watch(
            item_id=item_id,
            team_id=team_id,
            rule_id=rule.id,
            config_version=version,
            armed_status=status,
            armed_at=now,
            due_at=now + timedelta(seconds=rule.duration),
            trigger=event,
        )
        with self._lock:
            existing = self._watches.get(watch.key)
            if existing is not None and not replace:
                return
            self._watches[watch.key] = watch
        logger.info(
            "Armed watch %s for item %s in '%s' until %s",
            rule.id,
            item_id,
            status,
            watch.due_at.isoformat(),
            extra={"item": item_id, "rule": rule.id},
        )

    def _break(self, event: ExternalEvent, selector: Callable[[Watch], bool]) -> None:
        broken: list[tuple[Watch, AutomationRule]] = []
        with self._lock:
            for key, watch in list(self._watches.items()):
                if not selector(watch):
                    continue
                rule = self._rule_for(watch)
                if rule is None or event.type not in rule.break_on:
                    continue
                del self._watches[key]
                broken.append((watch, rule))
        for watch, rule in broken:
            logger.info(
                "Watch %s for item %s broken by %s",
                rule.id,
                watch.item_id,
                event.type,
                extra={"item": watch.item_id, "rule": rule.id, "event": event.type},
            )
            self._run(rule, rule.on_break, watch.item_id, watch.team_id, event)

    def _rule_for(self, watch: Watch) -> AutomationRule | None:
        # Caller holds self._lock; tables for armed watches are always built.
        table = self._tables.get((watch.team_id, watch.config_version))
        return table.by_id.get(watch.rule_id) if table is not None else None

    def armed_watches(self, item_id: str | None = None) -> list[Watch]:
        with self._lock:
            watches = [w for w in self._watches.values() if item_id is None or w.item_id == item_id]
        return sorted(watches, key=lambda w: (w.due_at, w.item_id, w.rule_id))

    def disarm(self, item_id: str, rule_id: str | None = None) -> int:
        """Remove watches for an item (optionally one rule). Returns how many were removed."""
        with self._lock:
            keys = [k for k in self._watches if k[0] == item_id and (rule_id is None or k[1] == rule_id)]
            for key in keys:
                del self._watches[key]
        return len(keys)

    # -- Evaluator ---------------------------------------------------------------

    def add_tick_hook(self, hook: TickHook) -> None:
        self._tick_hooks.append(hook)

    def tick(self, now: datetime | None = None) -> list[FiredWatch]:
        """Promote every watch whose duration has elapsed."""
        now = now or self.clock()
        with self._lock:
            due = [w for w in self._watches.values() if w.due_at <= now]
            for watch in due:
                del self._watches[watch.key]

        fired: list[FiredWatch] = []
        for watch in sorted(due, key=lambda w: w.due_at):
            try:
                item = self.store.load_item(watch.item_id)
            except KeyError:
                logger.warning("Discarding watch %s: item %s no longer exists", watch.rule_id, watch.item_id)
                continue
            if item.status != watch.armed_status:
                logger.info(
                    "Discarding watch %s for item %s: no longer in '%s'",
                    watch.rule_id,
                    watch.item_id,
                    watch.armed_status,
                    extra={"item": watch.item_id, "rule": watch.rule_id},
                )
                continue
            with self._lock:
                rule = self._rule_for(watch)
            if rule is None:
                continue
            logger.info(
                "Watch %s for item %s elapsed; running %d action(s)",
                rule.id,
                watch.item_id,
                len(rule.actions),
                extra={"item": watch.item_id, "rule": rule.id},
            )
            outcomes = self._run(rule, rule.actions, watch.item_id, watch.team_id, watch.trigger)
            fired.append(FiredWatch(watch=watch, outcomes=tuple(outcomes)))

        for hook in list(self._tick_hooks):
            try:
                hook(now)
            except Exception:
                logger.exception("Tick hook %r failed", hook)
        return fired

    def _run(
        self,
        rule: AutomationRule,
        actions: tuple[Action, ...],
        item_id: str,
        team_id: str,
        event: Event,
    ) -> list[ActionOutcome]:
        if not actions:
            return []
        ctx = ActionContext(rule_id=rule.id, item_id=item_id, team_id=team_id, event=event, depth=event.depth)
        return self.runner.run_all(actions, ctx)

    # -- Background loop -----------------------------------------------------------

    def start(self) -> None:
        """Run ``tick`` every ``tick_interval`` seconds on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Automation evaluator already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="idlc-evaluator", daemon=True)
        self._thread.start()
        logger.info("Automation evaluator started (interval %.1fs)", self.tick_interval)

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Automation evaluator stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop_event.wait(timeout=self.tick_interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Automation tick failed")

    def close(self) -> None:
        self.stop()
        with self._lock:
            self._watches.clear()
            self._tables.clear()
