# src/idlc/engine.py
"""Transition engine -- the authoritative runtime for moving work items.

Every status change goes through ``request_transition``: the edge must be in
the item's bound ResolvedConfig, the departing stage's approval gate must be
satisfied, and hard-enforced exit criteria must be met. Mutation of a single
item is serialized by a per-item lock; a request that cannot get the lock
within ``lock_wait`` fails fast with ConflictError. Subscribers are notified
after the lock is released and before the call returns.
"""

from __future__ import annotations

import logging
import threading
import uuid
import weakref
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from idlc.approvals import GateStatus, check_gate
from idlc.approvals import record_signoff as _record_signoff
from idlc.collaborators import ItemStore, StaleVersionError
from idlc.events import EventDispatcher, TransitionApplied
from idlc.items import HistoryEntry, WorkItem
from idlc.registry import ConfigRegistry
from idlc.schema import NEXT_STAGE, ComplexityLevel, ResolvedConfig, Stage
from idlc.types.workflow import TransitionOptionInfo

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TransitionError(ValueError):
    """Base class for rejected transition requests. Never retried by the engine."""

    def __init__(self, item_id: str, message: str) -> None:
        self.item_id = item_id
        super().__init__(message)


class IllegalTransitionError(TransitionError):
    """The requested edge is not in the item's transition table."""

    def __init__(self, item_id: str, from_status: str, to_status: str, reason: str = "") -> None:
        self.from_status = from_status
        self.to_status = to_status
        detail = f" ({reason})" if reason else ""
        super().__init__(
            item_id,
            f"Transition '{from_status}' -> '{to_status}' is not allowed for item '{item_id}'{detail}. "
            f"Use available_transitions() to see legal targets.",
        )


class ApprovalPendingError(TransitionError):
    """The departing stage requires sign-offs that have not been recorded."""

    def __init__(self, item_id: str, stage: str, missing_roles: frozenset[str]) -> None:
        self.stage = stage
        self.missing_roles = missing_roles
        roles = ", ".join(sorted(missing_roles))
        super().__init__(item_id, f"Item '{item_id}' cannot leave stage '{stage}': awaiting sign-off from {roles}")


class CriteriaUnmetError(TransitionError):
    """A hard-enforced stage has unsatisfied exit criteria."""

    def __init__(self, item_id: str, stage: str, unmet: list[str]) -> None:
        self.stage = stage
        self.unmet = unmet
        super().__init__(
            item_id, f"Item '{item_id}' cannot leave stage '{stage}': unmet exit criteria: {', '.join(unmet)}"
        )


class ConflictError(TransitionError):
    """Another mutation of the same item is in flight, or the stored item changed underneath us."""

    def __init__(self, item_id: str, reason: str = "another transition is in progress") -> None:
        super().__init__(item_id, f"Conflict on item '{item_id}': {reason}")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActorContext:
    """Who is asking. ``depth`` counts nested automation-issued requests."""

    actor: str = "system"
    roles: frozenset[str] = frozenset()
    depth: int = 0


@dataclass(frozen=True)
class TransitionResult:
    item_id: str
    from_status: str
    to_status: str
    requested: str
    skipped_stages: tuple[str, ...]
    warnings: tuple[str, ...]
    event: TransitionApplied
    item: WorkItem


@dataclass(frozen=True)
class TransitionOption:
    """A legal next status with readiness info."""

    to: str
    stage: str
    crosses_stage: bool
    missing_roles: frozenset[str]
    unmet_criteria: tuple[str, ...]

    @property
    def ready(self) -> bool:
        return not self.missing_roles

    def to_dict(self) -> TransitionOptionInfo:
        return {
            "to": self.to,
            "stage": self.stage,
            "crosses_stage": self.crosses_stage,
            "missing_roles": sorted(self.missing_roles),
            "unmet_criteria": list(self.unmet_criteria),
            "ready": self.ready,
        }


# ---------------------------------------------------------------------------
# Stage skipping
# ---------------------------------------------------------------------------


def stage_required(stage: Stage, level: ComplexityLevel | None) -> bool:
    return stage.required or (level is not None and stage.id in level.required_stages)


def stage_skipped(stage: Stage, level: ComplexityLevel | None, attributes: Mapping[str, Any]) -> bool:
    """Whether *stage* is skippable for an item of *level* with *attributes*."""
    if level is not None and stage.id in level.required_stages:
        return False
    if level is not None and stage.id in level.skip_stages:
        return True
    return stage.skip_if is not None and stage.skip_if.matches(attributes)


def _chain_exists(config: ResolvedConfig, start: str, goal: str, via: list[str]) -> bool:
    """Whether *goal* is reachable from *start* stepping only on entry statuses of the *via* stages."""
    waypoints = {s for s in (config.entry_status(stage_id) for stage_id in via) if s is not None}
    frontier = [start]
    seen = {start}
    while frontier:
        current = frontier.pop()
        for nxt in config.destinations(current):
            if nxt == goal:
                return True
            if nxt in waypoints and nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return False


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TransitionEngine:
    """Accepts transition requests and applies them transactionally."""

    def __init__(
        self,
        registry: ConfigRegistry,
        store: ItemStore,
        dispatcher: EventDispatcher,
        *,
        clock: Clock | None = None,
        lock_wait: float = 0.0,
    ) -> None:
        self.registry = registry
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock or _now
        self.lock_wait = lock_wait
        # Entries vanish once no request holds or waits on an item's lock.
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # -- Locking -------------------------------------------------------------

    def _item_lock(self, item_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(item_id)
            if lock is None:
                lock = self._locks[item_id] = threading.Lock()
            return lock

    @contextmanager
    def _locked(self, item_id: str) -> Iterator[None]:
        lock = self._item_lock(item_id)
        acquired = lock.acquire(timeout=self.lock_wait) if self.lock_wait > 0 else lock.acquire(blocking=False)
        if not acquired:
            logger.info("Conflict: item %s is busy", item_id, extra={"item": item_id})
            raise ConflictError(item_id)
        try:
            yield
        finally:
            lock.release()

    def _save(self, updated: WorkItem, expected_version: int) -> WorkItem:
        try:
            return self.store.save_item(updated, expected_version=expected_version)
        except StaleVersionError as exc:
            raise ConflictError(updated.id, str(exc)) from exc

    def _config_for(self, item: WorkItem) -> ResolvedConfig:
        return self.registry.get_version(item.team_id, item.config_version)

    # -- Creation --------------------------------------------------------------

    def create_item(
        self,
        team_id: str,
        *,
        item_id: str | None = None,
        complexity: str | None = None,
        weight: float | None = None,
        attributes: dict[str, Any] | None = None,
        actor: ActorContext | str | None = None,
    ) -> WorkItem:
        """Create an item bound to the team's active config, at its initial status.

        ``complexity`` names a level explicitly; otherwise ``weight`` selects the
        level whose points range contains it.

        Raises:
            KeyError: If the team has no active config.
            ValueError: If the complexity level is unknown.
        """
        ctx = _actor(actor)
        config = self.registry.active(team_id)
        if complexity is not None and config.get_complexity(complexity) is None:
            msg = f"Unknown complexity level '{complexity}' for team '{team_id}'"
            raise ValueError(msg)
        if complexity is None and weight is not None:
            level = config.complexity_for_weight(weight)
            complexity = level.id if level is not None else None

        now = self.clock()
        initial = config.initial_status
        stage = config.stage_of(initial)
        item = WorkItem(
            id=item_id or uuid.uuid4().hex[:12],
            team_id=team_id,
            config_version=config.version,
            status=initial,
            complexity=complexity,
            attributes=dict(attributes or {}),
            history=[HistoryEntry(status=initial, stage=stage.id, entered_at=now)],
            created_at=now,
            updated_at=now,
        )
        item = self.store.create_item(item)
        logger.info("Created item %s for team %s at '%s'", item.id, team_id, initial, extra={"item": item.id})

        self.dispatcher.publish(
            TransitionApplied(
                item_id=item.id,
                team_id=team_id,
                config_version=config.version,
                from_status=None,
                to_status=initial,
                from_stage=None,
                to_stage=stage.id,
                actor=ctx.actor,
                occurred_at=now,
                depth=ctx.depth,
            )
        )
        return item

    # -- Transitions -----------------------------------------------------------

    def request_transition(
        self,
        item_id: str,
        target: str,
        actor: ActorContext | str | None = None,
    ) -> TransitionResult:
        """Move *item_id* to *target* (a status id or ``@next``).

        Raises:
            KeyError: If the item does not exist.
            IllegalTransitionError: If the edge is not in the transition table.
            ApprovalPendingError: If the departing stage's gate is not satisfied.
            CriteriaUnmetError: If a hard-enforced stage has unmet exit criteria.
            ConflictError: If the item is busy or changed concurrently.
        """
        ctx = _actor(actor)
        with self._locked(item_id):
            item = self.store.load_item(item_id)
            config = self._config_for(item)
            to_status, skipped = self._plan(item, config, target)

            from_stage = config.stage_of(item.status)
            to_stage = config.stage_of(to_status)
            warnings: list[str] = []
            if from_stage.id != to_stage.id:
                gate = check_gate(config.get_complexity(item.complexity), from_stage.id, item.signoffs)
                if not gate.satisfied:
                    raise ApprovalPendingError(item_id, from_stage.id, gate.missing_roles)
                unmet = [c for c in from_stage.exit_criteria if not item.criteria.get(c)]
                if unmet and from_stage.enforcement == "hard":
                    raise CriteriaUnmetError(item_id, from_stage.id, unmet)
                if unmet:
                    warnings.append(f"Leaving stage '{from_stage.id}' with unmet exit criteria: {', '.join(unmet)}")
                pending_entry = [c for c in to_stage.entry_criteria if not item.criteria.get(c)]
                if pending_entry:
                    warnings.append(
                        f"Entering stage '{to_stage.id}' with unmet entry criteria: {', '.join(pending_entry)}"
                    )

            now = self.clock()
            updated = item.copy()
            if updated.current_entry is not None:
                updated.current_entry.exited_at = now
            updated.history.append(HistoryEntry(status=to_status, stage=to_stage.id, entered_at=now))
            updated.status = to_status
            updated.updated_at = now
            saved = self._save(updated, item.version)

        event = TransitionApplied(
            item_id=item_id,
            team_id=item.team_id,
            config_version=item.config_version,
            from_status=item.status,
            to_status=to_status,
            from_stage=from_stage.id,
            to_stage=to_stage.id,
            actor=ctx.actor,
            occurred_at=now,
            depth=ctx.depth,
        )
        logger.info(
            "Item %s: %s -> %s (actor=%s)",
            item_id,
            item.status,
            to_status,
            ctx.actor,
            extra={"item": item_id},
        )
        self.dispatcher.publish(event)
        return TransitionResult(
            item_id=item_id,
            from_status=item.status,
            to_status=to_status,
            requested=target,
            skipped_stages=tuple(skipped),
            warnings=tuple(warnings),
            event=event,
            item=saved,
        )

    def _plan(self, item: WorkItem, config: ResolvedConfig, target: str) -> tuple[str, list[str]]:
        """Resolve *target* to a concrete status and check legality."""
        if target != NEXT_STAGE:
            if config.get_status(target) is None:
                raise IllegalTransitionError(item.id, item.status, target, "unknown status")
            if not config.is_legal(item.status, target):
                raise IllegalTransitionError(item.id, item.status, target)
            return target, []

        level = config.get_complexity(item.complexity)
        current = config.stage_of(item.status)
        skipped: list[str] = []
        passed: list[str] = []
        destination: str | None = None
        for stage in config.stages[config.stage_position(current.id) + 1 :]:
            if not stage_required(stage, level):
                passed.append(stage.id)
                continue
            if stage_skipped(stage, level, item.attributes):
                skipped.append(stage.id)
                passed.append(stage.id)
                continue
            destination = config.entry_status(stage.id)
            break
        if destination is None:
            raise IllegalTransitionError(item.id, item.status, NEXT_STAGE, "no next required stage")

        if config.is_legal(item.status, destination):
            return destination, skipped
        # Otherwise a chain through the entry statuses of the stages passed over must exist.
        if _chain_exists(config, item.status, destination, passed):
            logger.debug("Item %s skips stages %s", item.id, skipped, extra={"item": item.id})
            return destination, skipped
        raise IllegalTransitionError(item.id, item.status, destination)

    def available_transitions(self, item_id: str) -> list[TransitionOption]:
        """Legal next statuses for an item with gate readiness."""
        item = self.store.load_item(item_id)
        config = self._config_for(item)
        current_stage = config.stage_of(item.status)
        gate = check_gate(config.get_complexity(item.complexity), current_stage.id, item.signoffs)
        unmet = tuple(c for c in current_stage.exit_criteria if not item.criteria.get(c))
        options: list[TransitionOption] = []
        for dest in sorted(config.destinations(item.status)):
            stage = config.stage_of(dest)
            crosses = stage.id != current_stage.id
            options.append(
                TransitionOption(
                    to=dest,
                    stage=stage.id,
                    crosses_stage=crosses,
                    missing_roles=gate.missing_roles if crosses else frozenset(),
                    unmet_criteria=unmet if crosses else (),
                )
            )
        return options

    # -- Sign-offs and criteria -----------------------------------------------

    def gate_status(self, item_id: str, stage_id: str | None = None) -> GateStatus:
        item = self.store.load_item(item_id)
        config = self._config_for(item)
        stage = stage_id or config.stage_of(item.status).id
        return check_gate(config.get_complexity(item.complexity), stage, item.signoffs)

    def record_signoff(self, item_id: str, stage_id: str, role: str, approver: str) -> GateStatus:
        """Record a sign-off. Recording an already signed-off role is a no-op.

        Raises:
            KeyError: If the item or stage is unknown.
            ConflictError: If the item is busy.
        """
        with self._locked(item_id):
            item = self.store.load_item(item_id)
            config = self._config_for(item)
            if config.get_stage(stage_id) is None:
                msg = f"Unknown stage '{stage_id}' for team '{item.team_id}'"
                raise KeyError(msg)
            updated = item.copy()
            if _record_signoff(updated.signoffs, stage_id, role, approver):
                updated.updated_at = self.clock()
                item = self._save(updated, item.version)
                logger.info("Sign-off: item %s stage %s role %s by %s", item_id, stage_id, role, approver)
            else:
                logger.debug("Sign-off for %s/%s/%s already recorded", item_id, stage_id, role)
        return check_gate(config.get_complexity(item.complexity), stage_id, item.signoffs)

    def set_criterion(self, item_id: str, criterion: str, satisfied: bool = True) -> WorkItem:
        """Record an externally evaluated entry/exit criterion flag."""
        with self._locked(item_id):
            item = self.store.load_item(item_id)
            if item.criteria.get(criterion) == satisfied:
                return item
            updated = item.copy()
            updated.criteria[criterion] = satisfied
            updated.updated_at = self.clock()
            return self._save(updated, item.version)

    # -- Migration ----------------------------------------------------------------

    def migrate_item(self, item_id: str, version: int | None = None) -> WorkItem:
        """Rebind an item to another config version (default: the team's active one).

        Raises:
            IllegalTransitionError: If the item's status does not exist in the target version.
        """
        with self._locked(item_id):
            item = self.store.load_item(item_id)
            target = (
                self.registry.active(item.team_id)
                if version is None
                else self.registry.get_version(item.team_id, version)
            )
            if target.version == item.config_version:
                return item
            if target.get_status(item.status) is None:
                raise IllegalTransitionError(
                    item_id, item.status, item.status, f"status missing from config version {target.version}"
                )
            updated = item.copy()
            updated.config_version = target.version
            if updated.complexity is not None and target.get_complexity(updated.complexity) is None:
                logger.warning(
                    "Item %s: complexity '%s' not in version %d, clearing",
                    item_id,
                    updated.complexity,
                    target.version,
                )
                updated.complexity = None
            updated.updated_at = self.clock()
            saved = self._save(updated, item.version)
        logger.info("Migrated item %s to config version %d", item_id, target.version, extra={"item": item_id})
        return saved

    def close(self) -> None:
        with self._locks_guard:
            self._locks.clear()


def _actor(actor: ActorContext | str | None) -> ActorContext:
    if actor is None:
        return ActorContext()
    if isinstance(actor, str):
        return ActorContext(actor=actor)
    return actor
