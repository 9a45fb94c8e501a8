"""Lifecycle events and the bounded-time subscriber dispatcher.

Subscribers of a top-level event run on a worker pool. ``publish`` waits at
most ``timeout`` seconds for all of them; a subscriber that is still running
afterwards is abandoned (left to finish in the background) and logged, and a
subscriber that raises is logged. Neither outcome reaches the publisher.

Events issued by automation (``depth > 0``) are published from inside an
automation action that is already time-bounded, so they are delivered inline
on the publishing thread, in subscription order. A cascade therefore holds
at most one dispatcher worker however deep it goes.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, TypeAlias

logger = logging.getLogger(__name__)

# Event types fed in by the clock/event source boundary.
KNOWN_EVENT_TYPES: frozenset[str] = frozenset(
    {"metrics_healthy", "alert_fired", "pr_created", "pr_merged", "blocked", "metric_alert"}
)


@dataclass(frozen=True)
class TransitionApplied:
    """Emitted after a status change is persisted. ``from_status`` is None on creation."""

    item_id: str
    team_id: str
    config_version: int
    from_status: str | None
    to_status: str
    from_stage: str | None
    to_stage: str
    actor: str
    occurred_at: datetime
    depth: int = 0

    @property
    def type(self) -> str:
        return "transition"


@dataclass(frozen=True)
class ExternalEvent:
    """An event from outside the engine (metric samples, webhooks, alerts)."""

    type: str
    item_id: str | None = None
    team_id: str | None = None
    payload: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    occurred_at: datetime | None = None
    depth: int = 0


Event: TypeAlias = TransitionApplied | ExternalEvent
Subscriber: TypeAlias = Callable[[Event], None]


class EventDispatcher:
    """Fan-out of events to subscribers with a per-publish time budget."""

    def __init__(self, *, timeout: float = 5.0, max_workers: int = 8) -> None:
        self.timeout = timeout
        self._subscribers: list[tuple[str, Subscriber]] = []
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="idlc-dispatch")
        self._closed = False

    def subscribe(self, subscriber: Subscriber, *, name: str | None = None) -> None:
        label = name or getattr(subscriber, "__qualname__", repr(subscriber))
        with self._lock:
            self._subscribers.append((label, subscriber))
        logger.debug("Subscribed %s", label)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers = [(n, s) for n, s in self._subscribers if s != subscriber]

    def publish(self, event: Event) -> None:
        """Deliver *event* to every subscriber, waiting at most ``timeout`` seconds."""
        with self._lock:
            if self._closed:
                logger.debug("Dispatcher closed; dropping %s event", event.type)
                return
            subscribers = list(self._subscribers)
        if not subscribers:
            return
        if event.depth > 0:
            for name, subscriber in subscribers:
                try:
                    subscriber(event)
                except Exception as exc:
                    _log_failure(name, event, exc)
            return

        started = time.perf_counter()
        futures: dict[Future[None], str] = {}
        for name, subscriber in subscribers:
            futures[self._executor.submit(subscriber, event)] = name

        done, pending = wait(futures, timeout=self.timeout)
        for fut in done:
            exc = fut.exception()
            if exc is not None:
                _log_failure(futures[fut], event, exc)
        for fut in pending:
            logger.warning(
                "Subscriber %s exceeded %.2fs budget on %s event; abandoned",
                futures[fut],
                self.timeout,
                event.type,
                extra={"event": event.type, "duration_ms": round((time.perf_counter() - started) * 1000, 1)},
            )

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._subscribers.clear()
        self._executor.shutdown(wait=False, cancel_futures=True)


def _log_failure(name: str, event: Event, exc: BaseException) -> None:
    logger.warning(
        "Subscriber %s failed on %s event",
        name,
        event.type,
        exc_info=exc,
        extra={"event": event.type, "error": str(exc)},
    )
