# src/idlc/core.py
"""Lifecycle -- wires the registry, engine, automation and metrics together.

Convenience front door for embedding::

    with Lifecycle.from_project() as lc:
        item = lc.engine.create_item("platform", complexity="small")
        lc.engine.request_transition(item.id, "@next", actor="alice")

The components remain individually usable; this class only owns their
construction, event wiring and shutdown order.
"""

from __future__ import annotations

import logging
from pathlib import Path

from idlc.actions import ActionRunner
from idlc.automation import AutomationEngine
from idlc.collaborators import (
    ConfigSource,
    DocumentStore,
    InMemoryDocuments,
    InMemoryGraph,
    InMemoryNotifier,
    InMemoryStore,
    InMemoryTracker,
    ItemStore,
    KnowledgeGraph,
    Notifier,
    Tracker,
)
from idlc.config import DEFAULT_SETTINGS, EngineSettings, find_idlc_root, read_config
from idlc.engine import Clock, TransitionEngine
from idlc.events import EventDispatcher, ExternalEvent
from idlc.logging import setup_logging
from idlc.metrics import MetricsCollector
from idlc.registry import ConfigRegistry, DirectoryConfigSource
from idlc.schema import ResolvedConfig

logger = logging.getLogger(__name__)


class Lifecycle:
    """A fully wired lifecycle runtime serving many teams."""

    def __init__(
        self,
        source: ConfigSource,
        *,
        store: ItemStore | None = None,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
        graph: KnowledgeGraph | None = None,
        notifier: Notifier | None = None,
        documents: DocumentStore | None = None,
        tracker: Tracker | None = None,
    ) -> None:
        self.settings = settings or DEFAULT_SETTINGS
        self.store: ItemStore = store if store is not None else InMemoryStore()
        self.graph = graph if graph is not None else InMemoryGraph()
        self.notifier = notifier if notifier is not None else InMemoryNotifier()
        self.documents = documents if documents is not None else InMemoryDocuments()
        self.tracker = tracker if tracker is not None else InMemoryTracker()

        resolved_store = self.store if isinstance(self.store, InMemoryStore) else None
        self.registry = ConfigRegistry(source, store=resolved_store)
        self.dispatcher = EventDispatcher(timeout=self.settings["subscriber_timeout"])
        self.engine = TransitionEngine(
            self.registry,
            self.store,
            self.dispatcher,
            clock=clock,
            lock_wait=self.settings["lock_wait"],
        )
        self.runner = ActionRunner(
            self.engine,
            graph=self.graph,
            notifier=self.notifier,
            documents=self.documents,
            tracker=self.tracker,
            timeout=self.settings["action_timeout"],
        )
        self.automation = AutomationEngine(
            self.registry,
            self.store,
            self.runner,
            clock=self.engine.clock,
            tick_interval=self.settings["tick_interval"],
            max_cascade_depth=self.settings["max_cascade_depth"],
        )
        self.metrics = MetricsCollector(self.registry, clock=self.engine.clock, alert_sink=self.automation.ingest)

        self.dispatcher.subscribe(self.automation.handle_event, name="automation")
        self.dispatcher.subscribe(self.metrics.handle_event, name="metrics")
        self.automation.add_tick_hook(lambda now: self.metrics.check_thresholds(now))

    @classmethod
    def from_project(cls, project_path: Path | None = None, *, clock: Clock | None = None) -> Lifecycle:
        """Create a Lifecycle by discovering .idlc/ from project_path (or cwd).

        Every team under ``.idlc/teams/`` is activated; teams that fail to
        resolve or validate are logged and left inactive.
        """
        idlc_dir = find_idlc_root(project_path)
        setup_logging(idlc_dir)
        settings = read_config(idlc_dir)
        source = DirectoryConfigSource(idlc_dir, enabled_templates=settings["enabled_templates"])
        lifecycle = cls(source, settings=settings, clock=clock)
        _, failures = lifecycle.registry.activate_all()
        if failures:
            logger.warning("%d team config(s) failed to activate: %s", len(failures), ", ".join(sorted(failures)))
        return lifecycle

    def __enter__(self) -> Lifecycle:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def activate(self, team_id: str) -> ResolvedConfig:
        return self.registry.activate(team_id)

    def ingest(self, event: ExternalEvent) -> None:
        """Feed an external event (metric sample, webhook, alert) to automation."""
        self.automation.ingest(event)

    def start(self) -> None:
        self.automation.start()

    def close(self) -> None:
        self.automation.close()
        self.runner.close()
        self.dispatcher.close()
        self.engine.close()
        self.registry.close()
