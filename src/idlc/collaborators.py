"""Boundary contracts for external collaborators, plus in-memory implementations.

The lifecycle core only talks to storage, the knowledge graph, notification,
document and tracker systems through the Protocols below. The ``InMemory*``
classes satisfy them for embedding, tests and local experimentation; real
deployments supply their own transports.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from idlc.items import WorkItem
from idlc.schema import ResolvedConfig, TeamConfig

logger = logging.getLogger(__name__)


class StaleVersionError(ValueError):
    """Raised when a save's expected version does not match the stored version."""

    def __init__(self, record_id: str, expected: int, actual: int) -> None:
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Stale write for '{record_id}': expected version {expected}, stored version is {actual}")


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class ConfigSource(Protocol):
    """Lookup for team configs (``extends`` targets included) and shared fragments."""

    def get_team_config(self, team_id: str) -> TeamConfig | None: ...

    def get_fragment(self, name: str) -> Any | None: ...

    def team_ids(self) -> list[str]: ...


class TeamConfigStore(Protocol):
    """Editable team documents. Saves are optimistic: a stale ``expected_version`` is rejected."""

    def team_config_version(self, team_id: str) -> int: ...

    def save_team_config(self, team: TeamConfig, *, expected_version: int) -> int: ...


class ItemStore(Protocol):
    """Work item persistence with optimistic versioning."""

    def create_item(self, item: WorkItem) -> WorkItem: ...

    def load_item(self, item_id: str) -> WorkItem: ...

    def save_item(self, item: WorkItem, *, expected_version: int) -> WorkItem: ...

    def list_items(self, team_id: str | None = None) -> list[WorkItem]: ...


class ResolvedConfigStore(Protocol):
    def save_resolved(self, config: ResolvedConfig) -> None: ...

    def load_resolved(self, team_id: str, version: int) -> ResolvedConfig | None: ...


class KnowledgeGraph(Protocol):
    def create_node(self, node_type: str, linked_item_id: str) -> str: ...

    def create_edge(self, from_status: str, to_status: str, edge_type: str) -> None: ...


class Notifier(Protocol):
    def notify(self, channel: str, message: str, severity: str) -> None: ...


class DocumentStore(Protocol):
    def create_document(self, template_id: str, path: str, template_vars: dict[str, Any]) -> str: ...


class Tracker(Protocol):
    """Issue-tracker side of assignment; the engine never writes item ownership itself."""

    def assign(self, item_id: str, assignee: str) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Thread-safe in-memory storage for team configs, fragments, resolved configs and items.

    Satisfies ConfigSource, TeamConfigStore, ItemStore and ResolvedConfigStore. Items are
    copied on the way in and out so callers never share mutable state with
    the store. With ``include_builtins`` the built-in templates and fragments
    are served when no stored document shadows them.
    """

    def __init__(self, *, include_builtins: bool = True) -> None:
        self._lock = threading.Lock()
        self._teams: dict[str, TeamConfig] = {}
        self._team_versions: dict[str, int] = {}
        self._fragments: dict[str, Any] = {}
        self._resolved: dict[tuple[str, int], ResolvedConfig] = {}
        self._items: dict[str, WorkItem] = {}
        self._include_builtins = include_builtins

    # -- ConfigSource -------------------------------------------------------

    def put_team_config(self, team: TeamConfig | dict[str, Any]) -> TeamConfig:
        if isinstance(team, dict):
            team = TeamConfig.from_dict(team)
        with self._lock:
            self._teams[team.id] = team
            self._team_versions[team.id] = self._team_versions.get(team.id, 0) + 1
        return team

    def put_fragment(self, name: str, fragment: Any) -> None:
        with self._lock:
            self._fragments[name] = fragment

    def get_team_config(self, team_id: str) -> TeamConfig | None:
        with self._lock:
            team = self._teams.get(team_id)
        if team is None and self._include_builtins:
            from idlc.templates_data import builtin_team_config

            return builtin_team_config(team_id)
        return team

    def get_fragment(self, name: str) -> Any | None:
        with self._lock:
            fragment = self._fragments.get(name)
        if fragment is None and self._include_builtins:
            from idlc.templates_data import BUILT_IN_FRAGMENTS

            return BUILT_IN_FRAGMENTS.get(name)
        return fragment

    def team_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._teams)

    # -- TeamConfigStore ----------------------------------------------------

    def team_config_version(self, team_id: str) -> int:
        """Version of the stored document for *team_id*; 0 when none is stored."""
        with self._lock:
            return self._team_versions.get(team_id, 0)

    def save_team_config(self, team: TeamConfig | dict[str, Any], *, expected_version: int) -> int:
        """Store *team* if the stored version is still *expected_version*. Returns the new version.

        Raises:
            StaleVersionError: If another save landed since *expected_version* was read.
        """
        if isinstance(team, dict):
            team = TeamConfig.from_dict(team)
        with self._lock:
            current = self._team_versions.get(team.id, 0)
            if current != expected_version:
                raise StaleVersionError(team.id, expected_version, current)
            self._teams[team.id] = team
            self._team_versions[team.id] = expected_version + 1
        logger.debug("Saved team config %s at version %d", team.id, expected_version + 1)
        return expected_version + 1

    # -- ResolvedConfigStore -----------------------------------------------

    def save_resolved(self, config: ResolvedConfig) -> None:
        with self._lock:
            self._resolved[(config.team_id, config.version)] = config

    def load_resolved(self, team_id: str, version: int) -> ResolvedConfig | None:
        with self._lock:
            return self._resolved.get((team_id, version))

    # -- ItemStore ------------------------------------------------------------

    def create_item(self, item: WorkItem) -> WorkItem:
        with self._lock:
            if item.id in self._items:
                msg = f"Item '{item.id}' already exists"
                raise ValueError(msg)
            stored = item.copy()
            stored.version = 1
            self._items[item.id] = stored
            return stored.copy()

    def load_item(self, item_id: str) -> WorkItem:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                msg = f"Item not found: {item_id}"
                raise KeyError(msg)
            return item.copy()

    def save_item(self, item: WorkItem, *, expected_version: int) -> WorkItem:
        with self._lock:
            current = self._items.get(item.id)
            if current is None:
                msg = f"Item not found: {item.id}"
                raise KeyError(msg)
            if current.version != expected_version:
                raise StaleVersionError(item.id, expected_version, current.version)
            stored = item.copy()
            stored.version = expected_version + 1
            self._items[item.id] = stored
            return stored.copy()

    def list_items(self, team_id: str | None = None) -> list[WorkItem]:
        with self._lock:
            items = [i.copy() for i in self._items.values() if team_id is None or i.team_id == team_id]
        return sorted(items, key=lambda i: i.id)


@dataclass(frozen=True)
class GraphNode:
    id: str
    type: str
    linked_item_id: str


@dataclass(frozen=True)
class GraphEdge:
    from_status: str
    to_status: str
    edge_type: str


class InMemoryGraph:
    """Records knowledge-graph nodes and edges."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.nodes: list[GraphNode] = []
        self.edges: list[GraphEdge] = []

    def create_node(self, node_type: str, linked_item_id: str) -> str:
        node = GraphNode(id=uuid.uuid4().hex[:12], type=node_type, linked_item_id=linked_item_id)
        with self._lock:
            self.nodes.append(node)
        return node.id

    def create_edge(self, from_status: str, to_status: str, edge_type: str) -> None:
        with self._lock:
            self.edges.append(GraphEdge(from_status, to_status, edge_type))


@dataclass(frozen=True)
class Notification:
    channel: str
    message: str
    severity: str


class InMemoryNotifier:
    """Records notifications and mirrors them to the log."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: list[Notification] = []

    def notify(self, channel: str, message: str, severity: str) -> None:
        logger.info("Notify %s [%s]: %s", channel, severity, message)
        with self._lock:
            self.sent.append(Notification(channel, message, severity))

    def messages(self, channel: str | None = None) -> list[str]:
        with self._lock:
            return [n.message for n in self.sent if channel is None or n.channel == channel]


@dataclass(frozen=True)
class CreatedDocument:
    template_id: str
    path: str
    template_vars: dict[str, Any]


class InMemoryDocuments:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.created: list[CreatedDocument] = []

    def create_document(self, template_id: str, path: str, template_vars: dict[str, Any]) -> str:
        with self._lock:
            self.created.append(CreatedDocument(template_id, path, dict(template_vars)))
        return path


class InMemoryTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.assignments: dict[str, str] = {}

    def assign(self, item_id: str, assignee: str) -> None:
        with self._lock:
            self.assignments[item_id] = assignee

