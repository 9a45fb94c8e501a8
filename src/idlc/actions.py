"""Automation actions -- executing rule steps against collaborators.

Each action of a top-level rule runs on the worker pool with its own time
budget. Actions started from inside a running action (an automation
cascade) run inline on that worker, inside the outer action's budget. A
failing or slow action is logged and recorded in its ActionOutcome; the
remaining actions of the rule still run. ``rollback`` and
``auto_transition`` go back through the TransitionEngine, so they obey the
same legality and approval rules as a human request.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from idlc.engine import ActorContext, TransitionEngine, TransitionError
from idlc.events import Event, TransitionApplied
from idlc.schema import Action

if TYPE_CHECKING:
    from idlc.collaborators import DocumentStore, KnowledgeGraph, Notifier, Tracker

logger = logging.getLogger(__name__)


class _SafeDict(dict[str, Any]):
    """str.format_map mapping that leaves unknown placeholders untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


@dataclass(frozen=True)
class ActionContext:
    """What a rule's actions are running in response to."""

    rule_id: str
    item_id: str
    team_id: str
    event: Event
    depth: int = 0

    @property
    def actor(self) -> ActorContext:
        return ActorContext(actor=f"automation:{self.rule_id}", depth=self.depth + 1)


@dataclass(frozen=True)
class ActionOutcome:
    action: str
    ok: bool
    detail: str = ""
    error: str | None = None


class ActionRunner:
    """Runs automation actions with per-action timeouts and failure isolation."""

    def __init__(
        self,
        engine: TransitionEngine,
        *,
        graph: KnowledgeGraph | None = None,
        notifier: Notifier | None = None,
        documents: DocumentStore | None = None,
        tracker: Tracker | None = None,
        timeout: float = 10.0,
        max_workers: int = 8,
    ) -> None:
        self.engine = engine
        self.graph = graph
        self.notifier = notifier
        self.documents = documents
        self.tracker = tracker
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="idlc-action")
        self._closed = False
        self._local = threading.local()

    def run_all(self, actions: Sequence[Action], ctx: ActionContext) -> list[ActionOutcome]:
        """Run *actions* in order. Never raises; failures are in the outcomes."""
        return [self.run(action, ctx) for action in actions]

    def run(self, action: Action, ctx: ActionContext) -> ActionOutcome:
        started = time.perf_counter()
        log_extra: dict[str, Any] = {"item": ctx.item_id, "rule": ctx.rule_id, "action": action.type}
        if self._closed:
            return ActionOutcome(action.type, ok=False, error="action runner is closed")
        try:
            if getattr(self._local, "active", False):
                detail = self._execute(action, ctx)
            else:
                detail = self._executor.submit(self._execute_bounded, action, ctx).result(timeout=self.timeout)
        except FutureTimeoutError:
            logger.warning(
                "Action %s of rule %s timed out after %.2fs",
                action.type,
                ctx.rule_id,
                self.timeout,
                extra={**log_extra, "duration_ms": round((time.perf_counter() - started) * 1000, 1)},
            )
            return ActionOutcome(action.type, ok=False, error="timed out")
        except TransitionError as exc:
            logger.info(
                "Action %s of rule %s rejected: %s",
                action.type,
                ctx.rule_id,
                exc,
                extra={**log_extra, "error": str(exc)},
            )
            return ActionOutcome(action.type, ok=False, error=str(exc))
        except Exception as exc:
            logger.warning(
                "Action %s of rule %s failed",
                action.type,
                ctx.rule_id,
                exc_info=exc,
                extra={**log_extra, "error": str(exc)},
            )
            return ActionOutcome(action.type, ok=False, error=str(exc))
        logger.debug("Action %s of rule %s: %s", action.type, ctx.rule_id, detail, extra=log_extra)
        return ActionOutcome(action.type, ok=True, detail=detail)

    # -- Execution ---------------------------------------------------------------

    def _variables(self, ctx: ActionContext) -> dict[str, Any]:
        item = self.engine.store.load_item(ctx.item_id)
        event = ctx.event
        if isinstance(event, TransitionApplied):
            from_status = event.from_status or ""
        else:
            from_status = item.previous_status() or ""
        return {
            "item_id": item.id,
            "status": item.status,
            "from_status": from_status,
            "team": item.team_id,
            "event": event.type,
            "rule": ctx.rule_id,
        }

    @staticmethod
    def _format(value: Any, variables: Mapping[str, Any]) -> Any:
        if isinstance(value, str):
            return value.format_map(_SafeDict(variables))
        return value

    def _execute_bounded(self, action: Action, ctx: ActionContext) -> str:
        self._local.active = True
        try:
            return self._execute(action, ctx)
        finally:
            self._local.active = False

    def _execute(self, action: Action, ctx: ActionContext) -> str:
        variables = self._variables(ctx)
        params = {k: self._format(v, variables) for k, v in action.params.items()}

        if action.type == "assign":
            tracker = _require(self.tracker, "tracker")
            tracker.assign(ctx.item_id, _param(params, "assignee", action))
            return f"assigned to {params['assignee']}"

        if action.type == "create_node":
            graph = _require(self.graph, "knowledge graph")
            node_id = graph.create_node(_param(params, "node_type", action), ctx.item_id)
            return f"node {node_id}"

        if action.type == "create_edge":
            graph = _require(self.graph, "knowledge graph")
            edge_type = _param(params, "edge_type", action)
            from_status = params.get("from") or variables["from_status"]
            to_status = params.get("to") or variables["status"]
            graph.create_edge(from_status, to_status, edge_type)
            return f"edge {from_status} -> {to_status} ({edge_type})"

        if action.type == "create_document":
            documents = _require(self.documents, "document store")
            extra_vars = params.get("vars") or {}
            template_vars = {**variables, **{k: self._format(v, variables) for k, v in extra_vars.items()}}
            path = documents.create_document(
                _param(params, "template", action), _param(params, "path", action), template_vars
            )
            return f"document {path}"

        if action.type == "notify":
            notifier = _require(self.notifier, "notifier")
            channel = _param(params, "channel", action)
            notifier.notify(channel, params.get("message", ""), params.get("severity", "info"))
            return f"notified {channel}"

        if action.type == "rollback":
            target = params.get("to")
            if target is None:
                item = self.engine.store.load_item(ctx.item_id)
                target = item.previous_status()
                if target is None:
                    msg = f"item '{ctx.item_id}' has no previous status to roll back to"
                    raise ValueError(msg)
            result = self.engine.request_transition(ctx.item_id, target, ctx.actor)
            return f"rolled back to {result.to_status}"

        # auto_transition
        result = self.engine.request_transition(ctx.item_id, _param(params, "to", action), ctx.actor)
        return f"transitioned to {result.to_status}"

    def close(self) -> None:
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)


def _require(collaborator: Any, what: str) -> Any:
    if collaborator is None:
        msg = f"no {what} configured"
        raise RuntimeError(msg)
    return collaborator


def _param(params: Mapping[str, Any], key: str, action: Action) -> Any:
    if key not in params:
        msg = f"{action.type} action requires '{key}'"
        raise ValueError(msg)
    return params[key]
