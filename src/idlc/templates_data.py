# src/idlc/templates_data.py
"""Built-in lifecycle templates and shared fragments.

Logic lives in resolver.py/validator.py; this file is pure data. Each
template is a JSON-compatible team document in the same shape as
``.idlc/teams/*.json``. Fragments are referenced from a team's sections
with ``{"$ref": "<name>"}`` and expand in place.

Templates:
  - default: triage -> backlog -> unstarted -> started -> completed, plus canceled
Fragments:
  - progressive-rollout: a rollout stage with a time-boxed health watch
"""

from __future__ import annotations

from typing import Any

from idlc.schema import TeamConfig

# ---------------------------------------------------------------------------
# Default template -- idea development lifecycle
# ---------------------------------------------------------------------------

_DEFAULT_TEMPLATE: dict[str, Any] = {
    "team": {
        "id": "default",
        "name": "Default Team",
        "description": "Default idea development lifecycle",
    },
    "version": "1.0",
    "initial_status": "triage",
    "stages": [
        {"id": "triage", "name": "Triage", "description": "New ideas awaiting review"},
        {"id": "backlog", "name": "Backlog", "description": "Accepted but not yet planned"},
        {"id": "unstarted", "name": "Unstarted", "description": "Planned and ready to pick up"},
        {
            "id": "started",
            "name": "Started",
            "description": "Under active development",
            "exit_criteria": ["tests_passing"],
        },
        {"id": "completed", "name": "Completed", "description": "Delivered", "terminal": True},
        {
            "id": "canceled",
            "name": "Canceled",
            "description": "Dropped before delivery",
            "terminal": True,
            "required": False,
        },
    ],
    "statuses": [
        {"id": "triage", "stage_id": "triage", "name": "Triage", "color": "#6B7280"},
        {"id": "backlog", "stage_id": "backlog", "name": "Backlog", "color": "#9CA3AF"},
        {"id": "todo", "stage_id": "unstarted", "name": "Todo", "color": "#3B82F6"},
        {"id": "in-dev", "stage_id": "started", "name": "In Development", "color": "#8B5CF6"},
        {"id": "done", "stage_id": "completed", "name": "Done", "color": "#22C55E"},
        {"id": "canceled", "stage_id": "canceled", "name": "Canceled", "color": "#EF4444"},
    ],
    "transitions": [
        {"from": "triage", "to": ["backlog", "canceled"]},
        {"from": "backlog", "to": ["todo", "canceled"]},
        {"from": "todo", "to": ["in-dev", "canceled"]},
        {"from": "in-dev", "to": ["done", "todo", "canceled"]},
    ],
    "complexity": [
        {"id": "small", "name": "Small", "points": [0, 2], "skip_stages": ["backlog"]},
        {"id": "medium", "name": "Medium", "points": [3, 8]},
        {
            "id": "large",
            "name": "Large",
            "points": [9, 100],
            "require_approval": [{"stage": "started", "roles": ["tech-lead"]}],
        },
    ],
    "automation": [
        {
            "id": "record-delivery",
            "trigger": "transition",
            "to": "done",
            "actions": [
                {"type": "create_node", "node_type": "delivery"},
                {"type": "create_edge", "edge_type": "delivered"},
            ],
        },
    ],
    "metrics": [
        {"id": "slow-development", "metric": "stage_duration", "stage": "started", "threshold": 336},
    ],
}

# ---------------------------------------------------------------------------
# Fragments
# ---------------------------------------------------------------------------

_PROGRESSIVE_ROLLOUT: dict[str, Any] = {
    "stages": [
        {
            "id": "rollout",
            "name": "Rollout",
            "description": "Staged release behind a health watch",
            "required": False,
        },
    ],
    "statuses": [
        {"id": "rolling-out", "stage_id": "rollout", "name": "Rolling Out", "color": "#F59E0B"},
        {"id": "rolled-back", "stage_id": "rollout", "name": "Rolled Back", "color": "#F97316"},
    ],
    "transitions": [
        # Replaces the base in-dev edge set.
        {"from": "in-dev", "to": ["rolling-out", "done", "todo", "canceled"]},
        {"id": "rollout-progress", "from": "rolling-out", "to": ["done", "rolled-back"]},
        {"id": "rollout-recovery", "from": "rolled-back", "to": ["in-dev", "rolling-out"]},
    ],
    "automation": [
        {
            "id": "promote-after-healthy-hour",
            "trigger": "transition",
            "to": "rolling-out",
            "duration": "1h",
            "break_on": ["alert_fired"],
            "actions": [{"type": "auto_transition", "to": "done"}],
            "on_break": [
                {"type": "rollback", "to": "rolled-back"},
                {
                    "type": "notify",
                    "channel": "{team}-releases",
                    "message": "Rollout of {item_id} rolled back after {event}",
                    "severity": "warning",
                },
            ],
        },
    ],
}

BUILT_IN_TEMPLATES: dict[str, dict[str, Any]] = {
    "default": _DEFAULT_TEMPLATE,
}

BUILT_IN_FRAGMENTS: dict[str, Any] = {
    "progressive-rollout": _PROGRESSIVE_ROLLOUT,
}


def builtin_team_config(name: str) -> TeamConfig | None:
    """TeamConfig for a built-in template, or None if *name* is not built in."""
    raw = BUILT_IN_TEMPLATES.get(name)
    if raw is None:
        return None
    return TeamConfig.from_dict(raw)
