# IMPORT CONSTRAINT: types/ modules must only import from typing, stdlib, and each other.
# NEVER import from engine.py, registry.py, or any component module -- this prevents circular imports.
"""Typed dict contracts for idlc serializations."""

from __future__ import annotations

from idlc.types.core import HistoryEntryDict, ISOTimestamp, WorkItemDict
from idlc.types.metrics import TeamFlowSummary
from idlc.types.workflow import ResolvedConfigInfo, StageInfo, StatusInfo, TransitionOptionInfo

__all__ = [
    "HistoryEntryDict",
    "ISOTimestamp",
    "ResolvedConfigInfo",
    "StageInfo",
    "StatusInfo",
    "TeamFlowSummary",
    "TransitionOptionInfo",
    "WorkItemDict",
]
