"""Reconciliation core: declared graph + state -> plan -> applied changes.

Flow of one run:
1) build and validate the resource graph from a declaration
2) load state and optionally refresh it from providers
3) diff declaration against state into an ordered plan
4) execute the plan's actions through provider adapters
"""

from __future__ import annotations

from .engine import ReconciliationEngine, RunReport
from .executor import ActionOutcome, ActionStatus, ApplyResult, Executor, RefreshResult
from .graph import ResourceGraph, build_graph
from .plan import Action, ChangeKind, Operation, Plan, ResourceChange
from .planner import Planner
from .resolve import UNKNOWN, resolve_attributes, resolve_value

__all__ = [
    "UNKNOWN",
    "Action",
    "ActionOutcome",
    "ActionStatus",
    "ApplyResult",
    "ChangeKind",
    "Executor",
    "Operation",
    "Plan",
    "Planner",
    "ReconciliationEngine",
    "RefreshResult",
    "ResourceChange",
    "ResourceGraph",
    "RunReport",
    "build_graph",
    "resolve_attributes",
    "resolve_value",
]
