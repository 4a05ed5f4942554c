"""Workflow and execution models"""

from .workflow import (
    Workflow, Graph, Node, Edge, Condition, ConditionSet,
    TriggerType, ReentryMode, NodeKind, ActionType, MatchMode, Branch
)
from .execution import (
    WorkflowExecution, StepExecution, RecordEvent, EventKind,
    ExecutionStatus, StepStatus, ExecutionEvent, ExecutionEventType,
    ReentryRule, TERMINAL_STATUSES
)

__all__ = [
    "Workflow",
    "Graph",
    "Node",
    "Edge",
    "Condition",
    "ConditionSet",
    "TriggerType",
    "ReentryMode",
    "NodeKind",
    "ActionType",
    "MatchMode",
    "Branch",
    "WorkflowExecution",
    "StepExecution",
    "RecordEvent",
    "EventKind",
    "ExecutionStatus",
    "StepStatus",
    "ExecutionEvent",
    "ExecutionEventType",
    "ReentryRule",
    "TERMINAL_STATUSES"
]
