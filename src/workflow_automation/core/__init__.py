"""Core workflow automation components"""

from .engine import WorkflowEngine
from .conditions import ConditionEvaluator
from .dispatcher import ActionDispatcher, ActionResult
from .entry import EntryEvaluator
from .error_handler import ErrorHandler, RetryPolicy
from .interpreter import GraphInterpreter
from .launcher import ExecutionLauncher
from .parser import WorkflowParser
from .reentry import ReentryGuard
from .scheduler import WorkflowScheduler, TickReport

__all__ = [
    "WorkflowEngine",
    "ConditionEvaluator",
    "ActionDispatcher",
    "ActionResult",
    "EntryEvaluator",
    "ErrorHandler",
    "RetryPolicy",
    "GraphInterpreter",
    "ExecutionLauncher",
    "WorkflowParser",
    "ReentryGuard",
    "WorkflowScheduler",
    "TickReport"
]
