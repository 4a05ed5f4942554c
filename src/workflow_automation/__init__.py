"""
Workflow Automation Engine - 工作流自动化引擎
"""

__version__ = "0.1.0"

from .core.engine import WorkflowEngine
from .core.scheduler import WorkflowScheduler, TickReport
from .core.parser import WorkflowParser
from .core.dispatcher import ActionDispatcher, ActionResult
from .models.workflow import Workflow, Node, Edge
from .models.execution import WorkflowExecution, RecordEvent, ExecutionStatus

__all__ = [
    "WorkflowEngine",
    "WorkflowScheduler",
    "TickReport",
    "WorkflowParser",
    "ActionDispatcher",
    "ActionResult",
    "Workflow",
    "Node",
    "Edge",
    "WorkflowExecution",
    "RecordEvent",
    "ExecutionStatus"
]
