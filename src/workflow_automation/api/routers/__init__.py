"""API routers"""

from . import workflows, executions, events, scheduler, monitoring

__all__ = ["workflows", "executions", "events", "scheduler", "monitoring"]
