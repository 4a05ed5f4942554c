"""
FastAPI 依赖注入
"""
from fastapi import HTTPException, status
import logging

from ..core import WorkflowEngine
from ..integrations.event_bus import EventBus


logger = logging.getLogger(__name__)


def _get_component(name: str, label: str):
    # 延迟导入，避免与 app 模块循环引用
    from .app import get_app_state

    component = get_app_state().get(name)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": f"{label} not initialized"
            }
        )
    return component


def get_workflow_engine() -> WorkflowEngine:
    """获取工作流引擎实例"""
    return _get_component("engine", "Workflow engine")


def get_event_bus() -> EventBus:
    """获取事件总线实例"""
    return _get_component("event_bus", "Event bus")
