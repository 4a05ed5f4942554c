"""
监控 API 路由
"""
from dataclasses import asdict, is_dataclass
from enum import Enum
from fastapi import APIRouter, Depends, Query
from typing import List, Optional
import logging

from ..models import HealthCheckResponse, StatsResponse, EventResponse
from ..dependencies import get_workflow_engine, get_event_bus
from ... import __version__
from ...utils import utcnow


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    engine=Depends(get_workflow_engine)
) -> HealthCheckResponse:
    """健康检查"""
    checks = {}

    try:
        await engine.workflow_repository.list(limit=1)
        checks["database"] = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = False

    checks["event_bus"] = engine.event_bus is not None
    checks["action_handlers"] = len(engine.dispatcher.known_action_types())

    healthy = checks["database"] and checks["event_bus"]
    return HealthCheckResponse(
        status="healthy" if healthy else "unhealthy",
        version=__version__,
        timestamp=utcnow(),
        checks=checks
    )


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    engine=Depends(get_workflow_engine)
) -> StatsResponse:
    """按状态统计执行数量"""
    counts = await engine.execution_repository.count_by_status()
    return StatsResponse(
        executions_by_status=counts,
        registered_action_types=engine.dispatcher.known_action_types()
    )


def _serialize(payload):
    if is_dataclass(payload):
        payload = asdict(payload)
    if not isinstance(payload, dict):
        return {"value": payload}
    return {
        key: value.value if isinstance(value, Enum)
        else value.isoformat() if hasattr(value, "isoformat")
        else value
        for key, value in payload.items()
    }


@router.get("/events", response_model=List[EventResponse])
async def recent_events(
    topic: Optional[str] = Query(None, description="按主题过滤"),
    limit: int = Query(100, ge=1, le=1000, description="返回数量"),
    event_bus=Depends(get_event_bus)
) -> List[EventResponse]:
    """最近的执行生命周期事件（新的在前）"""
    return [
        EventResponse(topic=event.topic, timestamp=event.timestamp, payload=_serialize(event.payload))
        for event in event_bus.recent(topic, limit)
    ]
