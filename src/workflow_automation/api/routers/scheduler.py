"""
调度 API 路由

外部时间源（cron、Kubernetes CronJob 等）周期性调用 tick。
"""
from fastapi import APIRouter, Depends
from typing import Optional
import logging

from ..models import TickRequest, TickResponse
from ..dependencies import get_workflow_engine


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/tick", response_model=TickResponse)
async def tick(
    request: Optional[TickRequest] = None,
    engine=Depends(get_workflow_engine)
) -> TickResponse:
    """恢复到期的等待执行并触发到期的定时工作流"""
    now = request.now if request else None
    report = await engine.tick(now)

    return TickResponse(
        now=report.now,
        resumed=report.resumed,
        claim_conflicts=report.claim_conflicts,
        reclaimed=report.reclaimed,
        released=report.released,
        triggered=report.triggered,
        skipped=report.skipped
    )
