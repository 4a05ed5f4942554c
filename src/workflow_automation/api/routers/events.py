"""
外部事件 API 路由

宿主应用在记录变更、表单提交、支付到账时调用这些接口。
事件按至少一次语义投递，重复投递由重入策略吸收。
"""
from fastapi import APIRouter, Depends, status
import logging

from ..models import (
    RecordEventRequest, SubmissionEventRequest, EventAcceptedResponse, ExecutionResponse
)
from ..dependencies import get_workflow_engine
from ..errors import to_http_exception
from ...exceptions import WorkflowEngineError
from ...models.execution import RecordEvent, EventKind
from ...utils import utcnow, to_naive_utc


logger = logging.getLogger(__name__)
router = APIRouter()


def _accepted(executions) -> EventAcceptedResponse:
    return EventAcceptedResponse(
        accepted=True,
        executions=[ExecutionResponse.from_execution(e) for e in executions]
    )


@router.post("/records", response_model=EventAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def record_event(
    request: RecordEventRequest,
    engine=Depends(get_workflow_engine)
) -> EventAcceptedResponse:
    """记录创建 / 更新事件"""
    event = RecordEvent(
        object_type=request.object_type,
        record_id=request.record_id,
        event_kind=EventKind(request.event_kind),
        record_after=request.record_after,
        record_before=request.record_before,
        occurred_at=to_naive_utc(request.occurred_at) if request.occurred_at else utcnow()
    )

    try:
        executions = await engine.handle_record_event(event)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return _accepted(executions)


@router.post("/forms", response_model=EventAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def form_submitted(
    request: SubmissionEventRequest,
    engine=Depends(get_workflow_engine)
) -> EventAcceptedResponse:
    """表单提交事件"""
    try:
        executions = await engine.handle_form_submit(
            request.object_type, request.record_id, request.record
        )
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return _accepted(executions)


@router.post("/payments", response_model=EventAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def payment_received(
    request: SubmissionEventRequest,
    engine=Depends(get_workflow_engine)
) -> EventAcceptedResponse:
    """支付到账事件"""
    try:
        executions = await engine.handle_payment_received(
            request.object_type, request.record_id, request.record
        )
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return _accepted(executions)
