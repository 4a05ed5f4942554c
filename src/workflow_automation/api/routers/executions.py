"""
执行管理 API 路由
"""
from fastapi import APIRouter, Depends, Query, status
from typing import List
import logging

from ..models import ExecutionDetailResponse, ExecutionResponse, ExecutionStatusEnum
from ..dependencies import get_workflow_engine
from ..errors import to_http_exception
from ...exceptions import WorkflowEngineError
from ...models.execution import ExecutionStatus


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=List[ExecutionResponse])
async def list_executions(
    status_filter: ExecutionStatusEnum = Query(..., alias="status", description="执行状态"),
    offset: int = Query(0, ge=0, description="偏移量"),
    limit: int = Query(100, ge=1, le=1000, description="返回数量"),
    engine=Depends(get_workflow_engine)
) -> List[ExecutionResponse]:
    """按状态列出所有工作流的执行实例"""
    executions = await engine.execution_repository.list_by_status(
        ExecutionStatus(status_filter.value), offset=offset, limit=limit
    )
    return [ExecutionResponse.from_execution(e) for e in executions]


@router.get("/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(
    execution_id: str,
    engine=Depends(get_workflow_engine)
) -> ExecutionDetailResponse:
    """获取执行详情（含节点执行历史）"""
    try:
        execution = await engine.get_execution(execution_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return ExecutionDetailResponse.from_execution(execution)


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: str,
    engine=Depends(get_workflow_engine)
) -> ExecutionResponse:
    """
    取消执行

    pending / waiting 的执行立即取消；running 的执行在下一个节点边界取消。
    """
    try:
        execution = await engine.request_cancel(execution_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return ExecutionResponse.from_execution(execution)


@router.post(
    "/{execution_id}/restart",
    response_model=ExecutionResponse,
    status_code=status.HTTP_201_CREATED
)
async def restart_execution(
    execution_id: str,
    engine=Depends(get_workflow_engine)
) -> ExecutionResponse:
    """为同一工作流与记录创建新的执行"""
    try:
        execution = await engine.restart_execution(execution_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    logger.info(f"Execution {execution_id} restarted as {execution.id}")
    return ExecutionResponse.from_execution(execution)
