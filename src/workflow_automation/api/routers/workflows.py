"""
工作流管理 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, Query, status, Response
from typing import List, Optional
import logging

from ..models import (
    WorkflowCreateRequest, WorkflowUpdateRequest, WorkflowResponse,
    WorkflowDetailResponse, ValidationResponse, ManualTriggerRequest,
    ExecutionResponse, EventAcceptedResponse
)
from ..dependencies import get_workflow_engine
from ..errors import to_http_exception
from ...exceptions import WorkflowEngineError
from ...models.execution import ExecutionStatus


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=WorkflowDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    workflow: WorkflowCreateRequest,
    engine=Depends(get_workflow_engine)
) -> WorkflowDetailResponse:
    """创建工作流（草稿状态，需要激活后才会被触发）"""
    try:
        created = await engine.create_workflow(workflow.to_definition())
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return WorkflowDetailResponse.from_workflow(created)


@router.get("/", response_model=List[WorkflowResponse])
async def list_workflows(
    offset: int = Query(0, ge=0, description="偏移量"),
    limit: int = Query(100, ge=1, le=1000, description="返回数量"),
    is_active: Optional[bool] = Query(None, description="按激活状态过滤"),
    object_type: Optional[str] = Query(None, description="按对象类型过滤"),
    trigger_type: Optional[str] = Query(None, description="按触发器类型过滤"),
    engine=Depends(get_workflow_engine)
) -> List[WorkflowResponse]:
    """列出工作流"""
    filters = {}
    if is_active is not None:
        filters["is_active"] = is_active
    if object_type:
        filters["object_type"] = object_type
    if trigger_type:
        filters["trigger_type"] = trigger_type

    workflows = await engine.list_workflows(offset=offset, limit=limit, filters=filters or None)
    return [WorkflowResponse.from_workflow(w) for w in workflows]


@router.get("/{workflow_id}", response_model=WorkflowDetailResponse)
async def get_workflow(
    workflow_id: str,
    engine=Depends(get_workflow_engine)
) -> WorkflowDetailResponse:
    """获取工作流详情"""
    try:
        workflow = await engine.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return WorkflowDetailResponse.from_workflow(workflow)


@router.put("/{workflow_id}", response_model=WorkflowDetailResponse)
async def update_workflow(
    workflow_id: str,
    update: WorkflowUpdateRequest,
    engine=Depends(get_workflow_engine)
) -> WorkflowDetailResponse:
    """修改工作流（进行中的执行不受影响）"""
    changes = update.to_changes()
    if not changes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "empty_update", "message": "No fields to update"}
        )

    try:
        workflow = await engine.update_workflow(workflow_id, changes)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return WorkflowDetailResponse.from_workflow(workflow)


@router.delete("/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow(
    workflow_id: str,
    engine=Depends(get_workflow_engine)
):
    """删除工作流"""
    deleted = await engine.delete_workflow(workflow_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": f"Workflow not found: {workflow_id}"}
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{workflow_id}/validate", response_model=ValidationResponse)
async def validate_workflow(
    workflow_id: str,
    engine=Depends(get_workflow_engine)
) -> ValidationResponse:
    """验证工作流图（不修改状态）"""
    try:
        workflow = await engine.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    report = engine.validate_workflow(workflow)
    return ValidationResponse(
        workflow_id=workflow_id,
        valid=not report["errors"],
        errors=report["errors"],
        warnings=report["warnings"]
    )


@router.post("/{workflow_id}/activate", response_model=WorkflowResponse)
async def activate_workflow(
    workflow_id: str,
    engine=Depends(get_workflow_engine)
) -> WorkflowResponse:
    """激活工作流（图验证失败时返回 422）"""
    try:
        workflow = await engine.activate_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return WorkflowResponse.from_workflow(workflow)


@router.post("/{workflow_id}/deactivate", response_model=WorkflowResponse)
async def deactivate_workflow(
    workflow_id: str,
    engine=Depends(get_workflow_engine)
) -> WorkflowResponse:
    """停用工作流"""
    try:
        workflow = await engine.deactivate_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return WorkflowResponse.from_workflow(workflow)


@router.post("/{workflow_id}/trigger", response_model=EventAcceptedResponse)
async def trigger_workflow(
    workflow_id: str,
    request: ManualTriggerRequest,
    engine=Depends(get_workflow_engine)
) -> EventAcceptedResponse:
    """手动触发工作流（仍受准入条件与重入策略约束）"""
    try:
        execution = await engine.trigger_manual(workflow_id, request.record_id, request.record)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    executions = [ExecutionResponse.from_execution(execution)] if execution else []
    return EventAcceptedResponse(accepted=True, executions=executions)


@router.get("/{workflow_id}/executions", response_model=List[ExecutionResponse])
async def list_workflow_executions(
    workflow_id: str,
    status_filter: Optional[str] = Query(None, alias="status", description="按执行状态过滤"),
    record_id: Optional[str] = Query(None, description="按记录ID过滤"),
    offset: int = Query(0, ge=0, description="偏移量"),
    limit: int = Query(100, ge=1, le=1000, description="返回数量"),
    engine=Depends(get_workflow_engine)
) -> List[ExecutionResponse]:
    """列出工作流的执行实例"""
    try:
        execution_status = ExecutionStatus(status_filter) if status_filter else None
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_status", "message": f"Unknown execution status: {status_filter}"}
        )

    executions = await engine.list_executions(
        workflow_id, status=execution_status, record_id=record_id, offset=offset, limit=limit
    )
    return [ExecutionResponse.from_execution(e) for e in executions]
