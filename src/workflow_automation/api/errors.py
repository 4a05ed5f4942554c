"""
引擎异常到 HTTP 错误的映射
"""
from fastapi import HTTPException, status

from ..exceptions import (
    WorkflowEngineError, WorkflowNotFoundError, ExecutionNotFoundError,
    GraphValidationError, WorkflowParseError, TriggerConfigError, StateTransitionError
)


def to_http_exception(exc: WorkflowEngineError) -> HTTPException:
    """将引擎异常转换为带 error / message 的 HTTPException"""
    if isinstance(exc, (WorkflowNotFoundError, ExecutionNotFoundError)):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": str(exc)}
        )
    if isinstance(exc, GraphValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "validation_error", "message": str(exc), "errors": exc.errors}
        )
    if isinstance(exc, (WorkflowParseError, TriggerConfigError)):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_definition", "message": str(exc)}
        )
    if isinstance(exc, StateTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "invalid_state", "message": str(exc)}
        )
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"error": "engine_error", "message": str(exc)}
    )
