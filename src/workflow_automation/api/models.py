"""
API 请求和响应模型
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

from ..models.workflow import Workflow
from ..models.execution import WorkflowExecution, StepExecution


class TriggerTypeEnum(str, Enum):
    """触发器类型枚举（API）"""
    RECORD_CREATE = "record_create"
    RECORD_UPDATE = "record_update"
    FIELD_CHANGE = "field_change"
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    FORM_SUBMIT = "form_submit"
    PAYMENT_RECEIVED = "payment_received"


class ReentryModeEnum(str, Enum):
    """重入策略枚举（API）"""
    ALWAYS = "always"
    ONCE = "once"
    ONCE_PER_DAY = "once_per_day"
    ONCE_PER_WEEK = "once_per_week"


class NodeKindEnum(str, Enum):
    """节点类型枚举（API）"""
    TRIGGER = "trigger"
    ACTION = "action"
    DECISION = "decision"
    WAIT = "wait"


class ExecutionStatusEnum(str, Enum):
    """执行状态枚举（API）"""
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# 工作流相关模型

class ConditionDefinition(BaseModel):
    """过滤条件"""
    field: str = Field(..., description="字段名")
    operator: str = Field(..., description="操作符")
    value: Any = Field(None, description="比较值")


class ConditionSetDefinition(BaseModel):
    """条件集合"""
    conditions: List[ConditionDefinition] = Field(default_factory=list, description="条件列表")
    match: str = Field("all", description="组合方式 all / any", pattern="^(all|any)$")


class NodeDefinition(BaseModel):
    """节点定义"""
    id: str = Field(..., description="节点ID")
    kind: NodeKindEnum = Field(..., description="节点类型")
    name: Optional[str] = Field(None, description="节点名称")
    action_type: Optional[str] = Field(None, description="动作类型（action 节点）")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="动作参数（action 节点）")
    condition: Optional[ConditionSetDefinition] = Field(None, description="判断条件（decision 节点）")
    wait: Dict[str, Any] = Field(default_factory=dict, description="等待配置（wait 节点）")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="元数据")


class EdgeDefinition(BaseModel):
    """边定义"""
    source: str = Field(..., description="源节点ID")
    target: str = Field(..., description="目标节点ID")
    branch: Optional[str] = Field(None, description="决策分支 yes / no", pattern="^(yes|no)$")


class WorkflowCreateRequest(BaseModel):
    """创建工作流请求"""
    name: str = Field(..., description="工作流名称")
    description: Optional[str] = Field(None, description="描述")
    object_type: str = Field(..., description="监听的对象类型")
    trigger_type: TriggerTypeEnum = Field(TriggerTypeEnum.MANUAL, description="触发器类型")
    trigger_config: Dict[str, Any] = Field(default_factory=dict, description="触发器配置")
    entry_criteria: Optional[ConditionSetDefinition] = Field(None, description="准入条件")
    reentry_mode: ReentryModeEnum = Field(ReentryModeEnum.ALWAYS, description="重入策略")
    nodes: List[NodeDefinition] = Field(..., description="节点列表")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="边列表")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="元数据")

    def to_definition(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        if data.get("entry_criteria") is None:
            data.pop("entry_criteria", None)
        return data


class WorkflowUpdateRequest(BaseModel):
    """更新工作流请求（只修改提供的字段）"""
    name: Optional[str] = Field(None, description="工作流名称")
    description: Optional[str] = Field(None, description="描述")
    trigger_type: Optional[TriggerTypeEnum] = Field(None, description="触发器类型")
    trigger_config: Optional[Dict[str, Any]] = Field(None, description="触发器配置")
    entry_criteria: Optional[ConditionSetDefinition] = Field(None, description="准入条件")
    reentry_mode: Optional[ReentryModeEnum] = Field(None, description="重入策略")
    nodes: Optional[List[NodeDefinition]] = Field(None, description="节点列表")
    edges: Optional[List[EdgeDefinition]] = Field(None, description="边列表")
    metadata: Optional[Dict[str, Any]] = Field(None, description="元数据")

    def to_changes(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class WorkflowResponse(BaseModel):
    """工作流响应"""
    id: str = Field(..., description="工作流ID")
    name: str = Field(..., description="工作流名称")
    description: Optional[str] = Field(None, description="描述")
    object_type: str = Field(..., description="对象类型")
    trigger_type: str = Field(..., description="触发器类型")
    reentry_mode: str = Field(..., description="重入策略")
    is_active: bool = Field(False, description="是否激活")
    version: int = Field(..., description="版本号")
    execution_count: int = Field(0, description="累计执行次数")
    node_count: int = Field(..., description="节点数量")
    created_at: datetime = Field(..., description="创建时间")
    updated_at: datetime = Field(..., description="更新时间")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="元数据")

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> "WorkflowResponse":
        return cls(
            id=workflow.id,
            name=workflow.name,
            description=workflow.description,
            object_type=workflow.object_type,
            trigger_type=workflow.trigger_type.value,
            reentry_mode=workflow.reentry_mode.value,
            is_active=workflow.is_active,
            version=workflow.version,
            execution_count=workflow.execution_count,
            node_count=len(workflow.nodes),
            created_at=workflow.created_at,
            updated_at=workflow.updated_at,
            metadata=workflow.metadata
        )


class WorkflowDetailResponse(WorkflowResponse):
    """工作流详情响应"""
    trigger_config: Dict[str, Any] = Field(default_factory=dict, description="触发器配置")
    entry_criteria: Dict[str, Any] = Field(default_factory=dict, description="准入条件")
    nodes: List[Dict[str, Any]] = Field(default_factory=list, description="节点列表")
    edges: List[Dict[str, Any]] = Field(default_factory=list, description="边列表")
    last_scheduled_at: Optional[datetime] = Field(None, description="最近一次调度时间")

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> "WorkflowDetailResponse":
        summary = WorkflowResponse.from_workflow(workflow).model_dump()
        return cls(
            **summary,
            trigger_config=workflow.trigger_config,
            entry_criteria=workflow.entry_criteria.to_dict(),
            nodes=[node.to_dict() for node in workflow.nodes],
            edges=[edge.to_dict() for edge in workflow.edges],
            last_scheduled_at=workflow.last_scheduled_at
        )


class ValidationResponse(BaseModel):
    """图验证结果"""
    workflow_id: str = Field(..., description="工作流ID")
    valid: bool = Field(..., description="是否可以激活")
    errors: List[str] = Field(default_factory=list, description="错误列表")
    warnings: List[str] = Field(default_factory=list, description="警告列表")


class ManualTriggerRequest(BaseModel):
    """手动触发请求"""
    record_id: str = Field(..., description="记录ID")
    record: Dict[str, Any] = Field(default_factory=dict, description="记录字段")


# 执行相关模型

class StepResponse(BaseModel):
    """节点执行记录响应"""
    id: str = Field(..., description="记录ID")
    node_id: str = Field(..., description="节点ID")
    node_kind: str = Field(..., description="节点类型")
    sequence: int = Field(..., description="执行顺序")
    status: str = Field(..., description="状态")
    attempts: int = Field(0, description="尝试次数")
    output: Optional[Dict[str, Any]] = Field(None, description="输出")
    error_message: Optional[str] = Field(None, description="错误信息")
    started_at: datetime = Field(..., description="开始时间")
    completed_at: Optional[datetime] = Field(None, description="完成时间")

    @classmethod
    def from_step(cls, step: StepExecution) -> "StepResponse":
        return cls(
            id=step.id,
            node_id=step.node_id,
            node_kind=step.node_kind,
            sequence=step.sequence,
            status=step.status.value,
            attempts=step.attempts,
            output=step.output,
            error_message=step.error_message,
            started_at=step.started_at,
            completed_at=step.completed_at
        )


class ExecutionResponse(BaseModel):
    """执行实例响应"""
    id: str = Field(..., description="执行ID")
    workflow_id: str = Field(..., description="工作流ID")
    workflow_version: int = Field(..., description="工作流版本")
    record_id: str = Field(..., description="记录ID")
    trigger_type: Optional[str] = Field(None, description="触发器类型")
    status: ExecutionStatusEnum = Field(..., description="执行状态")
    current_node_id: Optional[str] = Field(None, description="当前节点ID")
    resume_at: Optional[datetime] = Field(None, description="恢复时间")
    last_error: Optional[str] = Field(None, description="最近错误")
    cancel_requested: bool = Field(False, description="是否已请求取消")
    started_at: datetime = Field(..., description="开始时间")
    completed_at: Optional[datetime] = Field(None, description="完成时间")

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_execution(cls, execution: WorkflowExecution) -> "ExecutionResponse":
        return cls(
            id=execution.id,
            workflow_id=execution.workflow_id,
            workflow_version=execution.workflow_version,
            record_id=execution.record_id,
            trigger_type=execution.trigger_type or None,
            status=execution.status.value,
            current_node_id=execution.current_node_id,
            resume_at=execution.resume_at,
            last_error=execution.last_error,
            cancel_requested=execution.cancel_requested,
            started_at=execution.started_at,
            completed_at=execution.completed_at
        )


class ExecutionDetailResponse(ExecutionResponse):
    """执行详情响应"""
    context: Dict[str, Any] = Field(default_factory=dict, description="执行上下文")
    retry_counts: Dict[str, int] = Field(default_factory=dict, description="节点重试计数")
    steps: List[StepResponse] = Field(default_factory=list, description="节点执行历史")

    @classmethod
    def from_execution(cls, execution: WorkflowExecution) -> "ExecutionDetailResponse":
        summary = ExecutionResponse.from_execution(execution).model_dump()
        return cls(
            **summary,
            context=execution.context,
            retry_counts=execution.retry_counts,
            steps=[StepResponse.from_step(step) for step in execution.steps]
        )


# 外部事件模型

class RecordEventRequest(BaseModel):
    """记录变更事件"""
    object_type: str = Field(..., description="对象类型")
    record_id: str = Field(..., description="记录ID")
    event_kind: str = Field(..., description="事件类型 record_create / record_update",
                            pattern="^(record_create|record_update)$")
    record_after: Dict[str, Any] = Field(default_factory=dict, description="变更后的记录")
    record_before: Optional[Dict[str, Any]] = Field(None, description="变更前的记录")
    occurred_at: Optional[datetime] = Field(None, description="事件发生时间")


class SubmissionEventRequest(BaseModel):
    """表单提交 / 支付到账事件"""
    object_type: str = Field(..., description="对象类型")
    record_id: str = Field(..., description="记录ID")
    record: Dict[str, Any] = Field(default_factory=dict, description="记录字段")


class EventAcceptedResponse(BaseModel):
    """事件处理结果"""
    accepted: bool = Field(True, description="事件已受理")
    executions: List[ExecutionResponse] = Field(default_factory=list, description="新创建的执行")


# 调度与监控

class TickRequest(BaseModel):
    """tick 请求"""
    now: Optional[datetime] = Field(None, description="当前时间，缺省为服务器时间")


class TickResponse(BaseModel):
    """tick 结果"""
    now: datetime = Field(..., description="本次 tick 使用的时间")
    resumed: List[str] = Field(default_factory=list, description="恢复的执行")
    claim_conflicts: List[str] = Field(default_factory=list, description="认领冲突的执行")
    reclaimed: List[str] = Field(default_factory=list, description="租约过期后重新认领的执行")
    released: List[str] = Field(default_factory=list, description="恢复失败、交还等待的执行")
    triggered: List[str] = Field(default_factory=list, description="定时触发的执行")
    skipped: List[str] = Field(default_factory=list, description="被跳过的工作流")


class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(..., description="健康状态")
    version: str = Field(..., description="版本号")
    timestamp: datetime = Field(..., description="检查时间")
    checks: Dict[str, Any] = Field(default_factory=dict, description="各组件检查结果")


class StatsResponse(BaseModel):
    """执行统计"""
    executions_by_status: Dict[str, int] = Field(default_factory=dict, description="各状态执行数")
    registered_action_types: List[str] = Field(default_factory=list, description="已注册的动作类型")


class EventResponse(BaseModel):
    """事件总线事件"""
    topic: str = Field(..., description="主题")
    timestamp: datetime = Field(..., description="发布时间")
    payload: Dict[str, Any] = Field(default_factory=dict, description="事件内容")
