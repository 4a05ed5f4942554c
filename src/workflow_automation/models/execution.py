"""
工作流执行模型
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, List
from uuid import uuid4

from .workflow import Graph
from ..utils import utcnow


class ExecutionStatus(Enum):
    """工作流执行状态"""
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED
})


class StepStatus(Enum):
    """单个节点执行记录的状态"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"


class EventKind(Enum):
    """外部事件类型"""
    RECORD_CREATE = "record_create"
    RECORD_UPDATE = "record_update"
    FORM_SUBMIT = "form_submit"
    PAYMENT_RECEIVED = "payment_received"


@dataclass
class RecordEvent:
    """记录变更事件（至少一次投递）"""
    object_type: str
    record_id: str
    event_kind: EventKind
    record_after: Dict[str, Any] = field(default_factory=dict)
    record_before: Optional[Dict[str, Any]] = None
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class StepExecution:
    """节点执行历史记录"""
    id: str = field(default_factory=lambda: str(uuid4()))
    execution_id: str = ""
    node_id: str = ""
    node_kind: str = ""
    sequence: int = 0  # 在执行历史中的顺序
    status: StepStatus = StepStatus.RUNNING
    attempts: int = 0
    output: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def complete(self, output: Optional[Dict[str, Any]] = None):
        self.status = StepStatus.COMPLETED
        self.output = output
        self.completed_at = utcnow()

    def fail(self, error_message: str):
        self.status = StepStatus.FAILED
        self.error_message = error_message
        self.completed_at = utcnow()


@dataclass
class WorkflowExecution:
    """工作流执行实例（持久化状态的单元）"""
    id: str = field(default_factory=lambda: str(uuid4()))
    workflow_id: str = ""
    workflow_version: int = 1
    record_id: str = ""
    object_type: str = ""
    trigger_type: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_node_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    record: Dict[str, Any] = field(default_factory=dict)
    graph: Graph = field(default_factory=Graph)  # 创建时的图快照
    resume_at: Optional[datetime] = None
    lease_until: Optional[datetime] = None  # 调度器认领的租约到期时间
    retry_counts: Dict[str, int] = field(default_factory=dict)
    last_error: Optional[str] = None
    cancel_requested: bool = False
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)
    steps: List[StepExecution] = field(default_factory=list)

    def is_terminal_state(self) -> bool:
        """是否为终止状态"""
        return self.status in TERMINAL_STATUSES

    def visited_node_ids(self) -> List[str]:
        """按执行顺序返回访问过的节点ID"""
        return [step.node_id for step in self.steps]


@dataclass
class ExecutionEvent:
    """执行事件（发布到事件总线）"""
    id: str = field(default_factory=lambda: str(uuid4()))
    execution_id: str = ""
    workflow_id: str = ""
    node_id: Optional[str] = None
    event_type: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    data: Dict[str, Any] = field(default_factory=dict)


class ExecutionEventType(Enum):
    """执行事件类型"""
    EXECUTION_STARTED = "execution_started"
    EXECUTION_WAITING = "execution_waiting"
    EXECUTION_RESUMED = "execution_resumed"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"

    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_RETRYING = "node_retrying"


@dataclass
class ReentryRule:
    """
    准入规则（由重入守卫计算，存储层在创建执行时原子地执行）

    cutoff 为 None 表示只要存在过执行就不再准入（once）；
    否则最近一次执行的开始时间必须早于 cutoff。
    bypass 为 True 时不做检查，但仍把重入标记推进到 now（操作员重启）。
    """
    workflow_id: str
    record_id: str
    now: datetime
    cutoff: Optional[datetime] = None
    bypass: bool = False

    def admits(self, last_started_at: Optional[datetime]) -> bool:
        if self.bypass or last_started_at is None:
            return True
        if self.cutoff is None:
            return False
        return last_started_at < self.cutoff
