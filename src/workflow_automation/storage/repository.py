"""
存储仓库接口定义
"""
import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable, Tuple

from ..exceptions import EntryAdmissionConflict
from ..models.workflow import Workflow, TriggerType
from ..models.execution import (
    WorkflowExecution, ExecutionStatus, StepExecution, ReentryRule
)
from ..utils import utcnow


# 状态转换时允许一并写入的执行字段
TRANSITION_FIELDS = frozenset({
    "current_node_id",
    "context",
    "resume_at",
    "lease_until",
    "retry_counts",
    "last_error",
    "completed_at",
    "cancel_requested"
})


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class WorkflowRepository(ABC):
    """工作流存储仓库接口（Graph Model store）"""

    @abstractmethod
    async def save(self, workflow: Workflow) -> str:
        """保存工作流"""
        pass

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """获取工作流"""
        pass

    @abstractmethod
    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        filters: Dict[str, Any] = None
    ) -> List[Workflow]:
        """
        列出工作流

        filters 支持 is_active / object_type / trigger_type
        """
        pass

    @abstractmethod
    async def update(self, workflow: Workflow) -> bool:
        """更新工作流"""
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """删除工作流"""
        pass

    @abstractmethod
    async def claim_schedule_slot(
        self,
        workflow_id: str,
        expected_last: Optional[datetime],
        fire_time: datetime
    ) -> bool:
        """
        认领一个定时触发时间槽

        仅当 last_scheduled_at 仍等于 expected_last 时将其更新为 fire_time
        （compare-and-set），返回是否认领成功。
        """
        pass

    async def list_active(
        self,
        object_type: str = None,
        trigger_types: Iterable[TriggerType] = None
    ) -> List[Workflow]:
        """列出激活的工作流，可按对象类型与触发器类型过滤"""
        filters: Dict[str, Any] = {"is_active": True}
        if object_type is not None:
            filters["object_type"] = object_type
        workflows = await self.list(offset=0, limit=10_000, filters=filters)
        if trigger_types is not None:
            wanted = {_enum_value(t) for t in trigger_types}
            workflows = [w for w in workflows if w.trigger_type.value in wanted]
        return workflows


class ExecutionRepository(ABC):
    """执行实例存储仓库接口（Execution Store）"""

    @abstractmethod
    async def create(self, execution: WorkflowExecution, rule: Optional[ReentryRule] = None) -> str:
        """
        创建执行实例

        准入检查、插入执行实例以及工作流 execution_count 自增在同一个原子单元内完成。

        Raises:
            EntryAdmissionConflict: 重入规则拒绝或并发准入竞争失败
        """
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        """获取执行实例（包含节点执行历史）"""
        pass

    @abstractmethod
    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        record_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        """根据工作流ID列出执行实例"""
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: ExecutionStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        """根据状态列出执行实例"""
        pass

    @abstractmethod
    async def latest_for_pair(self, workflow_id: str, record_id: str) -> Optional[WorkflowExecution]:
        """某 (workflow, record) 组合最近开始的执行"""
        pass

    @abstractmethod
    async def list_due_waiting(self, now: datetime, limit: int = 100) -> List[WorkflowExecution]:
        """status = waiting 且 resume_at <= now 的执行"""
        pass

    @abstractmethod
    async def list_expired_leases(self, now: datetime, limit: int = 100) -> List[WorkflowExecution]:
        """status = running 且调度器租约已过期 (lease_until < now) 的执行"""
        pass

    @abstractmethod
    async def reclaim(self, execution_id: str, now: datetime, lease_until: datetime) -> bool:
        """
        重新认领租约过期的执行

        仅当执行仍为 running 且 lease_until < now 时写入新的租约，返回是否认领成功。
        """
        pass

    @abstractmethod
    async def transition(
        self,
        execution_id: str,
        expected: Iterable[ExecutionStatus],
        new_status: ExecutionStatus,
        **changes: Any
    ) -> bool:
        """
        条件状态转换

        仅当当前状态属于 expected 时写入新状态及 changes 中的字段，
        返回是否写入成功。这是执行行上唯一的串行化手段。
        """
        pass

    @abstractmethod
    async def save_progress(self, execution: WorkflowExecution) -> bool:
        """
        保存运行中的进度（current_node_id / context / retry_counts / last_error）

        仅当执行仍处于 running 时写入。
        """
        pass

    @abstractmethod
    async def request_cancel(self, execution_id: str) -> Optional[ExecutionStatus]:
        """
        请求取消

        pending / waiting 直接转为 cancelled；running 仅设置 cancel_requested，
        由解释器在下一个节点边界处理。返回处理后的状态，执行不存在时返回 None。
        """
        pass

    @abstractmethod
    async def save_step(self, step: StepExecution) -> None:
        """新增或更新节点执行记录"""
        pass

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        """按状态统计执行数量"""
        pass

    async def claim(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        new_status: ExecutionStatus,
        **changes: Any
    ) -> bool:
        """认领：从 expected 到 new_status 的条件转换"""
        return await self.transition(execution_id, [expected], new_status, **changes)


# 内存实现（用于测试与命令行）
class InMemoryWorkflowRepository(WorkflowRepository):
    """内存工作流仓库实现"""

    def __init__(self):
        self.workflows: Dict[str, Workflow] = {}
        self._lock = asyncio.Lock()

    async def save(self, workflow: Workflow) -> str:
        async with self._lock:
            self.workflows[workflow.id] = copy.deepcopy(workflow)
        return workflow.id

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        workflow = self.workflows.get(workflow_id)
        return copy.deepcopy(workflow) if workflow else None

    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        filters: Dict[str, Any] = None
    ) -> List[Workflow]:
        filters = filters or {}
        results = []
        for workflow in self.workflows.values():
            if "is_active" in filters and filters["is_active"] is not None \
                    and workflow.is_active != filters["is_active"]:
                continue
            if filters.get("object_type") and workflow.object_type != filters["object_type"]:
                continue
            if filters.get("trigger_type") and \
                    workflow.trigger_type.value != _enum_value(filters["trigger_type"]):
                continue
            results.append(copy.deepcopy(workflow))
        results.sort(key=lambda w: w.created_at)
        return results[offset:offset + limit]

    async def update(self, workflow: Workflow) -> bool:
        async with self._lock:
            stored = self.workflows.get(workflow.id)
            if stored is None:
                return False
            workflow = copy.deepcopy(workflow)
            workflow.updated_at = utcnow()
            # 计数器与调度槽只由存储层原子维护
            workflow.execution_count = stored.execution_count
            workflow.last_scheduled_at = stored.last_scheduled_at
            self.workflows[workflow.id] = workflow
            return True

    async def delete(self, workflow_id: str) -> bool:
        async with self._lock:
            if workflow_id in self.workflows:
                del self.workflows[workflow_id]
                return True
            return False

    async def claim_schedule_slot(
        self,
        workflow_id: str,
        expected_last: Optional[datetime],
        fire_time: datetime
    ) -> bool:
        async with self._lock:
            workflow = self.workflows.get(workflow_id)
            if workflow is None or workflow.last_scheduled_at != expected_last:
                return False
            workflow.last_scheduled_at = fire_time
            return True

    def increment_execution_count(self, workflow_id: str) -> None:
        """在调用方持有的原子单元内自增执行计数"""
        workflow = self.workflows.get(workflow_id)
        if workflow is not None:
            workflow.execution_count += 1


class InMemoryExecutionRepository(ExecutionRepository):
    """内存执行仓库实现"""

    def __init__(self, workflow_repository: InMemoryWorkflowRepository = None):
        self.executions: Dict[str, WorkflowExecution] = {}
        self.markers: Dict[Tuple[str, str], datetime] = {}
        self.workflow_repository = workflow_repository
        self._lock = asyncio.Lock()

    async def create(self, execution: WorkflowExecution, rule: Optional[ReentryRule] = None) -> str:
        async with self._lock:
            if rule is not None:
                key = (rule.workflow_id, rule.record_id)
                last_started_at = self.markers.get(key)
                if last_started_at is None:
                    latest = self._latest(rule.workflow_id, rule.record_id)
                    last_started_at = latest.started_at if latest else None
                if not rule.admits(last_started_at):
                    raise EntryAdmissionConflict(
                        rule.workflow_id, rule.record_id,
                        f"last execution started at {last_started_at.isoformat()}"
                    )
                self.markers[key] = rule.now

            self.executions[execution.id] = copy.deepcopy(execution)
            if self.workflow_repository is not None:
                self.workflow_repository.increment_execution_count(execution.workflow_id)
            return execution.id

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        execution = self.executions.get(execution_id)
        return copy.deepcopy(execution) if execution else None

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        record_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        results = []
        for execution in self.executions.values():
            if execution.workflow_id != workflow_id:
                continue
            if status and execution.status != status:
                continue
            if record_id is not None and execution.record_id != record_id:
                continue
            results.append(execution)
        results.sort(key=lambda e: e.started_at)
        return [copy.deepcopy(e) for e in results[offset:offset + limit]]

    async def list_by_status(
        self,
        status: ExecutionStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        results = [e for e in self.executions.values() if e.status == status]
        results.sort(key=lambda e: e.started_at)
        return [copy.deepcopy(e) for e in results[offset:offset + limit]]

    def _latest(self, workflow_id: str, record_id: str) -> Optional[WorkflowExecution]:
        candidates = [
            e for e in self.executions.values()
            if e.workflow_id == workflow_id and e.record_id == record_id
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda e: e.started_at)

    async def latest_for_pair(self, workflow_id: str, record_id: str) -> Optional[WorkflowExecution]:
        latest = self._latest(workflow_id, record_id)
        return copy.deepcopy(latest) if latest else None

    async def list_due_waiting(self, now: datetime, limit: int = 100) -> List[WorkflowExecution]:
        due = [
            e for e in self.executions.values()
            if e.status == ExecutionStatus.WAITING and e.resume_at is not None and e.resume_at <= now
        ]
        due.sort(key=lambda e: e.resume_at)
        return [copy.deepcopy(e) for e in due[:limit]]

    async def list_expired_leases(self, now: datetime, limit: int = 100) -> List[WorkflowExecution]:
        expired = [
            e for e in self.executions.values()
            if e.status == ExecutionStatus.RUNNING and e.lease_until is not None and e.lease_until < now
        ]
        expired.sort(key=lambda e: e.lease_until)
        return [copy.deepcopy(e) for e in expired[:limit]]

    async def reclaim(self, execution_id: str, now: datetime, lease_until: datetime) -> bool:
        async with self._lock:
            execution = self.executions.get(execution_id)
            if execution is None or execution.status != ExecutionStatus.RUNNING:
                return False
            if execution.lease_until is None or execution.lease_until >= now:
                return False
            execution.lease_until = lease_until
            execution.updated_at = utcnow()
            return True

    async def transition(
        self,
        execution_id: str,
        expected: Iterable[ExecutionStatus],
        new_status: ExecutionStatus,
        **changes: Any
    ) -> bool:
        unknown = set(changes) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot write execution fields in a transition: {sorted(unknown)}")

        async with self._lock:
            execution = self.executions.get(execution_id)
            if execution is None or execution.status not in set(expected):
                return False
            execution.status = new_status
            for name, value in changes.items():
                setattr(execution, name, copy.deepcopy(value))
            execution.updated_at = utcnow()
            return True

    async def save_progress(self, execution: WorkflowExecution) -> bool:
        async with self._lock:
            stored = self.executions.get(execution.id)
            if stored is None or stored.status != ExecutionStatus.RUNNING:
                return False
            stored.current_node_id = execution.current_node_id
            stored.context = copy.deepcopy(execution.context)
            stored.retry_counts = dict(execution.retry_counts)
            stored.last_error = execution.last_error
            stored.updated_at = utcnow()
            return True

    async def request_cancel(self, execution_id: str) -> Optional[ExecutionStatus]:
        async with self._lock:
            execution = self.executions.get(execution_id)
            if execution is None:
                return None
            if execution.status in (ExecutionStatus.PENDING, ExecutionStatus.WAITING):
                execution.status = ExecutionStatus.CANCELLED
                execution.resume_at = None
                execution.completed_at = utcnow()
                execution.updated_at = execution.completed_at
            elif execution.status == ExecutionStatus.RUNNING:
                execution.cancel_requested = True
                execution.updated_at = utcnow()
            return execution.status

    async def save_step(self, step: StepExecution) -> None:
        async with self._lock:
            execution = self.executions.get(step.execution_id)
            if execution is None:
                return
            step = copy.deepcopy(step)
            for index, existing in enumerate(execution.steps):
                if existing.id == step.id:
                    execution.steps[index] = step
                    return
            execution.steps.append(step)

    async def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ExecutionStatus}
        for execution in self.executions.values():
            counts[execution.status.value] += 1
        return counts
