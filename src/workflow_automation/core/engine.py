"""
工作流自动化引擎

把图模型、准入评估、重入守卫、解释器和调度器连接到外部边界：
记录变更事件、表单/支付事件、手动调用与周期性 tick。
引擎本身不持有后台任务，每次调用都是短生命周期的。
"""
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional, Union

from ..config import EngineSettings
from ..exceptions import (
    GraphValidationError, WorkflowNotFoundError, ExecutionNotFoundError,
    StateTransitionError, WorkflowExecutionError
)
from ..integrations.event_bus import EventBus
from ..models.workflow import Workflow, TriggerType
from ..models.execution import (
    WorkflowExecution, ExecutionStatus, RecordEvent, EventKind, TERMINAL_STATUSES
)
from ..storage.repository import WorkflowRepository, ExecutionRepository
from ..utils import utcnow, to_naive_utc
from .conditions import ConditionEvaluator
from .dispatcher import ActionDispatcher
from .entry import EntryEvaluator
from .error_handler import ErrorHandler, RetryPolicy
from .interpreter import GraphInterpreter
from .launcher import ExecutionLauncher
from .parser import WorkflowParser
from .reentry import ReentryGuard
from .scheduler import WorkflowScheduler, TickReport, parse_cron


logger = logging.getLogger(__name__)


class WorkflowEngine:
    """工作流自动化引擎"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        execution_repository: ExecutionRepository,
        dispatcher: ActionDispatcher = None,
        settings: EngineSettings = None,
        event_bus: EventBus = None,
        error_handler: ErrorHandler = None
    ):
        self.settings = settings or EngineSettings()
        self.workflow_repository = workflow_repository
        self.execution_repository = execution_repository
        self.event_bus = event_bus or EventBus()
        self.dispatcher = dispatcher or ActionDispatcher(
            timeout_seconds=self.settings.action_timeout_seconds
        )
        self.error_handler = error_handler or ErrorHandler(RetryPolicy.from_settings(self.settings))

        self.parser = WorkflowParser()
        self.conditions = ConditionEvaluator()
        self.entry_evaluator = EntryEvaluator(self.conditions)
        self.reentry_guard = ReentryGuard(execution_repository)
        self.interpreter = GraphInterpreter(
            execution_repository,
            self.dispatcher,
            error_handler=self.error_handler,
            condition_evaluator=self.conditions,
            event_bus=self.event_bus
        )
        self.launcher = ExecutionLauncher(self.reentry_guard, self.interpreter)
        self.scheduler = WorkflowScheduler(
            workflow_repository,
            execution_repository,
            self.interpreter,
            self.launcher,
            batch_size=self.settings.scheduler_batch_size,
            lease_seconds=self.settings.scheduler_lease_seconds
        )

    # ---- 工作流定义 ----

    async def create_workflow(self, definition: Union[Workflow, str, Dict[str, Any]]) -> Workflow:
        """创建工作流（草稿状态）"""
        workflow = definition if isinstance(definition, Workflow) else self.parser.parse(definition)
        workflow.is_active = False
        workflow.execution_count = 0
        await self.workflow_repository.save(workflow)

        logger.info(f"Created workflow: {workflow.id} ({workflow.name})")
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self.workflow_repository.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list_workflows(
        self,
        offset: int = 0,
        limit: int = 100,
        filters: Dict[str, Any] = None
    ) -> List[Workflow]:
        return await self.workflow_repository.list(offset=offset, limit=limit, filters=filters)

    async def update_workflow(self, workflow_id: str, changes: Dict[str, Any]) -> Workflow:
        """
        修改工作流定义并递增版本号

        进行中的执行使用创建时的图快照，不受影响。激活中的工作流修改后
        必须仍然满足图不变量。
        """
        existing = await self.get_workflow(workflow_id)

        merged = existing.to_dict()
        merged.update({k: v for k, v in changes.items() if k not in ("nodes", "edges")})
        if "nodes" in changes or "edges" in changes:
            merged["graph"] = {
                "nodes": changes.get("nodes", merged["graph"]["nodes"]),
                "edges": changes.get("edges", merged["graph"]["edges"])
            }

        workflow = self.parser.parse(merged)
        workflow.id = existing.id
        workflow.created_at = existing.created_at
        workflow.is_active = existing.is_active
        workflow.execution_count = existing.execution_count
        workflow.last_scheduled_at = existing.last_scheduled_at
        workflow.version = existing.version + 1

        if workflow.is_active:
            self._ensure_valid(workflow)

        await self.workflow_repository.update(workflow)
        logger.info(f"Updated workflow {workflow.id} to version {workflow.version}")
        return await self.get_workflow(workflow_id)

    async def delete_workflow(self, workflow_id: str) -> bool:
        deleted = await self.workflow_repository.delete(workflow_id)
        if deleted:
            logger.info(f"Deleted workflow: {workflow_id}")
        return deleted

    def validate_workflow(self, workflow: Workflow) -> Dict[str, List[str]]:
        """返回图验证错误与非致命警告"""
        errors = workflow.validate_graph(self.dispatcher.known_action_types())
        errors.extend(
            f"Entry criteria: {error}" for error in self.conditions.check(workflow.entry_criteria)
        )
        for node in workflow.nodes:
            if node.condition is not None:
                errors.extend(
                    f"Decision node '{node.id}': {error}" for error in self.conditions.check(node.condition)
                )
        cron = (workflow.trigger_config or {}).get("cron")
        if workflow.trigger_type == TriggerType.SCHEDULED and cron:
            try:
                parse_cron(str(cron))
            except ValueError as e:
                errors.append(f"invalid cron expression '{cron}': {e}")
        return {"errors": errors, "warnings": workflow.validation_warnings()}

    async def activate_workflow(self, workflow_id: str) -> Workflow:
        """
        draft → active

        Raises:
            GraphValidationError: 图不变量不满足，拒绝激活
        """
        workflow = await self.get_workflow(workflow_id)
        self._ensure_valid(workflow)

        workflow.is_active = True
        await self.workflow_repository.update(workflow)
        logger.info(f"Activated workflow: {workflow_id}")
        return await self.get_workflow(workflow_id)

    async def deactivate_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        workflow.is_active = False
        await self.workflow_repository.update(workflow)
        logger.info(f"Deactivated workflow: {workflow_id}")
        return await self.get_workflow(workflow_id)

    def _ensure_valid(self, workflow: Workflow):
        report = self.validate_workflow(workflow)
        if report["errors"]:
            logger.warning(f"Workflow {workflow.id} failed validation: {report['errors']}")
            raise GraphValidationError(workflow.id, report["errors"])
        for warning in report["warnings"]:
            logger.warning(f"Workflow {workflow.id}: {warning}")

    # ---- 外部事件入口 ----

    async def handle_record_event(
        self,
        event: RecordEvent,
        now: Optional[datetime] = None
    ) -> List[WorkflowExecution]:
        """
        处理记录变更事件（至少一次投递）

        返回本次新创建的执行；重入策略拒绝的工作流不创建执行。
        """
        now = to_naive_utc(now) if now else utcnow()
        workflows = await self.workflow_repository.list_active(object_type=event.object_type)
        matched = self.entry_evaluator.match(workflows, event)

        executions = []
        for workflow in matched:
            try:
                execution = await self.launcher.launch(
                    workflow,
                    record_id=event.record_id,
                    record=event.record_after,
                    now=now
                )
            except Exception as e:
                # 单个工作流启动失败不影响其他匹配的工作流
                logger.error(
                    f"Failed to launch workflow {workflow.id} for record {event.record_id}: {e}",
                    exc_info=True
                )
                continue
            if execution is not None:
                executions.append(execution)
        return executions

    async def handle_form_submit(
        self,
        object_type: str,
        record_id: str,
        record: Dict[str, Any] = None,
        now: Optional[datetime] = None
    ) -> List[WorkflowExecution]:
        event = RecordEvent(
            object_type=object_type,
            record_id=record_id,
            event_kind=EventKind.FORM_SUBMIT,
            record_after=record or {}
        )
        return await self.handle_record_event(event, now)

    async def handle_payment_received(
        self,
        object_type: str,
        record_id: str,
        record: Dict[str, Any] = None,
        now: Optional[datetime] = None
    ) -> List[WorkflowExecution]:
        event = RecordEvent(
            object_type=object_type,
            record_id=record_id,
            event_kind=EventKind.PAYMENT_RECEIVED,
            record_after=record or {}
        )
        return await self.handle_record_event(event, now)

    async def trigger_manual(
        self,
        workflow_id: str,
        record_id: str,
        record: Dict[str, Any] = None,
        now: Optional[datetime] = None
    ) -> Optional[WorkflowExecution]:
        """手动调用：跳过触发器匹配，仍受准入条件与重入策略约束"""
        now = to_naive_utc(now) if now else utcnow()
        workflow = await self.get_workflow(workflow_id)
        record = record or {}

        if not self.entry_evaluator.evaluate_manual(workflow, record):
            logger.info(f"Manual trigger of workflow {workflow_id} for record {record_id} not admitted")
            return None

        return await self.launcher.launch(
            workflow,
            record_id=record_id,
            record=record,
            now=now,
            trigger_type=TriggerType.MANUAL
        )

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """外部时间源的周期性调用"""
        return await self.scheduler.tick(now)

    # ---- 执行 ----

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.execution_repository.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def list_executions(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        record_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        return await self.execution_repository.list_by_workflow(
            workflow_id, status=status, record_id=record_id, offset=offset, limit=limit
        )

    async def request_cancel(self, execution_id: str) -> WorkflowExecution:
        """
        请求取消执行

        pending / waiting 立即取消；running 在下一个节点边界取消。

        Raises:
            ExecutionNotFoundError: 执行不存在
            StateTransitionError: 执行已处于 completed / failed
        """
        status = await self.execution_repository.request_cancel(execution_id)
        if status is None:
            raise ExecutionNotFoundError(execution_id)
        if status in TERMINAL_STATUSES and status != ExecutionStatus.CANCELLED:
            raise StateTransitionError(status.value, ExecutionStatus.CANCELLED.value, "execution already finished")

        logger.info(f"Cancellation requested for execution {execution_id} (status: {status.value})")
        return await self.get_execution(execution_id)

    async def restart_execution(
        self,
        execution_id: str,
        now: Optional[datetime] = None
    ) -> WorkflowExecution:
        """
        重启：为同一工作流与记录创建新的执行（失败的执行本身保持不变）

        重启由操作员显式发起，不受重入策略限制。
        """
        now = to_naive_utc(now) if now else utcnow()
        original = await self.get_execution(execution_id)
        if original.status not in TERMINAL_STATUSES:
            raise StateTransitionError(
                original.status.value, ExecutionStatus.PENDING.value,
                "only finished executions can be restarted"
            )

        workflow = await self.get_workflow(original.workflow_id)
        if not workflow.is_active:
            raise WorkflowExecutionError(f"Workflow '{workflow.id}' is not active")

        execution = await self.launcher.launch(
            workflow,
            record_id=original.record_id,
            record=original.record,
            now=now,
            trigger_type=TriggerType(original.trigger_type) if original.trigger_type else None,
            context={"restarted_from": original.id},
            bypass_reentry=True
        )
        logger.info(f"Restarted execution {execution_id} as {execution.id}")
        return execution
