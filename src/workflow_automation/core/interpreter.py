"""
图解释器

逐个节点推进一次执行：分发动作、评估决策分支，直到执行完成、失败，
或停在等待节点上。等待以数据形式持久化 (status = waiting, resume_at)，
由调度器在到期后认领并交回解释器继续。

执行行上的每一次状态写入都是以预期状态为条件的更新；条件不满足
（例如被并发取消）时解释器立即停止，不再写入。
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..exceptions import ExecutionNotFoundError, NodeExecutionError, UnknownActionTypeError
from ..integrations.event_bus import EventBus
from ..models.workflow import Node, NodeKind, Branch
from ..models.execution import (
    WorkflowExecution, ExecutionStatus, StepExecution, StepStatus,
    ExecutionEvent, ExecutionEventType
)
from ..storage.repository import ExecutionRepository
from ..utils import utcnow, parse_timestamp
from .conditions import ConditionEvaluator, lookup_field, MISSING
from .dispatcher import ActionDispatcher
from .error_handler import ErrorHandler


logger = logging.getLogger(__name__)


EXECUTION_TOPIC = "workflow.execution.events"
NODE_TOPIC = "workflow.node.events"


def compute_resume_at(node: Node, context: Dict[str, Any], now: datetime) -> datetime:
    """
    计算等待节点的恢复时间

    支持 duration ({days, hours, minutes, seconds} 或秒数)、until (ISO 时间戳)
    和 until_field (上下文中保存时间戳的字段)。

    Raises:
        NodeExecutionError: 无法得到恢复时间
    """
    wait = node.wait or {}

    if "duration" in wait:
        duration = wait["duration"]
        try:
            if isinstance(duration, dict):
                delta = timedelta(
                    days=float(duration.get("days", 0)),
                    hours=float(duration.get("hours", 0)),
                    minutes=float(duration.get("minutes", 0)),
                    seconds=float(duration.get("seconds", 0))
                )
            else:
                delta = timedelta(seconds=float(duration))
        except (TypeError, ValueError) as e:
            raise NodeExecutionError(node.id, f"Invalid wait duration: {duration!r}", e)
        return now + delta

    if "until" in wait:
        resume_at = parse_timestamp(wait["until"])
        if resume_at is None:
            raise NodeExecutionError(node.id, f"Invalid wait timestamp: {wait['until']!r}")
        return resume_at

    if "until_field" in wait:
        value = lookup_field(context, wait["until_field"])
        resume_at = parse_timestamp(None if value is MISSING else value)
        if resume_at is None:
            raise NodeExecutionError(
                node.id, f"Context field '{wait['until_field']}' does not hold a timestamp"
            )
        return resume_at

    raise NodeExecutionError(node.id, "Wait node has no duration, until or until_field")


class GraphInterpreter:
    """图解释器"""

    def __init__(
        self,
        execution_repository: ExecutionRepository,
        dispatcher: ActionDispatcher,
        error_handler: ErrorHandler = None,
        condition_evaluator: ConditionEvaluator = None,
        event_bus: EventBus = None
    ):
        self.execution_repository = execution_repository
        self.dispatcher = dispatcher
        self.error_handler = error_handler or ErrorHandler()
        self.conditions = condition_evaluator or ConditionEvaluator()
        self.event_bus = event_bus

    async def start(self, execution_id: str, now: Optional[datetime] = None) -> WorkflowExecution:
        """pending → running：从触发节点的唯一后继开始运行"""
        now = now or utcnow()
        execution = await self._load(execution_id)
        if execution.status != ExecutionStatus.PENDING:
            logger.debug(f"Execution {execution_id} is {execution.status.value}, not starting")
            return execution

        triggers = execution.graph.trigger_nodes()
        if len(triggers) != 1:
            await self.execution_repository.transition(
                execution.id, [ExecutionStatus.PENDING], ExecutionStatus.FAILED,
                last_error="Workflow graph has no unique trigger node",
                completed_at=utcnow()
            )
            return await self._load(execution_id)

        trigger = triggers[0]
        first_node_id = execution.graph.successor(trigger.id)
        started = await self.execution_repository.transition(
            execution.id, [ExecutionStatus.PENDING], ExecutionStatus.RUNNING,
            current_node_id=first_node_id
        )
        if not started:
            logger.info(f"Execution {execution_id} was changed concurrently, not starting")
            return await self._load(execution_id)

        execution.status = ExecutionStatus.RUNNING
        execution.current_node_id = first_node_id

        step = self._new_step(execution, trigger)
        step.attempts = 1
        step.complete({"record_id": execution.record_id})
        await self.execution_repository.save_step(step)

        logger.info(f"Started execution {execution.id} of workflow {execution.workflow_id}")
        await self._publish_execution_event(execution, ExecutionEventType.EXECUTION_STARTED)

        return await self._drive(execution, now)

    async def resume(self, execution_id: str, now: Optional[datetime] = None) -> WorkflowExecution:
        """
        从等待节点的后继继续

        调用方必须已经通过 waiting → running 认领了该执行。
        """
        now = now or utcnow()
        execution = await self._load(execution_id)
        if execution.status != ExecutionStatus.RUNNING:
            logger.debug(f"Execution {execution_id} is {execution.status.value}, not resuming")
            return execution

        wait_node = execution.graph.get_node(execution.current_node_id) \
            if execution.current_node_id else None
        if wait_node is not None and wait_node.kind == NodeKind.WAIT:
            for step in reversed(execution.steps):
                if step.node_id == wait_node.id and step.status == StepStatus.WAITING:
                    step.complete({"resumed_at": now.isoformat()})
                    await self.execution_repository.save_step(step)
                    break
            execution.current_node_id = execution.graph.successor(wait_node.id)
            if not await self.execution_repository.save_progress(execution):
                return await self._load(execution_id)

        logger.info(f"Resumed execution {execution.id} at node {execution.current_node_id}")
        await self._publish_execution_event(execution, ExecutionEventType.EXECUTION_RESUMED)

        return await self._drive(execution, now)

    async def _drive(self, execution: WorkflowExecution, now: datetime) -> WorkflowExecution:
        """运行连续的节点，直到终止状态或等待"""
        while True:
            # 节点边界：重新读取存储中的状态以响应取消
            stored = await self.execution_repository.get(execution.id)
            if stored is None or stored.status != ExecutionStatus.RUNNING:
                return stored
            if stored.cancel_requested:
                return await self._cancel(execution)

            node_id = execution.current_node_id
            if node_id is None:
                return await self._complete(execution)

            node = execution.graph.get_node(node_id)
            if node is None:
                return await self._fail(execution, f"Node '{node_id}' not found in workflow graph")

            if node.kind == NodeKind.ACTION:
                if not await self._execute_action(execution, node):
                    return await self._fail(execution, execution.last_error)
                next_node_id = execution.graph.successor(node.id)

            elif node.kind == NodeKind.DECISION:
                branch = await self._execute_decision(execution, node)
                next_node_id = execution.graph.successor(node.id, branch)

            elif node.kind == NodeKind.WAIT:
                return await self._park(execution, node, now)

            else:
                next_node_id = execution.graph.successor(node.id)

            if next_node_id is None:
                return await self._complete(execution)

            execution.current_node_id = next_node_id
            if not await self.execution_repository.save_progress(execution):
                logger.info(f"Execution {execution.id} was changed concurrently, stopping")
                return await self.execution_repository.get(execution.id)

    async def _execute_action(self, execution: WorkflowExecution, node: Node) -> bool:
        """执行动作节点，按重试策略重试；返回是否成功"""
        policy = self.error_handler.policy.override(node.metadata.get("retry_policy"))
        timeout = node.parameters.get("timeout")
        step = self._new_step(execution, node)
        await self.execution_repository.save_step(step)
        await self._publish_node_event(execution, node, ExecutionEventType.NODE_STARTED)

        while True:
            step.attempts += 1
            try:
                result = await self.dispatcher.execute(
                    node.action_type,
                    node.parameters,
                    execution.context,
                    timeout=float(timeout) if timeout else None
                )
            except UnknownActionTypeError as e:
                execution.last_error = str(e)
                step.fail(execution.last_error)
                await self.execution_repository.save_step(step)
                self.error_handler.record_exhausted(execution.id, node.id, step.attempts, execution.last_error)
                return False

            if result.success:
                self._merge_output(execution, node, result.output)
                step.complete(result.output)
                await self.execution_repository.save_step(step)
                await self._publish_node_event(
                    execution, node, ExecutionEventType.NODE_COMPLETED,
                    {"duration_ms": result.duration_ms}
                )
                return True

            execution.retry_counts[node.id] = execution.retry_counts.get(node.id, 0) + 1
            execution.last_error = result.error
            await self.execution_repository.save_progress(execution)

            if not self.error_handler.should_retry(step.attempts, policy):
                step.fail(result.error)
                await self.execution_repository.save_step(step)
                self.error_handler.record_exhausted(execution.id, node.id, step.attempts, result.error)
                await self._publish_node_event(
                    execution, node, ExecutionEventType.NODE_FAILED, {"error": result.error}
                )
                return False

            await self._publish_node_event(
                execution, node, ExecutionEventType.NODE_RETRYING,
                {"attempt": step.attempts, "error": result.error}
            )
            await self.error_handler.wait_before_retry(
                execution.id, node.id, step.attempts - 1, result.error, policy
            )

    async def _execute_decision(self, execution: WorkflowExecution, node: Node) -> Branch:
        """评估决策节点，缺失数据与无法评估的条件都走 no 分支"""
        data = {**execution.record, **execution.context}
        try:
            matched = self.conditions.evaluate(node.condition, data)
        except ValueError as e:
            logger.warning(f"Decision node {node.id} could not be evaluated, following 'no': {e}")
            matched = False

        branch = Branch.YES if matched else Branch.NO
        step = self._new_step(execution, node)
        step.attempts = 1
        step.complete({"branch": branch.value})
        await self.execution_repository.save_step(step)
        logger.debug(f"Decision node {node.id} of execution {execution.id} took '{branch.value}'")
        return branch

    async def _park(self, execution: WorkflowExecution, node: Node, now: datetime) -> WorkflowExecution:
        """running → waiting：持久化 resume_at，不再继续推进"""
        try:
            resume_at = compute_resume_at(node, execution.context, now)
        except NodeExecutionError as e:
            return await self._fail(execution, e.message)

        step = self._new_step(execution, node)
        step.attempts = 1
        step.status = StepStatus.WAITING
        step.output = {"resume_at": resume_at.isoformat()}
        await self.execution_repository.save_step(step)

        parked = await self.execution_repository.transition(
            execution.id, [ExecutionStatus.RUNNING], ExecutionStatus.WAITING,
            current_node_id=node.id,
            resume_at=resume_at,
            context=execution.context,
            retry_counts=execution.retry_counts
        )
        if parked:
            logger.info(f"Execution {execution.id} waiting at node {node.id} until {resume_at.isoformat()}")
            await self._publish_execution_event(
                execution, ExecutionEventType.EXECUTION_WAITING, {"resume_at": resume_at.isoformat()}
            )
        return await self._load(execution.id)

    async def _complete(self, execution: WorkflowExecution) -> WorkflowExecution:
        completed = await self.execution_repository.transition(
            execution.id, [ExecutionStatus.RUNNING], ExecutionStatus.COMPLETED,
            context=execution.context,
            retry_counts=execution.retry_counts,
            completed_at=utcnow()
        )
        if completed:
            logger.info(f"Execution {execution.id} completed")
            await self._publish_execution_event(execution, ExecutionEventType.EXECUTION_COMPLETED)
        return await self._load(execution.id)

    async def _fail(self, execution: WorkflowExecution, error: Optional[str]) -> WorkflowExecution:
        """running → failed，保留 current_node_id 与 last_error"""
        failed = await self.execution_repository.transition(
            execution.id, [ExecutionStatus.RUNNING], ExecutionStatus.FAILED,
            current_node_id=execution.current_node_id,
            context=execution.context,
            retry_counts=execution.retry_counts,
            last_error=error,
            completed_at=utcnow()
        )
        if failed:
            logger.error(
                f"Execution {execution.id} failed at node {execution.current_node_id}: {error}",
                extra={"execution_id": execution.id, "node_id": execution.current_node_id}
            )
            await self._publish_execution_event(
                execution, ExecutionEventType.EXECUTION_FAILED, {"error": error}
            )
        return await self._load(execution.id)

    async def _cancel(self, execution: WorkflowExecution) -> WorkflowExecution:
        cancelled = await self.execution_repository.transition(
            execution.id, [ExecutionStatus.RUNNING], ExecutionStatus.CANCELLED,
            context=execution.context,
            retry_counts=execution.retry_counts,
            completed_at=utcnow()
        )
        if cancelled:
            logger.info(f"Execution {execution.id} cancelled at node {execution.current_node_id}")
            await self._publish_execution_event(execution, ExecutionEventType.EXECUTION_CANCELLED)
        return await self._load(execution.id)

    def _merge_output(self, execution: WorkflowExecution, node: Node, output: Dict[str, Any]):
        """动作输出合并进上下文：steps.<node_id> 下完整保存，顶层键直接覆盖"""
        if not output:
            return
        execution.context.setdefault("steps", {})[node.id] = output
        for key, value in output.items():
            if key != "steps":
                execution.context[key] = value

    def _new_step(self, execution: WorkflowExecution, node: Node) -> StepExecution:
        step = StepExecution(
            execution_id=execution.id,
            node_id=node.id,
            node_kind=node.kind.value,
            sequence=len(execution.steps)
        )
        execution.steps.append(step)
        return step

    async def _load(self, execution_id: str) -> WorkflowExecution:
        execution = await self.execution_repository.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def _publish_execution_event(
        self,
        execution: WorkflowExecution,
        event_type: ExecutionEventType,
        data: Dict[str, Any] = None
    ):
        """发布执行事件"""
        if self.event_bus is None:
            return
        event = ExecutionEvent(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            node_id=execution.current_node_id,
            event_type=event_type.value,
            data=data or {}
        )
        await self.event_bus.publish(EXECUTION_TOPIC, event)

    async def _publish_node_event(
        self,
        execution: WorkflowExecution,
        node: Node,
        event_type: ExecutionEventType,
        data: Dict[str, Any] = None
    ):
        """发布节点事件"""
        if self.event_bus is None:
            return
        event = ExecutionEvent(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            node_id=node.id,
            event_type=event_type.value,
            data=data or {}
        )
        await self.event_bus.publish(NODE_TOPIC, event)
