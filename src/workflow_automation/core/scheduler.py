"""
调度器

由外部时间源周期性调用 tick(now)。引擎本身不持有任何轮询循环：
- 恢复阶段：认领到期的等待执行 (waiting → running，附带租约) 并交回解释器，
  租约过期仍处于 running 的执行会被重新认领；
- 触发阶段：为到期的 scheduled 工作流创建新的执行。

多个调度实例可以并发运行，条件更新（认领）是防止重复执行的唯一机制。
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger

from ..exceptions import TriggerConfigError, SchedulerClaimConflict
from ..models.workflow import Workflow, TriggerType
from ..models.execution import ExecutionStatus
from ..storage.repository import WorkflowRepository, ExecutionRepository
from ..utils import utcnow, to_naive_utc
from .interpreter import GraphInterpreter
from .launcher import ExecutionLauncher


logger = logging.getLogger(__name__)


# 停机后补触发时最多向前推进的时间槽数量
MAX_CATCH_UP_SLOTS = 1000


def scheduled_record_id(workflow_id: str) -> str:
    """不绑定记录的定时工作流使用的合成记录ID"""
    return f"workflow:{workflow_id}"


def parse_cron(expression: str) -> CronTrigger:
    """解析 5 段 crontab 表达式（UTC）"""
    return CronTrigger.from_crontab(expression, timezone="UTC")


def next_fire_time(trigger: CronTrigger, after: datetime) -> Optional[datetime]:
    """严格晚于 after 的下一次触发时间（naive UTC）"""
    since = after.replace(tzinfo=timezone.utc) + timedelta(seconds=1)
    fire_time = trigger.get_next_fire_time(None, since)
    return to_naive_utc(fire_time) if fire_time else None


@dataclass
class TickReport:
    """一次 tick 的结果"""
    now: datetime
    resumed: List[str] = field(default_factory=list)
    claim_conflicts: List[str] = field(default_factory=list)
    reclaimed: List[str] = field(default_factory=list)
    released: List[str] = field(default_factory=list)
    triggered: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": self.now.isoformat(),
            "resumed": self.resumed,
            "claim_conflicts": self.claim_conflicts,
            "reclaimed": self.reclaimed,
            "released": self.released,
            "triggered": self.triggered,
            "skipped": self.skipped
        }


class WorkflowScheduler:
    """工作流调度器"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        execution_repository: ExecutionRepository,
        interpreter: GraphInterpreter,
        launcher: ExecutionLauncher,
        batch_size: int = 100,
        lease_seconds: float = 300.0
    ):
        self.workflow_repository = workflow_repository
        self.execution_repository = execution_repository
        self.interpreter = interpreter
        self.launcher = launcher
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """执行一次调度：先恢复到期的等待执行，再触发到期的定时工作流"""
        now = to_naive_utc(now) if now else utcnow()
        report = TickReport(now=now)

        await self._resume_pass(now, report)
        await self._trigger_pass(now, report)

        logger.info(
            f"Scheduler tick at {now.isoformat()}: resumed={len(report.resumed)} "
            f"reclaimed={len(report.reclaimed)} conflicts={len(report.claim_conflicts)} "
            f"triggered={len(report.triggered)} skipped={len(report.skipped)}"
        )
        return report

    async def _resume_pass(self, now: datetime, report: TickReport):
        lease_until = now + timedelta(seconds=self.lease_seconds)

        due = await self.execution_repository.list_due_waiting(now, limit=self.batch_size)
        for execution in due:
            claimed = await self.execution_repository.claim(
                execution.id, ExecutionStatus.WAITING, ExecutionStatus.RUNNING,
                resume_at=None, lease_until=lease_until
            )
            if not claimed:
                logger.debug(str(SchedulerClaimConflict(execution.id)))
                report.claim_conflicts.append(execution.id)
                continue
            await self._resume_claimed(execution.id, execution.resume_at, now, report)

        # 认领者在运行中崩溃时，租约过期后由后续的 tick 重新认领
        expired = await self.execution_repository.list_expired_leases(now, limit=self.batch_size)
        for execution in expired:
            if not await self.execution_repository.reclaim(execution.id, now, lease_until):
                logger.debug(str(SchedulerClaimConflict(execution.id)))
                report.claim_conflicts.append(execution.id)
                continue
            logger.warning(
                f"Reclaimed execution {execution.id} whose lease expired at {execution.lease_until.isoformat()}"
            )
            report.reclaimed.append(execution.id)
            await self._resume_claimed(execution.id, now, now, report)

    async def _resume_claimed(
        self,
        execution_id: str,
        due_at: Optional[datetime],
        now: datetime,
        report: TickReport
    ):
        report.resumed.append(execution_id)
        try:
            await self.interpreter.resume(execution_id, now)
        except Exception as e:
            # 单个执行的异常不影响本次 tick 的其余执行；交还认领，下一次 tick 重试
            logger.error(f"Failed to resume execution {execution_id}: {e}", exc_info=True)
            released = await self.execution_repository.transition(
                execution_id, [ExecutionStatus.RUNNING], ExecutionStatus.WAITING,
                resume_at=due_at or now, lease_until=None
            )
            if released:
                report.released.append(execution_id)

    async def _trigger_pass(self, now: datetime, report: TickReport):
        workflows = await self.workflow_repository.list_active(trigger_types=[TriggerType.SCHEDULED])

        for workflow in workflows:
            try:
                slot = self.due_slot(workflow, now)
            except TriggerConfigError as e:
                logger.warning(str(e))
                report.skipped.append(workflow.id)
                continue

            if slot is None:
                continue

            claimed = await self.workflow_repository.claim_schedule_slot(
                workflow.id, workflow.last_scheduled_at, slot
            )
            if not claimed:
                logger.debug(f"Schedule slot {slot.isoformat()} of workflow {workflow.id} already claimed")
                report.skipped.append(workflow.id)
                continue

            try:
                execution = await self.launcher.launch(
                    workflow,
                    record_id=scheduled_record_id(workflow.id),
                    record={},
                    now=now,
                    trigger_type=TriggerType.SCHEDULED,
                    context={"scheduled_at": slot.isoformat()}
                )
            except Exception as e:
                logger.error(f"Failed to trigger scheduled workflow {workflow.id}: {e}", exc_info=True)
                report.skipped.append(workflow.id)
                continue

            if execution is None:
                report.skipped.append(workflow.id)
            else:
                report.triggered.append(execution.id)

    def due_slot(self, workflow: Workflow, now: datetime) -> Optional[datetime]:
        """
        最近一个已到期的触发时间槽，没有到期的返回 None

        Raises:
            TriggerConfigError: cron 表达式缺失或无法解析
        """
        expression = (workflow.trigger_config or {}).get("cron")
        if not expression or not isinstance(expression, str):
            raise TriggerConfigError(workflow.id, "scheduled trigger requires a cron expression")
        try:
            trigger = parse_cron(expression)
        except ValueError as e:
            raise TriggerConfigError(workflow.id, f"invalid cron expression '{expression}': {e}") from e

        last = workflow.last_scheduled_at or workflow.created_at
        slot = None
        candidate = next_fire_time(trigger, last)
        for _ in range(MAX_CATCH_UP_SLOTS):
            if candidate is None or candidate > now:
                break
            slot = candidate
            candidate = next_fire_time(trigger, candidate)
        return slot
