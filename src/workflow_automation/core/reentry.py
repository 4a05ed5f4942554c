"""
重入守卫

限制同一条记录重复进入同一个工作流的频率。准入检查与执行创建
必须是原子的，因此守卫只计算规则，由执行存储在插入时执行。
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from ..exceptions import EntryAdmissionConflict
from ..models.workflow import ReentryMode
from ..models.execution import WorkflowExecution, ReentryRule
from ..storage.repository import ExecutionRepository


logger = logging.getLogger(__name__)


REENTRY_WINDOWS = {
    ReentryMode.ONCE_PER_DAY: timedelta(days=1),
    ReentryMode.ONCE_PER_WEEK: timedelta(days=7),
}


class ReentryGuard:
    """重入守卫"""

    def __init__(self, execution_repository: ExecutionRepository):
        self.execution_repository = execution_repository

    @staticmethod
    def window_for(mode: ReentryMode) -> Optional[timedelta]:
        """重入窗口；always / once 没有时间窗口"""
        return REENTRY_WINDOWS.get(mode)

    def rule_for(
        self,
        workflow_id: str,
        record_id: str,
        mode: ReentryMode,
        now: datetime,
        bypass: bool = False
    ) -> Optional[ReentryRule]:
        """
        计算准入规则，always 返回 None（不做检查，也不维护重入标记）

        bypass 时返回只推进重入标记的规则，使之后的窗口从这次执行算起。
        """
        if mode == ReentryMode.ALWAYS:
            return None
        window = self.window_for(mode)
        return ReentryRule(
            workflow_id=workflow_id,
            record_id=record_id,
            now=now,
            cutoff=now - window if window is not None else None,
            bypass=bypass
        )

    def is_admissible(
        self,
        mode: ReentryMode,
        last_started_at: Optional[datetime],
        now: datetime
    ) -> bool:
        """纯判断：给定最近一次执行的开始时间是否允许再次进入"""
        rule = self.rule_for("", "", mode, now)
        return rule is None or rule.admits(last_started_at)

    async def admit(
        self,
        execution: WorkflowExecution,
        mode: ReentryMode,
        now: datetime,
        bypass: bool = False
    ) -> bool:
        """
        原子地准入并创建执行

        竞争失败或规则拒绝时不创建执行，返回 False（不向调用方抛出）。
        """
        rule = self.rule_for(execution.workflow_id, execution.record_id, mode, now, bypass)
        try:
            await self.execution_repository.create(execution, rule)
        except EntryAdmissionConflict as e:
            logger.info(f"Reentry policy '{mode.value}' rejected execution: {e}")
            return False

        logger.info(
            f"Admitted execution {execution.id} for workflow {execution.workflow_id} "
            f"and record {execution.record_id}"
        )
        return True
