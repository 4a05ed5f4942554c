"""
执行启动器

准入通过后创建执行（快照工作流图）并立即交给解释器运行。
事件入口、手动调用、重启与定时触发共用这一路径。
"""
import copy
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from ..models.workflow import Workflow, TriggerType
from ..models.execution import WorkflowExecution, ExecutionStatus
from .interpreter import GraphInterpreter
from .reentry import ReentryGuard


logger = logging.getLogger(__name__)


class ExecutionLauncher:
    """执行启动器"""

    def __init__(self, reentry_guard: ReentryGuard, interpreter: GraphInterpreter):
        self.reentry_guard = reentry_guard
        self.interpreter = interpreter

    def build(
        self,
        workflow: Workflow,
        record_id: str,
        record: Mapping[str, Any],
        now: datetime,
        trigger_type: TriggerType = None,
        context: Dict[str, Any] = None
    ) -> WorkflowExecution:
        """构建 pending 状态的执行实例，上下文以触发记录为种子"""
        record = copy.deepcopy(dict(record or {}))
        seeded = copy.deepcopy(record)
        seeded.update(context or {})
        seeded.setdefault("record_id", record_id)

        return WorkflowExecution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            record_id=record_id,
            object_type=workflow.object_type,
            trigger_type=(trigger_type or workflow.trigger_type).value,
            status=ExecutionStatus.PENDING,
            context=seeded,
            record=record,
            graph=copy.deepcopy(workflow.graph),
            started_at=now,
            updated_at=now
        )

    async def launch(
        self,
        workflow: Workflow,
        record_id: str,
        record: Mapping[str, Any],
        now: datetime,
        trigger_type: TriggerType = None,
        context: Dict[str, Any] = None,
        bypass_reentry: bool = False
    ) -> Optional[WorkflowExecution]:
        """
        准入并运行

        返回运行到等待或终止状态后的执行；重入策略拒绝时返回 None。
        bypass_reentry 跳过重入检查，但仍推进重入标记。
        """
        execution = self.build(workflow, record_id, record, now, trigger_type, context)

        if not await self.reentry_guard.admit(execution, workflow.reentry_mode, now, bypass=bypass_reentry):
            return None

        return await self.interpreter.start(execution.id, now)
