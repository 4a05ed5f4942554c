"""
工作流自动化引擎使用示例

使用内存存储和内置动作处理器，演示记录事件触发、持久化等待与 tick 恢复。
"""
import asyncio
import logging
from datetime import timedelta
from pathlib import Path

from workflow_automation import WorkflowEngine, RecordEvent
from workflow_automation.integrations.builtin_actions import BuiltinActions
from workflow_automation.integrations.event_bus import EventBus
from workflow_automation.models.execution import EventKind
from workflow_automation.storage.repository import InMemoryWorkflowRepository, InMemoryExecutionRepository
from workflow_automation.utils import utcnow


# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def setup_workflow_engine() -> WorkflowEngine:
    """设置工作流引擎"""
    workflow_repo = InMemoryWorkflowRepository()
    engine = WorkflowEngine(
        workflow_repository=workflow_repo,
        execution_repository=InMemoryExecutionRepository(workflow_repo),
        event_bus=EventBus()
    )
    BuiltinActions.register_all(engine.dispatcher)
    return engine


async def print_lifecycle(event):
    print(f"  [{event.payload.event_type}] execution={event.payload.execution_id[:8]} "
          f"node={event.payload.node_id}")


async def example_deal_follow_up(engine: WorkflowEngine):
    """订单跟进示例：大额订单立即创建任务，小额订单等待一天后跟进"""
    print("\n=== 订单跟进示例 ===")

    workflow = await engine.create_workflow(Path(__file__).parent / "deal_follow_up.yaml")
    workflow = await engine.activate_workflow(workflow.id)
    print(f"激活工作流: {workflow.name} ({workflow.id})")

    now = utcnow()
    for record_id, amount in (("deal-1", 1200), ("deal-2", 80)):
        event = RecordEvent(
            object_type="deal",
            record_id=record_id,
            event_kind=EventKind.RECORD_CREATE,
            record_after={"amount": amount, "email": f"{record_id}@example.com", "owner_id": "u-7"}
        )
        for execution in await engine.handle_record_event(event, now):
            print(f"{record_id}: {execution.status.value} at {execution.current_node_id}, "
                  f"resume_at={execution.resume_at}")

    # once 策略：重复投递不会创建新的执行
    duplicate = RecordEvent(
        object_type="deal", record_id="deal-1", event_kind=EventKind.RECORD_CREATE,
        record_after={"amount": 1200}
    )
    print(f"重复事件创建的执行数: {len(await engine.handle_record_event(duplicate, now))}")

    # 外部时间源：一天后调用 tick 恢复等待中的执行
    report = await engine.tick(now + timedelta(days=1, minutes=1))
    print(f"tick: {report.to_dict()}")

    for execution in await engine.list_executions(workflow.id):
        print(f"{execution.record_id}: {execution.status.value} path={execution.visited_node_ids()}")


async def example_scheduled_digest(engine: WorkflowEngine):
    """定时工作流示例：每天 9 点创建汇总任务"""
    print("\n=== 定时工作流示例 ===")

    workflow = await engine.create_workflow({
        "name": "Daily pipeline digest",
        "object_type": "deal",
        "trigger": {"type": "scheduled", "config": {"cron": "0 9 * * *"}},
        "nodes": [
            {"id": "start", "kind": "trigger"},
            {"id": "digest", "kind": "action", "action_type": "create_task",
             "parameters": {"title": "Pipeline digest for {{scheduled_at}}"}}
        ],
        "edges": [{"source": "start", "target": "digest"}]
    })
    await engine.activate_workflow(workflow.id)

    report = await engine.tick(workflow.created_at + timedelta(days=1))
    print(f"定时触发的执行: {report.triggered}")


async def main():
    """主函数"""
    engine = setup_workflow_engine()
    await engine.event_bus.subscribe("workflow.execution.events", print_lifecycle)

    await example_deal_follow_up(engine)
    await example_scheduled_digest(engine)

    print("\n执行统计:", await engine.execution_repository.count_by_status())


if __name__ == "__main__":
    asyncio.run(main())
