"""
SQLAlchemy 存储测试（SQLite 临时数据库）
"""
import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from workflow_automation.core import WorkflowEngine
from workflow_automation.core.error_handler import ErrorHandler, RetryPolicy
from workflow_automation.core.parser import WorkflowParser
from workflow_automation.exceptions import EntryAdmissionConflict
from workflow_automation.integrations.event_bus import EventBus
from workflow_automation.models.execution import (
    WorkflowExecution, ExecutionStatus, StepExecution, StepStatus, ReentryRule,
    RecordEvent, EventKind
)
from workflow_automation.storage.sqlalchemy_repository import (
    DatabaseManager, SQLAlchemyWorkflowRepository, SQLAlchemyExecutionRepository
)


@pytest_asyncio.fixture
async def db_manager(tmp_path):
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'workflows.db'}")
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def sql_workflow_repo(db_manager):
    return SQLAlchemyWorkflowRepository(db_manager)


@pytest.fixture
def sql_execution_repo(db_manager):
    return SQLAlchemyExecutionRepository(db_manager)


@pytest.fixture
def sql_engine(sql_workflow_repo, sql_execution_repo, handlers, no_sleep):
    engine = WorkflowEngine(
        workflow_repository=sql_workflow_repo,
        execution_repository=sql_execution_repo,
        event_bus=EventBus(),
        error_handler=ErrorHandler(RetryPolicy(max_attempts=3), sleep=no_sleep)
    )
    for action_type, handler in handlers.items():
        engine.dispatcher.register(action_type, handler)
    return engine


@pytest_asyncio.fixture
async def stored_workflow(sql_workflow_repo, deal_workflow):
    workflow = WorkflowParser().parse(deal_workflow)
    await sql_workflow_repo.save(workflow)
    return workflow


def new_execution(workflow, t0, record_id="d-1", **kwargs):
    return WorkflowExecution(
        workflow_id=workflow.id,
        record_id=record_id,
        graph=workflow.graph,
        started_at=t0,
        **kwargs
    )


class TestSQLAlchemyWorkflowRepository:
    """工作流定义存储"""

    @pytest.mark.asyncio
    async def test_save_and_get(self, sql_workflow_repo, stored_workflow):
        loaded = await sql_workflow_repo.get(stored_workflow.id)

        assert loaded.name == "Deal follow-up"
        assert loaded.trigger_type == stored_workflow.trigger_type
        assert loaded.entry_criteria.to_dict() == stored_workflow.entry_criteria.to_dict()
        assert loaded.graph.to_dict() == stored_workflow.graph.to_dict()
        assert loaded.is_active is False
        assert await sql_workflow_repo.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_filters(self, sql_workflow_repo, stored_workflow, field_change_workflow):
        contact = WorkflowParser().parse(field_change_workflow)
        contact.is_active = True
        await sql_workflow_repo.save(contact)

        active = await sql_workflow_repo.list_active()
        assert [w.id for w in active] == [contact.id]

        deals = await sql_workflow_repo.list(filters={"object_type": "deal"})
        assert [w.id for w in deals] == [stored_workflow.id]

        by_trigger = await sql_workflow_repo.list(filters={"trigger_type": "field_change"})
        assert [w.id for w in by_trigger] == [contact.id]

    @pytest.mark.asyncio
    async def test_update_keeps_counters(self, sql_workflow_repo, sql_execution_repo, stored_workflow, t0):
        await sql_execution_repo.create(new_execution(stored_workflow, t0))

        stored_workflow.name = "Renamed"
        stored_workflow.execution_count = 0
        assert await sql_workflow_repo.update(stored_workflow) is True

        loaded = await sql_workflow_repo.get(stored_workflow.id)
        assert loaded.name == "Renamed"
        assert loaded.execution_count == 1

    @pytest.mark.asyncio
    async def test_delete(self, sql_workflow_repo, stored_workflow):
        assert await sql_workflow_repo.delete(stored_workflow.id) is True
        assert await sql_workflow_repo.delete(stored_workflow.id) is False

    @pytest.mark.asyncio
    async def test_claim_schedule_slot(self, sql_workflow_repo, stored_workflow, t0):
        slot = t0 + timedelta(hours=1)

        assert await sql_workflow_repo.claim_schedule_slot(stored_workflow.id, None, slot) is True
        assert await sql_workflow_repo.claim_schedule_slot(stored_workflow.id, None, slot) is False

        next_slot = slot + timedelta(days=1)
        assert await sql_workflow_repo.claim_schedule_slot(stored_workflow.id, slot, next_slot) is True
        assert (await sql_workflow_repo.get(stored_workflow.id)).last_scheduled_at == next_slot


class TestSQLAlchemyExecutionRepository:
    """执行存储"""

    @pytest.mark.asyncio
    async def test_create_and_get(self, sql_execution_repo, stored_workflow, t0):
        execution = new_execution(stored_workflow, t0, context={"amount": 10})

        await sql_execution_repo.create(execution)
        loaded = await sql_execution_repo.get(execution.id)

        assert loaded.status == ExecutionStatus.PENDING
        assert loaded.context == {"amount": 10}
        assert loaded.started_at == t0
        assert [n.id for n in loaded.graph.nodes] == [n.id for n in stored_workflow.nodes]

    @pytest.mark.asyncio
    async def test_once_rule_rejects_second_create(self, sql_workflow_repo, sql_execution_repo,
                                                   stored_workflow, t0):
        rule = ReentryRule(workflow_id=stored_workflow.id, record_id="d-1", now=t0)
        await sql_execution_repo.create(new_execution(stored_workflow, t0), rule)

        later = t0 + timedelta(days=30)
        with pytest.raises(EntryAdmissionConflict):
            await sql_execution_repo.create(
                new_execution(stored_workflow, later),
                ReentryRule(workflow_id=stored_workflow.id, record_id="d-1", now=later)
            )

        assert len(await sql_execution_repo.list_by_workflow(stored_workflow.id)) == 1
        assert (await sql_workflow_repo.get(stored_workflow.id)).execution_count == 1

    @pytest.mark.asyncio
    async def test_windowed_rule_advances_marker(self, sql_execution_repo, stored_workflow, t0):
        def daily(now):
            return ReentryRule(
                workflow_id=stored_workflow.id, record_id="d-1", now=now, cutoff=now - timedelta(days=1)
            )

        await sql_execution_repo.create(new_execution(stored_workflow, t0), daily(t0))

        soon = t0 + timedelta(hours=6)
        with pytest.raises(EntryAdmissionConflict):
            await sql_execution_repo.create(new_execution(stored_workflow, soon), daily(soon))

        tomorrow = t0 + timedelta(days=1, hours=1)
        await sql_execution_repo.create(new_execution(stored_workflow, tomorrow), daily(tomorrow))

        latest = await sql_execution_repo.latest_for_pair(stored_workflow.id, "d-1")
        assert latest.started_at == tomorrow

    @pytest.mark.asyncio
    async def test_rule_respects_existing_history(self, sql_execution_repo, stored_workflow, t0):
        await sql_execution_repo.create(new_execution(stored_workflow, t0))

        with pytest.raises(EntryAdmissionConflict):
            await sql_execution_repo.create(
                new_execution(stored_workflow, t0 + timedelta(hours=1)),
                ReentryRule(workflow_id=stored_workflow.id, record_id="d-1", now=t0 + timedelta(hours=1))
            )

    @pytest.mark.asyncio
    async def test_transition_is_conditional(self, sql_execution_repo, stored_workflow, t0):
        execution = new_execution(stored_workflow, t0)
        await sql_execution_repo.create(execution)

        assert await sql_execution_repo.transition(
            execution.id, [ExecutionStatus.PENDING], ExecutionStatus.RUNNING, current_node_id="check_amount"
        ) is True
        assert await sql_execution_repo.transition(
            execution.id, [ExecutionStatus.PENDING], ExecutionStatus.RUNNING
        ) is False

        loaded = await sql_execution_repo.get(execution.id)
        assert loaded.status == ExecutionStatus.RUNNING
        assert loaded.current_node_id == "check_amount"

        with pytest.raises(ValueError):
            await sql_execution_repo.transition(
                execution.id, [ExecutionStatus.RUNNING], ExecutionStatus.FAILED, status="failed"
            )

    @pytest.mark.asyncio
    async def test_claim_and_due_listing(self, sql_execution_repo, stored_workflow, t0):
        due = new_execution(stored_workflow, t0, status=ExecutionStatus.WAITING, resume_at=t0)
        later = new_execution(stored_workflow, t0, record_id="d-2",
                              status=ExecutionStatus.WAITING, resume_at=t0 + timedelta(days=1))
        await sql_execution_repo.create(due)
        await sql_execution_repo.create(later)

        listed = await sql_execution_repo.list_due_waiting(t0 + timedelta(minutes=1))
        assert [e.id for e in listed] == [due.id]

        assert await sql_execution_repo.claim(
            due.id, ExecutionStatus.WAITING, ExecutionStatus.RUNNING, resume_at=None
        ) is True
        assert await sql_execution_repo.claim(
            due.id, ExecutionStatus.WAITING, ExecutionStatus.RUNNING, resume_at=None
        ) is False
        assert (await sql_execution_repo.get(due.id)).resume_at is None

    @pytest.mark.asyncio
    async def test_expired_lease_reclaim(self, sql_execution_repo, stored_workflow, t0):
        lease_until = t0 + timedelta(minutes=5)
        held = new_execution(stored_workflow, t0, status=ExecutionStatus.RUNNING, lease_until=lease_until)
        unleased = new_execution(stored_workflow, t0, record_id="d-2", status=ExecutionStatus.RUNNING)
        await sql_execution_repo.create(held)
        await sql_execution_repo.create(unleased)

        assert await sql_execution_repo.list_expired_leases(t0 + timedelta(minutes=1)) == []
        assert await sql_execution_repo.reclaim(held.id, t0 + timedelta(minutes=1), t0) is False

        later = t0 + timedelta(minutes=10)
        renewed = later + timedelta(minutes=5)
        expired = await sql_execution_repo.list_expired_leases(later)
        assert [e.id for e in expired] == [held.id]

        assert await sql_execution_repo.reclaim(held.id, later, renewed) is True
        assert await sql_execution_repo.reclaim(held.id, later, renewed) is False
        assert (await sql_execution_repo.get(held.id)).lease_until == renewed

    @pytest.mark.asyncio
    async def test_save_progress_only_while_running(self, sql_execution_repo, stored_workflow, t0):
        execution = new_execution(stored_workflow, t0)
        await sql_execution_repo.create(execution)

        execution.current_node_id = "pause"
        assert await sql_execution_repo.save_progress(execution) is False

        await sql_execution_repo.transition(execution.id, [ExecutionStatus.PENDING], ExecutionStatus.RUNNING)
        execution.context = {"amount": 10, "task_id": "t-1"}
        assert await sql_execution_repo.save_progress(execution) is True

        loaded = await sql_execution_repo.get(execution.id)
        assert loaded.current_node_id == "pause"
        assert loaded.context["task_id"] == "t-1"

    @pytest.mark.asyncio
    async def test_steps_are_ordered_and_updated(self, sql_execution_repo, stored_workflow, t0):
        execution = new_execution(stored_workflow, t0)
        await sql_execution_repo.create(execution)

        second = StepExecution(execution_id=execution.id, node_id="check_amount",
                               node_kind="decision", sequence=1)
        first = StepExecution(execution_id=execution.id, node_id="start",
                              node_kind="trigger", sequence=0)
        await sql_execution_repo.save_step(second)
        await sql_execution_repo.save_step(first)

        second.attempts = 1
        second.complete({"branch": "no"})
        await sql_execution_repo.save_step(second)

        loaded = await sql_execution_repo.get(execution.id)
        assert loaded.visited_node_ids() == ["start", "check_amount"]
        assert loaded.steps[1].status == StepStatus.COMPLETED
        assert loaded.steps[1].output == {"branch": "no"}

    @pytest.mark.asyncio
    async def test_request_cancel(self, sql_execution_repo, stored_workflow, t0):
        waiting = new_execution(stored_workflow, t0, status=ExecutionStatus.WAITING, resume_at=t0)
        running = new_execution(stored_workflow, t0, record_id="d-2", status=ExecutionStatus.RUNNING)
        done = new_execution(stored_workflow, t0, record_id="d-3", status=ExecutionStatus.COMPLETED)
        for execution in (waiting, running, done):
            await sql_execution_repo.create(execution)

        assert await sql_execution_repo.request_cancel(waiting.id) == ExecutionStatus.CANCELLED
        assert await sql_execution_repo.request_cancel(running.id) == ExecutionStatus.RUNNING
        assert await sql_execution_repo.request_cancel(done.id) == ExecutionStatus.COMPLETED
        assert await sql_execution_repo.request_cancel("missing") is None

        assert (await sql_execution_repo.get(waiting.id)).resume_at is None
        assert (await sql_execution_repo.get(running.id)).cancel_requested is True

        counts = await sql_execution_repo.count_by_status()
        assert counts["cancelled"] == 1
        assert counts["running"] == 1
        assert counts["completed"] == 1
        assert counts["failed"] == 0


class TestEngineOnSQLAlchemy:
    """引擎在 SQL 存储上的端到端行为"""

    @pytest.mark.asyncio
    async def test_wait_survives_restart(self, sql_engine, db_manager, handlers, deal_workflow, t0):
        workflow = await sql_engine.create_workflow(deal_workflow)
        await sql_engine.activate_workflow(workflow.id)
        event = RecordEvent(object_type="deal", record_id="d-1",
                            event_kind=EventKind.RECORD_CREATE, record_after={"amount": 50})

        [execution] = await sql_engine.handle_record_event(event, t0)
        assert execution.status == ExecutionStatus.WAITING

        # 新的引擎实例只通过数据库看到等待中的执行
        restarted = WorkflowEngine(
            workflow_repository=SQLAlchemyWorkflowRepository(db_manager),
            execution_repository=SQLAlchemyExecutionRepository(db_manager)
        )
        for action_type, handler in handlers.items():
            restarted.dispatcher.register(action_type, handler)

        report = await restarted.tick(t0 + timedelta(hours=24, seconds=1))

        assert report.resumed == [execution.id]
        finished = await restarted.get_execution(execution.id)
        assert finished.status == ExecutionStatus.COMPLETED
        assert finished.visited_node_ids() == ["start", "check_amount", "pause", "follow_up"]
        handlers["send_email"].assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reentry_once_on_sql(self, sql_engine, deal_workflow, t0):
        definition = dict(deal_workflow, reentry_mode="once")
        workflow = await sql_engine.create_workflow(definition)
        await sql_engine.activate_workflow(workflow.id)
        event = RecordEvent(object_type="deal", record_id="d-1",
                            event_kind=EventKind.RECORD_CREATE, record_after={"amount": 900})

        assert len(await sql_engine.handle_record_event(event, t0)) == 1
        assert await sql_engine.handle_record_event(event, t0 + timedelta(days=3)) == []
        assert (await sql_engine.get_workflow(workflow.id)).execution_count == 1

    @pytest.mark.asyncio
    async def test_failure_is_persisted(self, sql_engine, handlers, sms_workflow, t0):
        handlers["send_sms"].side_effect = RuntimeError("gateway unavailable")
        workflow = await sql_engine.create_workflow(sms_workflow)
        await sql_engine.activate_workflow(workflow.id)

        [execution] = await sql_engine.handle_form_submit("lead", "l-1", {"phone": "+1555"}, now=t0)

        loaded = await sql_engine.get_execution(execution.id)
        assert loaded.status == ExecutionStatus.FAILED
        assert loaded.current_node_id == "notify"
        assert loaded.last_error == "gateway unavailable"
        assert loaded.retry_counts == {"notify": 3}

    @pytest.mark.asyncio
    async def test_duplicate_events_under_once_on_sql(self, sql_engine, handlers, deal_workflow, t0):
        definition = dict(deal_workflow, reentry_mode="once")
        workflow = await sql_engine.create_workflow(definition)
        await sql_engine.activate_workflow(workflow.id)
        event = RecordEvent(object_type="deal", record_id="d-1",
                            event_kind=EventKind.RECORD_CREATE, record_after={"amount": 900})

        # 并发插入重入标记，主键冲突的一方被拒绝
        results = await asyncio.gather(
            *(sql_engine.handle_record_event(event, t0) for _ in range(5))
        )

        assert sum(len(r) for r in results) == 1
        assert len(await sql_engine.list_executions(workflow.id, record_id="d-1")) == 1
        assert (await sql_engine.get_workflow(workflow.id)).execution_count == 1
        assert handlers["create_task"].await_count == 1

    @pytest.mark.asyncio
    async def test_restart_advances_window_on_sql(self, sql_engine, deal_workflow, t0):
        definition = dict(deal_workflow, reentry_mode="once_per_day")
        workflow = await sql_engine.create_workflow(definition)
        await sql_engine.activate_workflow(workflow.id)
        event = RecordEvent(object_type="deal", record_id="d-1",
                            event_kind=EventKind.RECORD_CREATE, record_after={"amount": 900})
        [first] = await sql_engine.handle_record_event(event, t0)

        await sql_engine.restart_execution(first.id, now=t0 + timedelta(hours=23))

        assert await sql_engine.handle_record_event(event, t0 + timedelta(hours=25)) == []
        assert len(await sql_engine.handle_record_event(event, t0 + timedelta(hours=48))) == 1
        assert (await sql_engine.get_workflow(workflow.id)).execution_count == 3
