"""
图解释器与执行生命周期测试
"""
import copy
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from workflow_automation.core.dispatcher import ActionResult
from workflow_automation.exceptions import StateTransitionError, WorkflowExecutionError
from workflow_automation.models.execution import ExecutionStatus, RecordEvent, EventKind, StepStatus


def deal_created(amount, record_id="d-1"):
    record = {"email": "buyer@example.com"}
    if amount is not None:
        record["amount"] = amount
    return RecordEvent(
        object_type="deal",
        record_id=record_id,
        event_kind=EventKind.RECORD_CREATE,
        record_after=record
    )


class TestScenarios:
    """端到端场景"""

    @pytest.mark.asyncio
    async def test_field_change_sends_one_email(self, engine, deploy, field_change_workflow, handlers, t0):
        await deploy(field_change_workflow)
        event = RecordEvent(
            object_type="contact",
            record_id="c-42",
            event_kind=EventKind.RECORD_UPDATE,
            record_before={"status": "pending", "email": "jane@example.com"},
            record_after={"status": "active", "email": "jane@example.com", "first_name": "Jane"}
        )

        executions = await engine.handle_record_event(event, t0)

        assert len(executions) == 1
        execution = executions[0]
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.completed_at is not None
        handlers["send_email"].assert_awaited_once()
        action_type, params, _ = handlers["send_email"].await_args.args
        assert action_type == "send_email"
        assert params == {"to": "jane@example.com", "subject": "Welcome, Jane"}
        assert execution.context["steps"]["welcome"] == {"message_id": "msg-1"}

    @pytest.mark.asyncio
    async def test_small_deal_waits_then_follows_up(self, engine, deploy, deal_workflow, handlers, t0):
        await deploy(deal_workflow)

        [execution] = await engine.handle_record_event(deal_created(50), t0)

        assert execution.status == ExecutionStatus.WAITING
        assert execution.current_node_id == "pause"
        assert execution.resume_at == t0 + timedelta(hours=24)
        handlers["send_email"].assert_not_awaited()

        report = await engine.tick(t0 + timedelta(hours=23))
        assert report.resumed == []

        report = await engine.tick(t0 + timedelta(hours=24, seconds=1))
        assert report.resumed == [execution.id]

        finished = await engine.get_execution(execution.id)
        assert finished.status == ExecutionStatus.COMPLETED
        assert finished.resume_at is None
        assert finished.visited_node_ids() == ["start", "check_amount", "pause", "follow_up"]
        handlers["send_email"].assert_awaited_once()
        handlers["create_task"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_large_deal_creates_task(self, engine, deploy, deal_workflow, handlers, t0):
        await deploy(deal_workflow)

        [execution] = await engine.handle_record_event(deal_created(900), t0)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.visited_node_ids() == ["start", "check_amount", "create_task"]
        _, params, _ = handlers["create_task"].await_args.args
        assert params == {"title": "Call about deal d-1"}
        assert execution.context["task_id"] == "task-1"

    @pytest.mark.asyncio
    async def test_sms_failure_exhausts_retries(self, engine, deploy, sms_workflow, handlers, no_sleep, t0):
        handlers["send_sms"].side_effect = None
        handlers["send_sms"].return_value = ActionResult.failure("carrier rejected message")
        await deploy(sms_workflow)

        [execution] = await engine.handle_form_submit("lead", "l-7", {"phone": "+15550100"}, now=t0)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.current_node_id == "notify"
        assert execution.last_error == "carrier rejected message"
        assert execution.retry_counts == {"notify": 3}
        assert handlers["send_sms"].await_count == 3
        handlers["update_field"].assert_not_awaited()
        assert no_sleep.await_count == 2

        step = execution.steps[-1]
        assert step.node_id == "notify"
        assert step.status == StepStatus.FAILED
        assert step.attempts == 3

    @pytest.mark.asyncio
    async def test_launch_failure_does_not_block_other_workflows(
        self, engine, deploy, sms_workflow, monkeypatch, t0
    ):
        broken = await deploy(sms_workflow)
        healthy = await deploy({**sms_workflow, "name": "SMS confirmation (copy)"})
        launch = engine.launcher.launch

        async def flaky_launch(workflow, **kwargs):
            if workflow.id == broken.id:
                raise ConnectionError("database unavailable")
            return await launch(workflow, **kwargs)

        monkeypatch.setattr(engine.launcher, "launch", flaky_launch)

        executions = await engine.handle_form_submit("lead", "l-1", {"phone": "+1555"}, now=t0)

        assert [e.workflow_id for e in executions] == [healthy.id]
        assert executions[0].status == ExecutionStatus.COMPLETED


class TestTraversal:
    """遍历与决策"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,expected_path", [
        (150, ["start", "check_amount", "create_task"]),
        (50, ["start", "check_amount", "pause"]),
        (None, ["start", "check_amount", "pause"]),
    ])
    async def test_decision_branches(self, engine, deploy, deal_workflow, t0, amount, expected_path):
        definition = copy.deepcopy(deal_workflow)
        definition["nodes"][1]["condition"]["conditions"][0]["value"] = 100
        await deploy(definition)

        [execution] = await engine.handle_record_event(deal_created(amount), t0)

        assert execution.visited_node_ids() == expected_path

    @pytest.mark.asyncio
    async def test_traversal_is_deterministic(self, engine, deploy, deal_workflow, t0):
        await deploy(deal_workflow)

        paths = []
        for record_id in ("d-1", "d-2"):
            [execution] = await engine.handle_record_event(deal_created(50, record_id), t0)
            await engine.tick(t0 + timedelta(days=2))
            execution = await engine.get_execution(execution.id)
            paths.append(execution.visited_node_ids())

        assert paths[0] == paths[1]
        assert [s.sequence for s in execution.steps] == list(range(len(execution.steps)))

    @pytest.mark.asyncio
    async def test_action_output_feeds_decision(self, engine, deploy, handlers, t0):
        handlers["update_field"].return_value = {"score": 80}
        await deploy({
            "name": "Score then route",
            "object_type": "lead",
            "trigger_type": "record_create",
            "nodes": [
                {"id": "start", "kind": "trigger"},
                {"id": "score", "kind": "action", "action_type": "update_field",
                 "parameters": {"field": "score", "value": 80}},
                {"id": "hot", "kind": "decision",
                 "condition": {"conditions": [{"field": "score", "operator": "gte", "value": 75}]}},
                {"id": "call", "kind": "action", "action_type": "create_task"},
                {"id": "nurture", "kind": "action", "action_type": "send_email"}
            ],
            "edges": [
                {"source": "start", "target": "score"},
                {"source": "score", "target": "hot"},
                {"source": "hot", "target": "call", "branch": "yes"},
                {"source": "hot", "target": "nurture", "branch": "no"}
            ]
        })

        event = RecordEvent(object_type="lead", record_id="l-1", event_kind=EventKind.RECORD_CREATE)
        [execution] = await engine.handle_record_event(event, t0)

        assert execution.visited_node_ids() == ["start", "score", "hot", "call"]

    @pytest.mark.asyncio
    async def test_wait_until_record_field(self, engine, deploy, handlers, t0):
        await deploy({
            "name": "Renewal reminder",
            "object_type": "subscription",
            "trigger_type": "record_create",
            "nodes": [
                {"id": "start", "kind": "trigger"},
                {"id": "until_renewal", "kind": "wait", "wait": {"until_field": "renews_at"}},
                {"id": "remind", "kind": "action", "action_type": "send_email"}
            ],
            "edges": [
                {"source": "start", "target": "until_renewal"},
                {"source": "until_renewal", "target": "remind"}
            ]
        })
        event = RecordEvent(
            object_type="subscription",
            record_id="s-1",
            event_kind=EventKind.RECORD_CREATE,
            record_after={"renews_at": "2024-03-10T00:00:00Z"}
        )

        [execution] = await engine.handle_record_event(event, t0)
        assert execution.status == ExecutionStatus.WAITING
        assert execution.resume_at.isoformat() == "2024-03-10T00:00:00"

    @pytest.mark.asyncio
    async def test_wait_without_timestamp_fails(self, engine, deploy, t0):
        await deploy({
            "name": "Broken wait",
            "object_type": "subscription",
            "trigger_type": "record_create",
            "nodes": [
                {"id": "start", "kind": "trigger"},
                {"id": "until_renewal", "kind": "wait", "wait": {"until_field": "renews_at"}}
            ],
            "edges": [{"source": "start", "target": "until_renewal"}]
        })
        event = RecordEvent(object_type="subscription", record_id="s-1", event_kind=EventKind.RECORD_CREATE)

        [execution] = await engine.handle_record_event(event, t0)

        assert execution.status == ExecutionStatus.FAILED
        assert "renews_at" in execution.last_error

    @pytest.mark.asyncio
    async def test_wait_as_last_node_completes_on_resume(self, engine, deploy, t0):
        await deploy({
            "name": "Cooldown",
            "object_type": "deal",
            "trigger_type": "record_create",
            "nodes": [
                {"id": "start", "kind": "trigger"},
                {"id": "cooldown", "kind": "wait", "wait": {"duration": 3600}}
            ],
            "edges": [{"source": "start", "target": "cooldown"}]
        })
        [execution] = await engine.handle_record_event(deal_created(1), t0)

        await engine.tick(t0 + timedelta(hours=1))

        assert (await engine.get_execution(execution.id)).status == ExecutionStatus.COMPLETED


class TestActionFailures:
    """动作失败与重试"""

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, engine, deploy, sms_workflow, handlers, t0):
        handlers["send_sms"].side_effect = [ConnectionError("gateway down"), {"message_id": "sms-2"}]
        await deploy(sms_workflow)

        [execution] = await engine.handle_form_submit("lead", "l-1", {"phone": "+1555"}, now=t0)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.retry_counts == {"notify": 1}
        assert execution.steps[1].attempts == 2
        assert execution.context["steps"]["notify"] == {"message_id": "sms-2"}

    @pytest.mark.asyncio
    async def test_node_retry_policy_override(self, engine, deploy, sms_workflow, handlers, t0):
        handlers["send_sms"].return_value = ActionResult.failure("nope")
        definition = copy.deepcopy(sms_workflow)
        definition["nodes"][1]["metadata"] = {"retry_policy": {"max_attempts": 1}}
        await deploy(definition)

        [execution] = await engine.handle_form_submit("lead", "l-1", {}, now=t0)

        assert execution.status == ExecutionStatus.FAILED
        assert handlers["send_sms"].await_count == 1

    @pytest.mark.asyncio
    async def test_handler_removed_after_activation(self, engine, deploy, sms_workflow, handlers, t0):
        await deploy(sms_workflow)
        engine.dispatcher.unregister("send_sms")

        [execution] = await engine.handle_form_submit("lead", "l-1", {}, now=t0)

        assert execution.status == ExecutionStatus.FAILED
        assert "send_sms" in execution.last_error


class TestCancellation:
    """取消与重启"""

    @pytest.mark.asyncio
    async def test_cancel_waiting_execution(self, engine, deploy, deal_workflow, handlers, t0):
        await deploy(deal_workflow)
        [execution] = await engine.handle_record_event(deal_created(50), t0)

        cancelled = await engine.request_cancel(execution.id)
        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.resume_at is None

        report = await engine.tick(t0 + timedelta(days=2))
        assert report.resumed == []
        handlers["send_email"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_running_stops_at_next_node(self, engine, deploy, sms_workflow, handlers, t0):
        async def cancel_during_send(action_type, params, context):
            await engine.request_cancel(running_ids[0])
            return {"message_id": "sms-3"}

        running_ids = []

        async def remember_running(topic_event):
            if topic_event.payload.event_type == "execution_started":
                running_ids.append(topic_event.payload.execution_id)

        await engine.event_bus.subscribe("workflow.execution.events", remember_running)
        engine.dispatcher.register("send_sms", cancel_during_send)
        await deploy(sms_workflow)

        [execution] = await engine.handle_form_submit("lead", "l-1", {}, now=t0)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.current_node_id == "log"
        handlers["update_field"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cannot_cancel_completed(self, engine, deploy, deal_workflow, t0):
        await deploy(deal_workflow)
        [execution] = await engine.handle_record_event(deal_created(900), t0)

        with pytest.raises(StateTransitionError):
            await engine.request_cancel(execution.id)

    @pytest.mark.asyncio
    async def test_restart_failed_execution(self, engine, deploy, sms_workflow, handlers, t0):
        handlers["send_sms"].return_value = ActionResult.failure("carrier rejected message")
        workflow = await deploy(sms_workflow)
        [failed] = await engine.handle_form_submit("lead", "l-1", {"phone": "+1555"}, now=t0)

        handlers["send_sms"].return_value = {"message_id": "sms-ok"}
        restarted = await engine.restart_execution(failed.id, now=t0 + timedelta(minutes=5))

        assert restarted.id != failed.id
        assert restarted.status == ExecutionStatus.COMPLETED
        assert restarted.context["restarted_from"] == failed.id
        assert (await engine.get_execution(failed.id)).status == ExecutionStatus.FAILED
        assert len(await engine.list_executions(workflow.id, record_id="l-1")) == 2

    @pytest.mark.asyncio
    async def test_restart_requires_terminal_status(self, engine, deploy, deal_workflow, t0):
        await deploy(deal_workflow)
        [waiting] = await engine.handle_record_event(deal_created(50), t0)

        with pytest.raises(StateTransitionError):
            await engine.restart_execution(waiting.id)

    @pytest.mark.asyncio
    async def test_restart_requires_active_workflow(self, engine, deploy, deal_workflow, t0):
        workflow = await deploy(deal_workflow)
        [done] = await engine.handle_record_event(deal_created(900), t0)
        await engine.deactivate_workflow(workflow.id)

        with pytest.raises(WorkflowExecutionError):
            await engine.restart_execution(done.id)


class TestSnapshotIsolation:
    """进行中的执行使用创建时的图快照"""

    @pytest.mark.asyncio
    async def test_edit_does_not_affect_waiting_execution(self, engine, deploy, deal_workflow, handlers, t0):
        workflow = await deploy(deal_workflow)
        [execution] = await engine.handle_record_event(deal_created(50), t0)

        nodes = copy.deepcopy(deal_workflow["nodes"])
        nodes[4]["action_type"] = "send_sms"
        await engine.update_workflow(workflow.id, {"nodes": nodes})

        await engine.tick(t0 + timedelta(days=1, seconds=1))

        finished = await engine.get_execution(execution.id)
        assert finished.status == ExecutionStatus.COMPLETED
        assert finished.workflow_version == 1
        handlers["send_email"].assert_awaited_once()
        handlers["send_sms"].assert_not_awaited()
