"""
准入评估测试
"""
import copy

import pytest

from workflow_automation.core.entry import EntryEvaluator
from workflow_automation.core.parser import WorkflowParser
from workflow_automation.models.execution import RecordEvent, EventKind


def activated(definition):
    workflow = WorkflowParser().parse(definition)
    workflow.is_active = True
    return workflow


def update_event(before, after, object_type="contact", record_id="c-1"):
    return RecordEvent(
        object_type=object_type,
        record_id=record_id,
        event_kind=EventKind.RECORD_UPDATE,
        record_before=before,
        record_after=after
    )


class TestEntryEvaluator:
    """准入评估器测试类"""

    @pytest.fixture
    def evaluator(self):
        return EntryEvaluator()

    def test_field_change_to_value(self, evaluator, field_change_workflow):
        workflow = activated(field_change_workflow)

        assert evaluator.evaluate(workflow, update_event({"status": "pending"}, {"status": "active"}))
        assert not evaluator.evaluate(workflow, update_event({"status": "active"}, {"status": "active"}))
        assert not evaluator.evaluate(workflow, update_event({"status": "pending"}, {"status": "lost"}))

    def test_field_change_from_value(self, evaluator, field_change_workflow):
        definition = copy.deepcopy(field_change_workflow)
        definition["trigger"]["config"] = {"field": "status", "from_value": "trial"}
        workflow = activated(definition)

        assert evaluator.evaluate(workflow, update_event({"status": "trial"}, {"status": "paid"}))
        assert not evaluator.evaluate(workflow, update_event({"status": "new"}, {"status": "paid"}))

    def test_field_change_ignores_creates(self, evaluator, field_change_workflow):
        workflow = activated(field_change_workflow)
        event = RecordEvent(
            object_type="contact",
            record_id="c-1",
            event_kind=EventKind.RECORD_CREATE,
            record_after={"status": "active"}
        )
        assert not evaluator.evaluate(workflow, event)

    def test_record_create_and_update(self, evaluator, deal_workflow):
        workflow = activated(deal_workflow)
        create = RecordEvent(
            object_type="deal", record_id="d-1", event_kind=EventKind.RECORD_CREATE,
            record_after={"amount": 10}
        )
        assert evaluator.evaluate(workflow, create)
        assert not evaluator.evaluate(workflow, update_event({"amount": 5}, {"amount": 10}, "deal", "d-1"))

        definition = copy.deepcopy(deal_workflow)
        definition["trigger_type"] = "record_update"
        on_update = activated(definition)
        assert evaluator.evaluate(on_update, update_event({"amount": 5}, {"amount": 10}, "deal", "d-1"))
        assert not evaluator.evaluate(on_update, create)

    def test_object_type_and_inactive(self, evaluator, deal_workflow):
        workflow = activated(deal_workflow)
        wrong_type = RecordEvent(object_type="contact", record_id="x", event_kind=EventKind.RECORD_CREATE)
        assert not evaluator.evaluate(workflow, wrong_type)

        workflow.is_active = False
        right_type = RecordEvent(object_type="deal", record_id="x", event_kind=EventKind.RECORD_CREATE)
        assert not evaluator.evaluate(workflow, right_type)

    def test_entry_criteria_filter(self, evaluator, deal_workflow):
        definition = copy.deepcopy(deal_workflow)
        definition["entry_criteria"] = {
            "match": "all",
            "conditions": [{"field": "pipeline", "operator": "equals", "value": "enterprise"}]
        }
        workflow = activated(definition)

        def create(record):
            return RecordEvent(object_type="deal", record_id="d-1",
                               event_kind=EventKind.RECORD_CREATE, record_after=record)

        assert evaluator.evaluate(workflow, create({"pipeline": "enterprise"}))
        assert not evaluator.evaluate(workflow, create({"pipeline": "smb"}))
        assert not evaluator.evaluate(workflow, create({}))

    def test_unparseable_criteria_do_not_match(self, evaluator, deal_workflow):
        definition = copy.deepcopy(deal_workflow)
        definition["entry_criteria"] = {
            "conditions": [{"field": "amount", "operator": "approximately", "value": 5}]
        }
        workflow = activated(definition)
        event = RecordEvent(object_type="deal", record_id="d-1",
                            event_kind=EventKind.RECORD_CREATE, record_after={"amount": 5})

        assert evaluator.evaluate(workflow, event) is False

    def test_form_trigger_source_filter(self, evaluator, sms_workflow):
        definition = copy.deepcopy(sms_workflow)
        definition["trigger_config"] = {"form_id": "demo-request"}
        workflow = activated(definition)

        def submit(record):
            return RecordEvent(object_type="lead", record_id="l-1",
                               event_kind=EventKind.FORM_SUBMIT, record_after=record)

        assert evaluator.evaluate(workflow, submit({"form_id": "demo-request"}))
        assert not evaluator.evaluate(workflow, submit({"form_id": "newsletter"}))

    def test_scheduled_and_manual_never_match_events(self, evaluator, deal_workflow):
        for trigger_type in ("scheduled", "manual"):
            definition = copy.deepcopy(deal_workflow)
            definition["trigger_type"] = trigger_type
            workflow = activated(definition)
            event = RecordEvent(object_type="deal", record_id="d-1", event_kind=EventKind.RECORD_CREATE)
            assert not evaluator.evaluate(workflow, event)

    def test_match_filters_list(self, evaluator, deal_workflow, field_change_workflow):
        workflows = [activated(deal_workflow), activated(field_change_workflow)]
        event = RecordEvent(object_type="deal", record_id="d-1", event_kind=EventKind.RECORD_CREATE)
        assert [w.name for w in evaluator.match(workflows, event)] == ["Deal follow-up"]

    def test_manual_checks_entry_criteria_only(self, evaluator, deal_workflow):
        definition = copy.deepcopy(deal_workflow)
        definition["trigger_type"] = "manual"
        definition["entry_criteria"] = {"conditions": [{"field": "amount", "operator": "gt", "value": 0}]}
        workflow = activated(definition)

        assert evaluator.evaluate_manual(workflow, {"amount": 1})
        assert not evaluator.evaluate_manual(workflow, {"amount": 0})
