"""
准入评估器

给定记录变更事件，判断哪些激活的工作流应当启动新的执行。
纯谓词：不读写任何存储。
"""
import logging
from typing import Any, Dict, Iterable, List, Mapping

from ..exceptions import TriggerConfigError
from ..models.workflow import Workflow, TriggerType
from ..models.execution import RecordEvent, EventKind
from .conditions import ConditionEvaluator, lookup_field, MISSING, OPERATORS


logger = logging.getLogger(__name__)


# 外部事件种类与触发器类型的对应关系（field_change 单独处理）
EVENT_TRIGGERS = {
    TriggerType.RECORD_CREATE: EventKind.RECORD_CREATE,
    TriggerType.RECORD_UPDATE: EventKind.RECORD_UPDATE,
    TriggerType.FORM_SUBMIT: EventKind.FORM_SUBMIT,
    TriggerType.PAYMENT_RECEIVED: EventKind.PAYMENT_RECEIVED,
}


class EntryEvaluator:
    """准入评估器"""

    def __init__(self, condition_evaluator: ConditionEvaluator = None):
        self.conditions = condition_evaluator or ConditionEvaluator()

    def match(self, workflows: Iterable[Workflow], event: RecordEvent) -> List[Workflow]:
        """返回触发器匹配且准入条件通过的激活工作流"""
        matched = [workflow for workflow in workflows if self.evaluate(workflow, event)]
        logger.debug(
            f"Event {event.event_kind.value} on {event.object_type}/{event.record_id} "
            f"matched {len(matched)} workflow(s)"
        )
        return matched

    def evaluate(self, workflow: Workflow, event: RecordEvent) -> bool:
        """
        单个工作流是否应为该事件启动执行

        触发配置或准入条件无法解析时记录日志并视为不匹配。
        """
        if not workflow.is_active or workflow.object_type != event.object_type:
            return False

        try:
            if not self.matches_trigger(workflow, event):
                return False
            return self.passes_entry_criteria(workflow, event.record_after)
        except TriggerConfigError as e:
            logger.warning(str(e))
            return False

    def evaluate_manual(self, workflow: Workflow, record: Mapping[str, Any]) -> bool:
        """手动调用：跳过触发器匹配，仍然检查准入条件"""
        if not workflow.is_active:
            return False
        try:
            return self.passes_entry_criteria(workflow, record)
        except TriggerConfigError as e:
            logger.warning(str(e))
            return False

    def matches_trigger(self, workflow: Workflow, event: RecordEvent) -> bool:
        """
        触发器匹配

        Raises:
            TriggerConfigError: trigger_config 无法解析
        """
        if not isinstance(workflow.trigger_config, dict):
            raise TriggerConfigError(workflow.id, "trigger_config must be a mapping")

        trigger_type = workflow.trigger_type

        if trigger_type in (TriggerType.SCHEDULED, TriggerType.MANUAL):
            return False

        if trigger_type == TriggerType.RECORD_CREATE:
            return event.event_kind == EventKind.RECORD_CREATE and event.record_before is None

        if trigger_type == TriggerType.FIELD_CHANGE:
            return self._matches_field_change(workflow, event)

        expected_kind = EVENT_TRIGGERS.get(trigger_type)
        if expected_kind is None or event.event_kind != expected_kind:
            return False
        if trigger_type == TriggerType.RECORD_UPDATE:
            return event.record_before is not None
        return self._matches_source(workflow.trigger_config, event.record_after)

    def passes_entry_criteria(self, workflow: Workflow, record: Mapping[str, Any]) -> bool:
        """
        准入条件评估

        Raises:
            TriggerConfigError: 条件无法评估（例如未知运算符）
        """
        errors = self.conditions.check(workflow.entry_criteria)
        if errors:
            raise TriggerConfigError(workflow.id, f"invalid entry criteria: {'; '.join(errors)}")
        try:
            return self.conditions.evaluate(workflow.entry_criteria, record or {})
        except (ValueError, TypeError) as e:
            raise TriggerConfigError(workflow.id, f"entry criteria evaluation failed: {e}") from e

    def _matches_field_change(self, workflow: Workflow, event: RecordEvent) -> bool:
        if event.event_kind != EventKind.RECORD_UPDATE or event.record_before is None:
            return False

        field_name = workflow.trigger_config.get("field")
        if not field_name or not isinstance(field_name, str):
            raise TriggerConfigError(workflow.id, "field_change trigger requires a 'field' name")

        old_value = lookup_field(event.record_before, field_name)
        new_value = lookup_field(event.record_after or {}, field_name)
        if old_value == new_value:
            return False

        equals = OPERATORS["equals"]
        config: Dict[str, Any] = workflow.trigger_config
        if "from_value" in config:
            if old_value is MISSING or not equals(old_value, config["from_value"]):
                return False
        if "to_value" in config:
            if new_value is MISSING or not equals(new_value, config["to_value"]):
                return False
        return True

    def _matches_source(self, trigger_config: Dict[str, Any], record: Mapping[str, Any]) -> bool:
        """表单 / 支付触发器可选地限定来源（form_id 等）"""
        for key in ("form_id", "payment_type"):
            if key in trigger_config:
                actual = lookup_field(record or {}, key)
                if actual is MISSING or str(actual) != str(trigger_config[key]):
                    return False
        return True
