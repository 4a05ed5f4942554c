"""
动作分发器与内置动作测试
"""
import asyncio
import time

import pytest

from workflow_automation.core.dispatcher import ActionDispatcher, ActionResult, render_template
from workflow_automation.exceptions import UnknownActionTypeError
from workflow_automation.integrations.builtin_actions import BuiltinActions


class TestRenderTemplate:
    """参数模板渲染"""

    def test_placeholders(self):
        context = {"first_name": "Jane", "amount": 250, "owner": {"email": "o@example.com"}}

        assert render_template("Hi {{first_name}}", context) == "Hi Jane"
        assert render_template("{{ amount }}", context) == 250
        assert render_template("{{owner.email}}", context) == "o@example.com"
        assert render_template("Hi {{last_name}}!", context) == "Hi !"
        assert render_template({"to": ["{{owner.email}}"], "n": 3}, context) == {
            "to": ["o@example.com"], "n": 3
        }


class TestActionDispatcher:
    """动作分发器测试类"""

    @pytest.fixture
    def dispatcher(self):
        return ActionDispatcher(timeout_seconds=0.05)

    @pytest.mark.asyncio
    async def test_unknown_action_type(self, dispatcher):
        with pytest.raises(UnknownActionTypeError):
            await dispatcher.execute("send_fax", {}, {})

    @pytest.mark.asyncio
    async def test_result_normalization(self, dispatcher):
        dispatcher.register("a", lambda *args: None)
        dispatcher.register("b", lambda *args: {"ok": 1})
        dispatcher.register("c", lambda *args: "done")
        dispatcher.register("d", lambda *args: ActionResult(success=False))

        assert (await dispatcher.execute("a", {}, {})).output == {}
        assert (await dispatcher.execute("b", {}, {})).output == {"ok": 1}
        assert (await dispatcher.execute("c", {}, {})).output == {"result": "done"}
        failed = await dispatcher.execute("d", {}, {})
        assert failed.success is False
        assert failed.error == "Action reported failure"

    @pytest.mark.asyncio
    async def test_exception_and_timeout_are_failures(self, dispatcher):
        async def broken(action_type, params, context):
            raise ConnectionError("smtp refused")

        async def slow(action_type, params, context):
            await asyncio.sleep(1)

        dispatcher.register("broken", broken)
        dispatcher.register("slow", slow)

        assert (await dispatcher.execute("broken", {}, {})).error == "smtp refused"
        result = await dispatcher.execute("slow", {}, {})
        assert result.success is False
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_blocking_sync_handler_times_out(self, dispatcher):
        def blocking(action_type, params, context):
            time.sleep(0.5)
            return {"ok": 1}

        dispatcher.register("blocking", blocking)

        started = time.monotonic()
        result = await dispatcher.execute("blocking", {}, {})

        assert result.success is False
        assert "timed out" in result.error
        assert time.monotonic() - started < 0.4

    def test_register_requires_callable(self, dispatcher):
        with pytest.raises(ValueError):
            dispatcher.register("send_email", "not a handler")


class TestBuiltinActions:
    """内置动作"""

    @pytest.fixture
    def dispatcher(self):
        dispatcher = ActionDispatcher()
        BuiltinActions.register_all(dispatcher)
        return dispatcher

    def test_registers_all_action_types(self, dispatcher):
        assert dispatcher.known_action_types() == ["create_task", "send_email", "send_sms", "update_field"]

    @pytest.mark.asyncio
    async def test_send_email_requires_recipient(self, dispatcher):
        missing = await dispatcher.execute("send_email", {"to": "{{email}}"}, {})
        sent = await dispatcher.execute("send_email", {"to": "{{email}}"}, {"email": "a@example.com"})

        assert missing.success is False
        assert sent.success is True
        assert sent.output["to"] == "a@example.com"

    @pytest.mark.asyncio
    async def test_update_field_outputs_new_value(self, dispatcher):
        result = await dispatcher.execute("update_field", {"field": "stage", "value": "won"}, {"record_id": "d-1"})

        assert result.output == {"stage": "won"}
