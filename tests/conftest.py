"""
Pytest 配置和公共 fixtures
"""
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from workflow_automation.core import WorkflowEngine
from workflow_automation.core.error_handler import ErrorHandler, RetryPolicy
from workflow_automation.integrations.event_bus import EventBus
from workflow_automation.storage.repository import (
    InMemoryWorkflowRepository, InMemoryExecutionRepository
)


T0 = datetime(2024, 3, 1, 9, 0, 0)


@pytest.fixture
def t0() -> datetime:
    """固定的起始时间（naive UTC）"""
    return T0


@pytest.fixture
def no_sleep() -> AsyncMock:
    """替代 asyncio.sleep，重试时不真正等待"""
    return AsyncMock()


@pytest.fixture
def handlers() -> dict:
    """动作处理器 mock"""
    return {
        "send_email": AsyncMock(return_value={"message_id": "msg-1"}),
        "send_sms": AsyncMock(return_value={"message_id": "sms-1"}),
        "create_task": AsyncMock(return_value={"task_id": "task-1"}),
        "update_field": AsyncMock(return_value=None),
    }


@pytest.fixture
def workflow_repo() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def execution_repo(workflow_repo) -> InMemoryExecutionRepository:
    return InMemoryExecutionRepository(workflow_repo)


@pytest.fixture
def engine(workflow_repo, execution_repo, handlers, no_sleep) -> WorkflowEngine:
    """使用内存存储的工作流引擎"""
    engine = WorkflowEngine(
        workflow_repository=workflow_repo,
        execution_repository=execution_repo,
        event_bus=EventBus(),
        error_handler=ErrorHandler(RetryPolicy(max_attempts=3, initial_delay=0.5), sleep=no_sleep)
    )
    for action_type, handler in handlers.items():
        engine.dispatcher.register(action_type, handler)
    return engine


@pytest.fixture
def deploy(engine):
    """创建并激活工作流"""
    async def _deploy(definition: dict):
        workflow = await engine.create_workflow(definition)
        return await engine.activate_workflow(workflow.id)
    return _deploy


@pytest.fixture
def field_change_workflow() -> dict:
    """status 变为 active 时发送欢迎邮件"""
    return {
        "name": "Welcome active contacts",
        "object_type": "contact",
        "trigger": {"type": "field_change", "config": {"field": "status", "to_value": "active"}},
        "reentry_mode": "always",
        "nodes": [
            {"id": "start", "kind": "trigger"},
            {
                "id": "welcome",
                "kind": "action",
                "action_type": "send_email",
                "parameters": {"to": "{{email}}", "subject": "Welcome, {{first_name}}"}
            }
        ],
        "edges": [{"source": "start", "target": "welcome"}]
    }


@pytest.fixture
def deal_workflow() -> dict:
    """大额订单创建任务，小额订单等待一天后发邮件跟进"""
    return {
        "name": "Deal follow-up",
        "object_type": "deal",
        "trigger_type": "record_create",
        "reentry_mode": "always",
        "nodes": [
            {"id": "start", "kind": "trigger"},
            {
                "id": "check_amount",
                "kind": "decision",
                "condition": {
                    "match": "all",
                    "conditions": [{"field": "amount", "operator": ">", "value": 500}]
                }
            },
            {
                "id": "create_task",
                "kind": "action",
                "action_type": "create_task",
                "parameters": {"title": "Call about deal {{record_id}}"}
            },
            {"id": "pause", "kind": "wait", "wait": {"duration": {"hours": 24}}},
            {
                "id": "follow_up",
                "kind": "action",
                "action_type": "send_email",
                "parameters": {"to": "{{email}}", "subject": "Following up"}
            }
        ],
        "edges": [
            {"source": "start", "target": "check_amount"},
            {"source": "check_amount", "target": "create_task", "branch": "yes"},
            {"source": "check_amount", "target": "pause", "branch": "no"},
            {"source": "pause", "target": "follow_up"}
        ]
    }


@pytest.fixture
def sms_workflow() -> dict:
    """表单提交后发送短信"""
    return {
        "name": "SMS confirmation",
        "object_type": "lead",
        "trigger_type": "form_submit",
        "nodes": [
            {"id": "start", "kind": "trigger"},
            {"id": "notify", "kind": "action", "action_type": "send_sms", "parameters": {"to": "{{phone}}"}},
            {"id": "log", "kind": "action", "action_type": "update_field",
             "parameters": {"field": "notified", "value": True}}
        ],
        "edges": [
            {"source": "start", "target": "notify"},
            {"source": "notify", "target": "log"}
        ]
    }
