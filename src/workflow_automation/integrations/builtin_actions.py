"""
内置动作处理器

只记录日志并返回渲染后的参数，不做真实投递。宿主应用应当用
自己的处理器覆盖它们（再次 register 同一 action_type 即可）。
"""
import logging
from typing import Dict, Any
from uuid import uuid4

from ..core.dispatcher import ActionDispatcher, ActionResult
from ..models.workflow import ActionType


logger = logging.getLogger(__name__)


class BuiltinActions:
    """内置动作集"""

    @staticmethod
    async def send_email(action_type: str, params: Dict[str, Any], context: Dict[str, Any]):
        if not params.get("to"):
            return ActionResult.failure("send_email requires 'to'")
        logger.info(f"[{action_type}] to={params['to']} subject={params.get('subject', '')!r}")
        return {"message_id": str(uuid4()), "to": params["to"]}

    @staticmethod
    async def send_sms(action_type: str, params: Dict[str, Any], context: Dict[str, Any]):
        if not params.get("to"):
            return ActionResult.failure("send_sms requires 'to'")
        logger.info(f"[{action_type}] to={params['to']}")
        return {"message_id": str(uuid4()), "to": params["to"]}

    @staticmethod
    async def create_task(action_type: str, params: Dict[str, Any], context: Dict[str, Any]):
        task_id = str(uuid4())
        logger.info(f"[{action_type}] task {task_id} title={params.get('title', '')!r}")
        return {"task_id": task_id, "title": params.get("title"), "assignee": params.get("assignee")}

    @staticmethod
    async def update_field(action_type: str, params: Dict[str, Any], context: Dict[str, Any]):
        field_name = params.get("field")
        if not field_name:
            return ActionResult.failure("update_field requires 'field'")
        logger.info(f"[{action_type}] record {context.get('record_id')} {field_name}={params.get('value')!r}")
        # 输出合并进上下文，后续决策节点可以读到新值
        return {field_name: params.get("value")}

    @classmethod
    def register_all(cls, dispatcher: ActionDispatcher):
        """注册所有内置动作"""
        dispatcher.register(ActionType.SEND_EMAIL, cls.send_email)
        dispatcher.register(ActionType.SEND_SMS, cls.send_sms)
        dispatcher.register(ActionType.CREATE_TASK, cls.create_task)
        dispatcher.register(ActionType.UPDATE_FIELD, cls.update_field)
