"""
动作分发器

具体的动作处理器（发送邮件、短信、创建任务、修改字段）由宿主应用注册，
引擎只负责按 action_type 选择处理器、渲染参数、解释结果。
"""
import asyncio
import functools
import inspect
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Callable, Union

from ..exceptions import UnknownActionTypeError
from .conditions import lookup_field, MISSING


logger = logging.getLogger(__name__)


TEMPLATE_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

# handler(action_type, rendered_parameters, context) -> ActionResult | dict | None
ActionHandler = Callable[[str, Dict[str, Any], Dict[str, Any]], Any]


@dataclass
class ActionResult:
    """动作执行结果"""
    success: bool = True
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: float = 0.0

    @classmethod
    def ok(cls, output: Optional[Dict[str, Any]] = None) -> "ActionResult":
        return cls(success=True, output=output or {})

    @classmethod
    def failure(cls, error: str) -> "ActionResult":
        return cls(success=False, error=error)


def render_template(value: Any, context: Dict[str, Any]) -> Any:
    """
    渲染模板参数

    字符串中的 {{ path }} 占位符从上下文中取值替换，未知路径渲染为空字符串；
    整个字符串恰好是一个占位符时保留原值类型。列表与字典递归处理。
    """
    if isinstance(value, str):
        whole = TEMPLATE_PATTERN.fullmatch(value.strip())
        if whole:
            resolved = lookup_field(context, whole.group(1))
            return None if resolved is MISSING else resolved

        def replace(match):
            resolved = lookup_field(context, match.group(1))
            if resolved is MISSING or resolved is None:
                return ""
            return str(resolved)

        return TEMPLATE_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {key: render_template(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render_template(item, context) for item in value]
    return value


class ActionDispatcher:
    """动作分发器（处理器注册表）"""

    def __init__(self, timeout_seconds: float = 30.0):
        self.timeout_seconds = timeout_seconds
        self.handlers: Dict[str, ActionHandler] = {}

    def register(self, action_type: Union[str, Any], handler: ActionHandler):
        """注册动作处理器"""
        if not callable(handler):
            raise ValueError(f"Handler for action type {action_type} must be callable")

        key = getattr(action_type, "value", action_type)
        self.handlers[key] = handler
        logger.info(f"Registered action handler: {key}")

    def unregister(self, action_type: Union[str, Any]):
        """注销动作处理器"""
        key = getattr(action_type, "value", action_type)
        if self.handlers.pop(key, None) is not None:
            logger.info(f"Unregistered action handler: {key}")

    def known_action_types(self) -> List[str]:
        """已注册的动作类型（用于激活时的图验证）"""
        return sorted(self.handlers)

    async def execute(
        self,
        action_type: str,
        parameters: Dict[str, Any],
        context: Dict[str, Any],
        timeout: Optional[float] = None
    ) -> ActionResult:
        """
        执行一次动作调用

        处理器抛出异常、超时或返回失败结果都视为失败；重试策略由解释器负责。

        Raises:
            UnknownActionTypeError: 没有为 action_type 注册处理器
        """
        handler = self.handlers.get(action_type)
        if handler is None:
            raise UnknownActionTypeError(action_type)

        rendered = render_template(parameters or {}, context)
        rendered.pop("timeout", None)
        timeout = timeout or self.timeout_seconds

        start_time = time.time()
        try:
            if inspect.iscoroutinefunction(handler):
                raw = await asyncio.wait_for(handler(action_type, rendered, context), timeout=timeout)
            else:
                # 同步处理器放到线程池执行，超时后不再等待其结果
                loop = asyncio.get_running_loop()
                raw = await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(handler, action_type, rendered, context)),
                    timeout=timeout
                )
                if inspect.isawaitable(raw):
                    raw = await asyncio.wait_for(raw, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Action {action_type} timed out after {timeout}s")
            return ActionResult.failure(f"Action {action_type} timed out after {timeout}s")
        except Exception as e:
            logger.warning(f"Action {action_type} raised {type(e).__name__}: {e}")
            return ActionResult.failure(str(e) or type(e).__name__)

        result = self._to_result(raw)
        result.duration_ms = (time.time() - start_time) * 1000

        if result.success:
            logger.info(f"Action {action_type} completed in {result.duration_ms:.2f}ms")
        else:
            logger.warning(f"Action {action_type} reported failure: {result.error}")
        return result

    def _to_result(self, raw: Any) -> ActionResult:
        if isinstance(raw, ActionResult):
            if not raw.success and not raw.error:
                raw.error = "Action reported failure"
            return raw
        if raw is None:
            return ActionResult.ok()
        if isinstance(raw, dict):
            return ActionResult.ok(raw)
        return ActionResult.ok({"result": raw})
