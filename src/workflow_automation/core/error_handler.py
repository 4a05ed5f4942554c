"""
错误处理与重试策略
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, Callable, Awaitable

from ..config import EngineSettings


logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """重试策略"""
    FIXED_DELAY = "fixed"                 # 固定延迟
    LINEAR_BACKOFF = "linear"             # 线性退避
    EXPONENTIAL_BACKOFF = "exponential"   # 指数退避


@dataclass
class RetryPolicy:
    """
    重试策略

    max_attempts 是同一节点的总尝试次数（包括第一次调用）。
    """
    max_attempts: int = 3
    initial_delay: float = 1.0  # 秒
    max_delay: float = 30.0     # 秒
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    backoff_factor: float = 2.0
    jitter: bool = False

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.action_max_attempts,
            initial_delay=settings.action_retry_delay,
            max_delay=settings.action_retry_max_delay,
            backoff_factor=settings.action_retry_backoff
        )

    def override(self, config: Optional[Dict[str, Any]]) -> "RetryPolicy":
        """节点级覆盖（node.metadata["retry_policy"]）"""
        if not config:
            return self
        return RetryPolicy(
            max_attempts=int(config.get("max_attempts", self.max_attempts)),
            initial_delay=float(config.get("retry_delay", self.initial_delay)),
            max_delay=float(config.get("max_delay", self.max_delay)),
            strategy=RetryStrategy(config.get("strategy", self.strategy.value)),
            backoff_factor=float(config.get("backoff_factor", self.backoff_factor)),
            jitter=bool(config.get("jitter", self.jitter))
        )


class ErrorHandler:
    """节点执行错误处理器"""

    def __init__(
        self,
        policy: RetryPolicy = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def should_retry(self, attempts: int, policy: RetryPolicy = None) -> bool:
        """已尝试 attempts 次后是否还有重试预算"""
        policy = policy or self.policy
        return attempts < policy.max_attempts

    def calculate_retry_delay(self, retry_count: int, policy: RetryPolicy = None) -> float:
        """计算重试延迟"""
        policy = policy or self.policy

        if policy.strategy == RetryStrategy.FIXED_DELAY:
            delay = policy.initial_delay
        elif policy.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = policy.initial_delay * (retry_count + 1)
        else:
            delay = policy.initial_delay * (policy.backoff_factor ** retry_count)

        # 限制最大延迟
        delay = min(delay, policy.max_delay)

        if policy.jitter and delay > 0:
            delay += random.uniform(0, delay * 0.1)

        return delay

    async def wait_before_retry(
        self,
        execution_id: str,
        node_id: str,
        retry_count: int,
        error: str,
        policy: RetryPolicy = None
    ):
        """记录失败并在下一次尝试前退避等待"""
        delay = self.calculate_retry_delay(retry_count, policy)
        logger.info(
            f"Retrying node {node_id} after {delay:.2f}s (attempt {retry_count + 2}): {error}",
            extra={"execution_id": execution_id, "node_id": node_id, "retry_count": retry_count}
        )
        if delay > 0:
            await self._sleep(delay)

    def record_exhausted(self, execution_id: str, node_id: str, attempts: int, error: str):
        """重试耗尽"""
        logger.error(
            f"Node {node_id} failed permanently after {attempts} attempt(s): {error}",
            extra={"execution_id": execution_id, "node_id": node_id, "retry_count": attempts}
        )
