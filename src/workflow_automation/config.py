"""
引擎配置

所有配置项来自环境变量（可通过 .env 文件加载）。
"""
import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass
class EngineSettings:
    """引擎配置"""
    database_url: str = "sqlite+aiosqlite:///./workflow_automation.db"
    action_max_attempts: int = 3
    action_retry_delay: float = 1.0
    action_retry_backoff: float = 2.0
    action_retry_max_delay: float = 30.0
    action_timeout_seconds: float = 30.0
    scheduler_batch_size: int = 100
    scheduler_interval_seconds: float = 60.0
    scheduler_lease_seconds: float = 300.0
    builtin_actions: bool = True
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> "EngineSettings":
        """从环境变量构建配置"""
        if load_dotenv_file:
            load_dotenv()

        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            action_max_attempts=int(os.getenv("ACTION_MAX_ATTEMPTS", defaults.action_max_attempts)),
            action_retry_delay=float(os.getenv("ACTION_RETRY_DELAY", defaults.action_retry_delay)),
            action_retry_backoff=float(os.getenv("ACTION_RETRY_BACKOFF", defaults.action_retry_backoff)),
            action_retry_max_delay=float(os.getenv("ACTION_RETRY_MAX_DELAY", defaults.action_retry_max_delay)),
            action_timeout_seconds=float(os.getenv("ACTION_TIMEOUT_SECONDS", defaults.action_timeout_seconds)),
            scheduler_batch_size=int(os.getenv("SCHEDULER_BATCH_SIZE", defaults.scheduler_batch_size)),
            scheduler_interval_seconds=float(
                os.getenv("SCHEDULER_INTERVAL_SECONDS", defaults.scheduler_interval_seconds)
            ),
            scheduler_lease_seconds=float(
                os.getenv("SCHEDULER_LEASE_SECONDS", defaults.scheduler_lease_seconds)
            ),
            builtin_actions=os.getenv("BUILTIN_ACTIONS", "true").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            api_host=os.getenv("API_HOST", defaults.api_host),
            api_port=int(os.getenv("API_PORT", defaults.api_port))
        )
