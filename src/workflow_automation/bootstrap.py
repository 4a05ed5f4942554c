"""
组件装配

API 服务和 CLI 共用：按配置创建数据库、仓库、事件总线与引擎。
"""
import logging
from typing import Dict, Any

from .config import EngineSettings
from .core import WorkflowEngine
from .integrations.event_bus import EventBus
from .integrations.builtin_actions import BuiltinActions
from .storage.sqlalchemy_repository import (
    DatabaseManager, SQLAlchemyWorkflowRepository, SQLAlchemyExecutionRepository
)


logger = logging.getLogger(__name__)


async def build_components(settings: EngineSettings) -> Dict[str, Any]:
    """初始化数据库并装配引擎，返回各组件"""
    db_manager = DatabaseManager(settings.database_url)
    await db_manager.initialize()

    workflow_repo = SQLAlchemyWorkflowRepository(db_manager)
    execution_repo = SQLAlchemyExecutionRepository(db_manager)
    event_bus = EventBus()

    engine = WorkflowEngine(
        workflow_repository=workflow_repo,
        execution_repository=execution_repo,
        settings=settings,
        event_bus=event_bus
    )
    if settings.builtin_actions:
        BuiltinActions.register_all(engine.dispatcher)

    logger.info(f"Workflow engine ready with {len(engine.dispatcher.known_action_types())} action handlers")
    return {
        "settings": settings,
        "db_manager": db_manager,
        "workflow_repo": workflow_repo,
        "execution_repo": execution_repo,
        "event_bus": event_bus,
        "engine": engine
    }
