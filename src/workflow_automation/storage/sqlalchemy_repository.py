"""
SQLAlchemy 仓库实现
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker, selectinload

from ..exceptions import EntryAdmissionConflict
from ..models.workflow import Workflow, Graph, ConditionSet, TriggerType, ReentryMode
from ..models.execution import (
    WorkflowExecution, ExecutionStatus, StepExecution, StepStatus, ReentryRule
)
from ..utils import utcnow
from .repository import WorkflowRepository, ExecutionRepository, TRANSITION_FIELDS
from .sqlalchemy_models import (
    WorkflowDefinition as WorkflowDefinitionDB,
    WorkflowExecution as WorkflowExecutionDB,
    StepExecution as StepExecutionDB,
    ReentryMarker as ReentryMarkerDB,
    Base
)


logger = logging.getLogger(__name__)


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self, create_tables: bool = True):
        """初始化数据库连接"""
        options: Dict[str, Any] = {"echo": False, "pool_pre_ping": True}
        if not self.database_url.startswith("sqlite"):
            options.update(pool_size=20, max_overflow=10)

        self.engine = create_async_engine(self.database_url, **options)

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # 创建表（开发环境）
        if create_tables:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话"""
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy 工作流仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, workflow: Workflow) -> str:
        """保存工作流"""
        async with self.db.get_session() as session:
            await session.merge(self._workflow_to_db(workflow))
            return workflow.id

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """获取工作流"""
        async with self.db.get_session() as session:
            workflow_db = await session.get(WorkflowDefinitionDB, workflow_id)
            return self._db_to_workflow(workflow_db) if workflow_db else None

    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        filters: Dict[str, Any] = None
    ) -> List[Workflow]:
        """列出工作流"""
        async with self.db.get_session() as session:
            query = select(WorkflowDefinitionDB)

            if filters:
                if filters.get('is_active') is not None:
                    query = query.where(WorkflowDefinitionDB.is_active == filters['is_active'])
                if filters.get('object_type'):
                    query = query.where(WorkflowDefinitionDB.object_type == filters['object_type'])
                if filters.get('trigger_type'):
                    trigger_type = getattr(filters['trigger_type'], 'value', filters['trigger_type'])
                    query = query.where(WorkflowDefinitionDB.trigger_type == trigger_type)

            query = query.order_by(WorkflowDefinitionDB.created_at).offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._db_to_workflow(w) for w in result.scalars().all()]

    async def update(self, workflow: Workflow) -> bool:
        """更新工作流（execution_count 与 last_scheduled_at 不在此处写入）"""
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowDefinitionDB)
                .where(WorkflowDefinitionDB.id == workflow.id)
                .values(
                    name=workflow.name,
                    description=workflow.description,
                    object_type=workflow.object_type,
                    trigger_type=workflow.trigger_type.value,
                    trigger_config=workflow.trigger_config,
                    entry_criteria=workflow.entry_criteria.to_dict(),
                    reentry_mode=workflow.reentry_mode.value,
                    graph=workflow.graph.to_dict(),
                    is_active=workflow.is_active,
                    version=workflow.version,
                    extra_metadata=workflow.metadata,
                    updated_at=utcnow()
                )
            )
            return result.rowcount == 1

    async def delete(self, workflow_id: str) -> bool:
        """删除工作流"""
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(WorkflowDefinitionDB).where(WorkflowDefinitionDB.id == workflow_id)
            )
            return result.rowcount > 0

    async def claim_schedule_slot(
        self,
        workflow_id: str,
        expected_last: Optional[datetime],
        fire_time: datetime
    ) -> bool:
        async with self.db.get_session() as session:
            query = update(WorkflowDefinitionDB).where(WorkflowDefinitionDB.id == workflow_id)
            if expected_last is None:
                query = query.where(WorkflowDefinitionDB.last_scheduled_at.is_(None))
            else:
                query = query.where(WorkflowDefinitionDB.last_scheduled_at == expected_last)

            result = await session.execute(query.values(last_scheduled_at=fire_time))
            return result.rowcount == 1

    def _workflow_to_db(self, workflow: Workflow) -> WorkflowDefinitionDB:
        return WorkflowDefinitionDB(
            id=workflow.id,
            name=workflow.name,
            description=workflow.description,
            object_type=workflow.object_type,
            trigger_type=workflow.trigger_type.value,
            trigger_config=workflow.trigger_config,
            entry_criteria=workflow.entry_criteria.to_dict(),
            reentry_mode=workflow.reentry_mode.value,
            graph=workflow.graph.to_dict(),
            is_active=workflow.is_active,
            execution_count=workflow.execution_count,
            version=workflow.version,
            last_scheduled_at=workflow.last_scheduled_at,
            extra_metadata=workflow.metadata,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at
        )

    def _db_to_workflow(self, workflow_db: WorkflowDefinitionDB) -> Workflow:
        return Workflow(
            id=workflow_db.id,
            name=workflow_db.name,
            description=workflow_db.description,
            object_type=workflow_db.object_type,
            trigger_type=TriggerType(workflow_db.trigger_type),
            trigger_config=workflow_db.trigger_config or {},
            entry_criteria=ConditionSet.from_dict(workflow_db.entry_criteria),
            reentry_mode=ReentryMode(workflow_db.reentry_mode),
            graph=Graph.from_dict(workflow_db.graph),
            is_active=workflow_db.is_active,
            execution_count=workflow_db.execution_count,
            version=workflow_db.version,
            last_scheduled_at=workflow_db.last_scheduled_at,
            created_at=workflow_db.created_at,
            updated_at=workflow_db.updated_at,
            metadata=workflow_db.extra_metadata or {}
        )


class SQLAlchemyExecutionRepository(ExecutionRepository):
    """SQLAlchemy 执行仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def create(self, execution: WorkflowExecution, rule: Optional[ReentryRule] = None) -> str:
        """准入、插入与计数自增在同一个事务中完成"""
        async with self.db.get_session() as session:
            if rule is not None:
                await self._admit(session, rule, execution.id)

            session.add(self._execution_to_db(execution))
            await session.execute(
                update(WorkflowDefinitionDB)
                .where(WorkflowDefinitionDB.id == execution.workflow_id)
                .values(execution_count=WorkflowDefinitionDB.execution_count + 1)
            )
            await session.flush()
            return execution.id

    async def _admit(self, session: AsyncSession, rule: ReentryRule, execution_id: str):
        """
        推进重入标记

        已有标记时用条件更新 (last_started_at < cutoff)；没有标记时以执行历史
        为准并插入标记，主键冲突即为并发准入失败。bypass 时无条件推进标记。
        """
        marker_key = (
            (ReentryMarkerDB.workflow_id == rule.workflow_id)
            & (ReentryMarkerDB.record_id == rule.record_id)
        )

        if rule.bypass:
            result = await session.execute(
                update(ReentryMarkerDB)
                .where(marker_key)
                .values(last_started_at=rule.now, execution_id=execution_id)
            )
            if result.rowcount == 1:
                return
        elif rule.cutoff is not None:
            result = await session.execute(
                update(ReentryMarkerDB)
                .where(marker_key)
                .where(ReentryMarkerDB.last_started_at < rule.cutoff)
                .values(last_started_at=rule.now, execution_id=execution_id)
            )
            if result.rowcount == 1:
                return

        existing = await session.execute(select(ReentryMarkerDB.last_started_at).where(marker_key))
        last_started_at = existing.scalar_one_or_none()
        if last_started_at is not None:
            raise EntryAdmissionConflict(
                rule.workflow_id, rule.record_id,
                f"last execution started at {last_started_at.isoformat()}"
            )

        latest = await session.execute(
            select(func.max(WorkflowExecutionDB.started_at))
            .where(WorkflowExecutionDB.workflow_id == rule.workflow_id)
            .where(WorkflowExecutionDB.record_id == rule.record_id)
        )
        latest_started_at = latest.scalar_one_or_none()
        if not rule.admits(latest_started_at):
            raise EntryAdmissionConflict(
                rule.workflow_id, rule.record_id,
                f"last execution started at {latest_started_at.isoformat()}"
            )

        session.add(ReentryMarkerDB(
            workflow_id=rule.workflow_id,
            record_id=rule.record_id,
            last_started_at=rule.now,
            execution_id=execution_id
        ))
        try:
            await session.flush()
        except IntegrityError as e:
            raise EntryAdmissionConflict(rule.workflow_id, rule.record_id, "concurrent admission") from e

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowExecutionDB)
                .options(selectinload(WorkflowExecutionDB.steps))
                .where(WorkflowExecutionDB.id == execution_id)
            )
            execution_db = result.scalar_one_or_none()
            return self._db_to_execution(execution_db) if execution_db else None

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        record_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        query = self._select().where(WorkflowExecutionDB.workflow_id == workflow_id)
        if status:
            query = query.where(WorkflowExecutionDB.status == status.value)
        if record_id is not None:
            query = query.where(WorkflowExecutionDB.record_id == record_id)
        query = query.order_by(WorkflowExecutionDB.started_at).offset(offset).limit(limit)
        return await self._fetch(query)

    async def list_by_status(
        self,
        status: ExecutionStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        query = (
            self._select()
            .where(WorkflowExecutionDB.status == status.value)
            .order_by(WorkflowExecutionDB.started_at)
            .offset(offset)
            .limit(limit)
        )
        return await self._fetch(query)

    async def latest_for_pair(self, workflow_id: str, record_id: str) -> Optional[WorkflowExecution]:
        query = (
            self._select()
            .where(WorkflowExecutionDB.workflow_id == workflow_id)
            .where(WorkflowExecutionDB.record_id == record_id)
            .order_by(WorkflowExecutionDB.started_at.desc())
            .limit(1)
        )
        executions = await self._fetch(query)
        return executions[0] if executions else None

    async def list_due_waiting(self, now: datetime, limit: int = 100) -> List[WorkflowExecution]:
        query = (
            self._select()
            .where(WorkflowExecutionDB.status == ExecutionStatus.WAITING.value)
            .where(WorkflowExecutionDB.resume_at <= now)
            .order_by(WorkflowExecutionDB.resume_at)
            .limit(limit)
        )
        return await self._fetch(query)

    async def list_expired_leases(self, now: datetime, limit: int = 100) -> List[WorkflowExecution]:
        query = (
            self._select()
            .where(WorkflowExecutionDB.status == ExecutionStatus.RUNNING.value)
            .where(WorkflowExecutionDB.lease_until < now)
            .order_by(WorkflowExecutionDB.lease_until)
            .limit(limit)
        )
        return await self._fetch(query)

    async def reclaim(self, execution_id: str, now: datetime, lease_until: datetime) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowExecutionDB)
                .where(WorkflowExecutionDB.id == execution_id)
                .where(WorkflowExecutionDB.status == ExecutionStatus.RUNNING.value)
                .where(WorkflowExecutionDB.lease_until < now)
                .values(lease_until=lease_until, updated_at=utcnow())
            )
            return result.rowcount == 1

    async def transition(
        self,
        execution_id: str,
        expected: Iterable[ExecutionStatus],
        new_status: ExecutionStatus,
        **changes: Any
    ) -> bool:
        unknown = set(changes) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot write execution fields in a transition: {sorted(unknown)}")

        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowExecutionDB)
                .where(WorkflowExecutionDB.id == execution_id)
                .where(WorkflowExecutionDB.status.in_([s.value for s in expected]))
                .values(status=new_status.value, updated_at=utcnow(), **changes)
            )
            return result.rowcount == 1

    async def save_progress(self, execution: WorkflowExecution) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowExecutionDB)
                .where(WorkflowExecutionDB.id == execution.id)
                .where(WorkflowExecutionDB.status == ExecutionStatus.RUNNING.value)
                .values(
                    current_node_id=execution.current_node_id,
                    context=execution.context,
                    retry_counts=execution.retry_counts,
                    last_error=execution.last_error,
                    updated_at=utcnow()
                )
            )
            return result.rowcount == 1

    async def request_cancel(self, execution_id: str) -> Optional[ExecutionStatus]:
        now = utcnow()
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowExecutionDB)
                .where(WorkflowExecutionDB.id == execution_id)
                .where(WorkflowExecutionDB.status.in_([
                    ExecutionStatus.PENDING.value, ExecutionStatus.WAITING.value
                ]))
                .values(
                    status=ExecutionStatus.CANCELLED.value,
                    resume_at=None,
                    completed_at=now,
                    updated_at=now
                )
            )
            if result.rowcount == 1:
                return ExecutionStatus.CANCELLED

            result = await session.execute(
                update(WorkflowExecutionDB)
                .where(WorkflowExecutionDB.id == execution_id)
                .where(WorkflowExecutionDB.status == ExecutionStatus.RUNNING.value)
                .values(cancel_requested=True, updated_at=now)
            )
            if result.rowcount == 1:
                return ExecutionStatus.RUNNING

            status = await session.execute(
                select(WorkflowExecutionDB.status).where(WorkflowExecutionDB.id == execution_id)
            )
            value = status.scalar_one_or_none()
            return ExecutionStatus(value) if value else None

    async def save_step(self, step: StepExecution) -> None:
        async with self.db.get_session() as session:
            await session.merge(StepExecutionDB(
                id=step.id,
                execution_id=step.execution_id,
                node_id=step.node_id,
                node_kind=step.node_kind,
                sequence=step.sequence,
                status=step.status.value,
                attempts=step.attempts,
                output=step.output,
                error_message=step.error_message,
                started_at=step.started_at,
                completed_at=step.completed_at
            ))

    async def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ExecutionStatus}
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowExecutionDB.status, func.count()).group_by(WorkflowExecutionDB.status)
            )
            for status, count in result.all():
                counts[status] = count
        return counts

    def _select(self):
        return select(WorkflowExecutionDB).options(selectinload(WorkflowExecutionDB.steps))

    async def _fetch(self, query) -> List[WorkflowExecution]:
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return [self._db_to_execution(e) for e in result.scalars().all()]

    def _execution_to_db(self, execution: WorkflowExecution) -> WorkflowExecutionDB:
        return WorkflowExecutionDB(
            id=execution.id,
            workflow_id=execution.workflow_id,
            workflow_version=execution.workflow_version,
            record_id=execution.record_id,
            object_type=execution.object_type,
            trigger_type=execution.trigger_type,
            status=execution.status.value,
            current_node_id=execution.current_node_id,
            context=execution.context,
            record=execution.record,
            graph=execution.graph.to_dict(),
            resume_at=execution.resume_at,
            lease_until=execution.lease_until,
            retry_counts=execution.retry_counts,
            last_error=execution.last_error,
            cancel_requested=execution.cancel_requested,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            updated_at=execution.updated_at
        )

    def _db_to_execution(self, execution_db: WorkflowExecutionDB) -> WorkflowExecution:
        return WorkflowExecution(
            id=execution_db.id,
            workflow_id=execution_db.workflow_id,
            workflow_version=execution_db.workflow_version,
            record_id=execution_db.record_id,
            object_type=execution_db.object_type or "",
            trigger_type=execution_db.trigger_type or "",
            status=ExecutionStatus(execution_db.status),
            current_node_id=execution_db.current_node_id,
            context=execution_db.context or {},
            record=execution_db.record or {},
            graph=Graph.from_dict(execution_db.graph),
            resume_at=execution_db.resume_at,
            lease_until=execution_db.lease_until,
            retry_counts=execution_db.retry_counts or {},
            last_error=execution_db.last_error,
            cancel_requested=execution_db.cancel_requested,
            started_at=execution_db.started_at,
            completed_at=execution_db.completed_at,
            updated_at=execution_db.updated_at,
            steps=[
                StepExecution(
                    id=step.id,
                    execution_id=step.execution_id,
                    node_id=step.node_id,
                    node_kind=step.node_kind,
                    sequence=step.sequence,
                    status=StepStatus(step.status),
                    attempts=step.attempts,
                    output=step.output,
                    error_message=step.error_message,
                    started_at=step.started_at,
                    completed_at=step.completed_at
                )
                for step in execution_db.steps
            ]
        )
