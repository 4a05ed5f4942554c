"""
SQLAlchemy 数据库模型定义
"""
import uuid

from sqlalchemy import (
    Column, String, Text, Boolean, Integer, DateTime, ForeignKey, Index, JSON
)
from sqlalchemy.orm import declarative_base, relationship

from ..utils import utcnow


Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


class WorkflowDefinition(Base):
    """工作流定义模型"""
    __tablename__ = 'workflow_definitions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    object_type = Column(String(100), nullable=False)
    trigger_type = Column(String(50), nullable=False)
    trigger_config = Column(JSON, default=dict)
    entry_criteria = Column(JSON, default=dict)
    reentry_mode = Column(String(50), nullable=False, default='always')
    graph = Column(JSON, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    execution_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    last_scheduled_at = Column(DateTime)
    extra_metadata = Column('metadata', JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_workflow_definitions_active_object', 'is_active', 'object_type'),
        Index('idx_workflow_definitions_trigger_type', 'trigger_type'),
    )


class WorkflowExecution(Base):
    """工作流执行实例模型"""
    __tablename__ = 'workflow_executions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(36), nullable=False)
    workflow_version = Column(Integer, nullable=False, default=1)
    record_id = Column(String(255), nullable=False)
    object_type = Column(String(100))
    trigger_type = Column(String(50))
    status = Column(String(20), nullable=False)
    current_node_id = Column(String(255))
    context = Column(JSON, default=dict)
    record = Column(JSON, default=dict)
    graph = Column(JSON, nullable=False)  # 创建时的图快照
    resume_at = Column(DateTime)
    lease_until = Column(DateTime)  # 调度器认领的租约到期时间
    retry_counts = Column(JSON, default=dict)
    last_error = Column(Text)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    steps = relationship(
        "StepExecution",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="StepExecution.sequence"
    )

    __table_args__ = (
        Index('idx_workflow_executions_status_resume_at', 'status', 'resume_at'),
        Index('idx_workflow_executions_status_lease_until', 'status', 'lease_until'),
        Index('idx_workflow_executions_pair', 'workflow_id', 'record_id', 'started_at'),
    )


class StepExecution(Base):
    """节点执行历史模型"""
    __tablename__ = 'workflow_step_executions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    execution_id = Column(
        String(36), ForeignKey('workflow_executions.id', ondelete='CASCADE'), nullable=False
    )
    node_id = Column(String(255), nullable=False)
    node_kind = Column(String(20), nullable=False)
    sequence = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    output = Column(JSON)
    error_message = Column(Text)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime)

    execution = relationship("WorkflowExecution", back_populates="steps")

    __table_args__ = (
        Index('idx_workflow_step_executions_execution_id', 'execution_id'),
    )


class ReentryMarker(Base):
    """
    (workflow, record) 最近一次准入的执行

    主键保证并发准入时只有一个插入成功。
    """
    __tablename__ = 'workflow_reentry_markers'

    workflow_id = Column(String(36), primary_key=True)
    record_id = Column(String(255), primary_key=True)
    last_started_at = Column(DateTime, nullable=False)
    execution_id = Column(String(36), nullable=False)
