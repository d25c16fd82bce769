"""
SQLAlchemy models for PostgreSQL persistence.

Implements durable storage for templates, instances, and step executions.
Column types degrade to portable equivalents on other dialects so the
same schema runs on SQLite in tests.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
        UUID: Uuid(as_uuid=True),
    }


class WorkflowTemplateModel(Base):
    """
    Stores template definitions.

    Steps live in their own table; a template is immutable in structure
    once an instance references it.
    """

    __tablename__ = "workflow_templates"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Trigger matching
    trigger: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    subject_category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subject_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now()
    )

    # Relationships
    steps: Mapped[list["WorkflowTemplateStepModel"]] = relationship(
        back_populates="template",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="WorkflowTemplateStepModel.step_order",
    )

    __table_args__ = (
        Index("ix_workflow_templates_trigger_active", "trigger", "is_active"),
    )


class WorkflowTemplateStepModel(Base):
    """One ordered step of a template."""

    __tablename__ = "workflow_template_steps"

    template_id: Mapped[UUID] = mapped_column(
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        primary_key=True,
    )
    step_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    assignee_type: Mapped[str] = mapped_column(String(50), nullable=False)
    assignee_id: Mapped[str] = mapped_column(String(255), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    timeout_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    auto_approve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    conditions: Mapped[Optional[dict[str, Any]]] = mapped_column(nullable=True)

    template: Mapped[WorkflowTemplateModel] = relationship(back_populates="steps")

    __table_args__ = (
        UniqueConstraint("template_id", "step_order", name="uq_template_step_order"),
    )


class WorkflowInstanceModel(Base):
    """
    Stores workflow instance state.

    This is the primary record for tracking one workflow run on a subject.
    """

    __tablename__ = "workflow_instances"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    template_id: Mapped[UUID] = mapped_column(
        ForeignKey("workflow_templates.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # State
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="PENDING",
        index=True
    )
    # Points into workflow_step_executions; no FK so the instance row can be
    # written before its steps inside one transaction
    current_step_execution_id: Mapped[Optional[UUID]] = mapped_column(nullable=True)

    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", nullable=False, default=dict)

    # Timestamps
    initiated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    step_executions: Mapped[list["WorkflowStepExecutionModel"]] = relationship(
        back_populates="instance",
        lazy="noload",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_workflow_instances_subject_initiated", "subject_id", "initiated_at"),
    )


class WorkflowStepExecutionModel(Base):
    """
    Stores step execution state within an instance.

    Each template step in an instance has its own record. ``version`` is
    bumped by every write and guards conditional updates.
    """

    __tablename__ = "workflow_step_executions"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    instance_id: Mapped[UUID] = mapped_column(
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    step_id: Mapped[str] = mapped_column(String(255), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)

    # State
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="PENDING",
        index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Assignment and decision
    assignee_id: Mapped[str] = mapped_column(String(255), nullable=False)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    decision: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    revision_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    instance: Mapped[WorkflowInstanceModel] = relationship(back_populates="step_executions")

    __table_args__ = (
        UniqueConstraint("instance_id", "step_id", name="uq_step_execution_instance_step"),
        Index("ix_step_executions_assignee_status", "assignee_id", "status"),
        Index("ix_step_executions_instance_order", "instance_id", "step_order"),
    )
