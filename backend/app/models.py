from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(sa.TypeDecorator):
    """Timezone-aware DateTime that always hands back UTC-aware values.

    Backends without native tz support (SQLite) return naive datetimes;
    those are stored as UTC, so they are re-tagged on load.
    """
    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class TaskStatus(str, Enum):
    pending = "Pending"
    pending_approval = "Pending Approval"
    approved = "Approved"
    rejected = "Rejected"
    scheduled = "Scheduled"
    generating = "Generating"
    assembling = "Assembling"
    uploading = "Uploading"
    published = "Published"
    failed = "Failed"
    takedown_pending = "Takedown Pending"
    takedown_complete = "Takedown Complete"


class NodeType(str, Enum):
    server = "Server"
    mobile_proxy = "MobileProxy"
    desktop_companion = "DesktopCompanion"


class SubStepStatus(str, Enum):
    pending = "Pending"
    in_progress = "In Progress"
    completed = "Completed"
    failed = "Failed"


class TakedownStatus(str, Enum):
    pending = "Pending"
    complete = "Complete"


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    is_autonomous: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.false(), default=False)
    daily_spend_limit: Mapped[Decimal | None] = mapped_column(sa.Numeric(12, 2), nullable=True)
    approval_threshold: Mapped[Decimal | None] = mapped_column(sa.Numeric(12, 2), nullable=True)
    daily_post_limit: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    preferred_post_times: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, nullable=False
    )

    tasks: Mapped[list["GenerationTask"]] = relationship(
        back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )


class ExecutionNode(Base):
    __tablename__ = "execution_nodes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    node_type: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default=NodeType.server.value)
    location: Mapped[str] = mapped_column(sa.String(255), nullable=False, index=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, nullable=False
    )


class GenerationTask(Base):
    __tablename__ = "generation_tasks"
    __table_args__ = (
        sa.Index("ix_generation_tasks_status_scheduled_for", "status", "scheduled_for"),
        sa.Index("ix_generation_tasks_account_created", "account_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    prompt: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, server_default=TaskStatus.pending.value, default=TaskStatus.pending.value
    )
    # Scheduling / affinity
    scheduled_for: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    target_node_location: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    original_target_node_location: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    expiry_hours: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    # Cost / approval
    estimated_cost: Mapped[Decimal | None] = mapped_column(sa.Numeric(12, 2), nullable=True)
    approval_reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    # Lineage
    variant_of_task_id: Mapped[int | None] = mapped_column(
        sa.ForeignKey("generation_tasks.id", ondelete="SET NULL"), nullable=True, index=True
    )
    ab_test_group: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    # Claim bookkeeping
    claimed_by_node_id: Mapped[int | None] = mapped_column(
        sa.ForeignKey("execution_nodes.id", ondelete="SET NULL"), nullable=True, index=True
    )
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    claim_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    reassign_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    reclaim_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    # Outcome
    video_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    takedown_status: Mapped[str | None] = mapped_column(sa.String(16), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, onupdate=utcnow, nullable=False
    )

    account: Mapped[Account] = relationship(back_populates="tasks")
    sub_steps: Mapped[list["TaskSubStep"]] = relationship(
        back_populates="task", cascade="all, delete-orphan", passive_deletes=True,
        order_by="TaskSubStep.id",
    )
    events: Mapped[list["TaskEvent"]] = relationship(
        back_populates="task", cascade="all, delete-orphan", passive_deletes=True,
        order_by="TaskEvent.id",
    )


class TaskSubStep(Base):
    """Fine-grained progress row reported by the node executing a task."""
    __tablename__ = "task_sub_steps"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        sa.ForeignKey("generation_tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    step_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, server_default=SubStepStatus.pending.value, default=SubStepStatus.pending.value
    )
    phase: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    attempt: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    details: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, onupdate=utcnow, nullable=False
    )

    task: Mapped[GenerationTask] = relationship(back_populates="sub_steps")


class TaskEvent(Base):
    """Audit trail: one row per accepted status change or reassignment."""
    __tablename__ = "task_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        sa.ForeignKey("generation_tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    actor: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    payload_json: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=sa.func.now(), default=utcnow, nullable=False
    )

    task: Mapped[GenerationTask] = relationship(back_populates="events")
