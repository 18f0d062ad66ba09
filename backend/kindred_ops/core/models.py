"""
Kindred Ops - Database Models
=============================

SQLAlchemy models for the operations orchestrator: policies, proposals,
missions and their steps, triggers, the agent event log and the reaction
queue.
"""

import enum
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kindred_ops.core.database import Base
from kindred_ops.core.timeutils import utc_now


# ==========================================================================
# Enums
# ==========================================================================

class ProposalSource(str, enum.Enum):
    """Where a proposal came from."""
    API = "api"
    TRIGGER = "trigger"
    REACTION = "reaction"


class ProposalStatus(str, enum.Enum):
    """Proposal review state. Approved and rejected are terminal."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class MissionStatus(str, enum.Enum):
    """Mission outcome, written once by finalization."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepStatus(str, enum.Enum):
    """Mission step lifecycle: queued -> running -> completed | failed."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ReactionStatus(str, enum.Enum):
    """Reaction queue item state."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED})


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Store enum values ("queued"), not member names ("QUEUED")."""
    return [member.value for member in enum_cls]


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )


# ==========================================================================
# Policy
# ==========================================================================

class Policy(Base, TimestampMixin):
    """
    Named configuration value.

    Updated by operators only; the orchestrator reads policies but never
    writes them.
    """

    __tablename__ = "ops_policies"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
    )
    value: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Policy {self.name}>"


# ==========================================================================
# Proposals & Missions
# ==========================================================================

class Proposal(Base, TimestampMixin):
    """
    Request for work.

    Every proposal is kept for audit, including the ones rejected by the
    cap gate. Immutable once approved or rejected.
    """

    __tablename__ = "ops_proposals"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    step_kinds: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
    )  # ordered list of step kind names
    source: Mapped[ProposalSource] = mapped_column(
        Enum(ProposalSource, values_callable=enum_values),
        nullable=False,
    )
    created_by: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )

    # Review state
    status: Mapped[ProposalStatus] = mapped_column(
        Enum(ProposalStatus, values_callable=enum_values),
        default=ProposalStatus.PENDING,
        nullable=False,
        index=True,
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    auto_approve_requested: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    reviewed_by: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Proposal {self.title!r} [{self.status.value}]>"


class Mission(Base, TimestampMixin):
    """
    Unit of work created from an approved proposal.

    Owns its steps; status is derived from them by finalization.
    """

    __tablename__ = "ops_missions"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    proposal_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("ops_proposals.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    status: Mapped[MissionStatus] = mapped_column(
        Enum(MissionStatus, values_callable=enum_values),
        default=MissionStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Progress
    step_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    completed_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    failed_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    finalized_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    steps: Mapped[list["MissionStep"]] = relationship(
        back_populates="mission",
        lazy="selectin",
        order_by="MissionStep.step_order",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Mission {self.id} [{self.status.value}]>"


class MissionStep(Base, TimestampMixin):
    """
    One unit of execution within a mission.

    Transitions are strictly queued -> running -> completed | failed and
    are always written as conditional updates on the expected status.
    """

    __tablename__ = "ops_mission_steps"
    __table_args__ = (
        UniqueConstraint("mission_id", "step_order", name="uq_mission_step_order"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    mission_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("ops_missions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_kind: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )
    step_order: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )  # 1..N within the mission
    status: Mapped[StepStatus] = mapped_column(
        Enum(StepStatus, values_callable=enum_values),
        default=StepStatus.QUEUED,
        nullable=False,
        index=True,
    )

    # Reservation
    reserved_by: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )  # agent id
    reserved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Results
    result: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Relationships
    mission: Mapped["Mission"] = relationship(
        back_populates="steps",
    )

    def __repr__(self) -> str:
        return f"<MissionStep {self.step_kind}#{self.step_order} [{self.status.value}]>"


# ==========================================================================
# Triggers
# ==========================================================================

class Trigger(Base, TimestampMixin):
    """
    Standing rule that turns a matching event into a proposal.

    ``condition`` holds a predicate in the condition DSL, ``action`` a
    proposal template ({"create_proposal": {...}}).
    """

    __tablename__ = "ops_triggers"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    condition: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )
    cooldown_seconds: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    action: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )
    enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
        index=True,
    )
    last_triggered: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        state = "enabled" if self.enabled else "disabled"
        return f"<Trigger {self.name} [{state}]>"


# ==========================================================================
# Events & Reactions
# ==========================================================================

class AgentEvent(Base, TimestampMixin):
    """Append-only event log read by triggers and the reaction queue."""

    __tablename__ = "ops_agent_events"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    agent_id: Mapped[str] = mapped_column(
        String(100),
        default="system",
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    event_data: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )
    mission_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        nullable=True,
        index=True,
    )
    step_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<AgentEvent {self.event_type} by {self.agent_id}>"


class ReactionQueueItem(Base, TimestampMixin):
    """Pending "react to this event" work item."""

    __tablename__ = "ops_reaction_queue"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    source_event_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("ops_agent_events.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[ReactionStatus] = mapped_column(
        Enum(ReactionStatus, values_callable=enum_values),
        default=ReactionStatus.PENDING,
        nullable=False,
        index=True,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ReactionQueueItem {self.id} [{self.status.value}]>"
