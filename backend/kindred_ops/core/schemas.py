"""
Kindred Ops - Pydantic Schemas
==============================

Request and response schemas for API validation.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from kindred_ops.core.models import (
    MissionStatus,
    ProposalSource,
    ProposalStatus,
    StepStatus,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Proposals
# ==========================================================================

class ProposalCreate(BaseSchema):
    """Request to admit a proposal."""

    title: str = Field(..., description="Human-readable title")
    step_kinds: list[str] = Field(..., description="Ordered step kinds, e.g. [build, test, deploy]")
    description: Optional[str] = None
    auto_approve_requested: bool = Field(True, description="False sends the proposal to manual review")
    created_by: Optional[str] = None
    source: ProposalSource = ProposalSource.API


class AdmissionResponse(BaseSchema):
    """Result of admitting or reviewing a proposal."""

    status: ProposalStatus
    proposal_id: UUID
    mission_id: Optional[UUID] = None
    reason: Optional[str] = None


class ProposalReview(BaseSchema):
    """Manual decision on a pending proposal."""

    approve: bool
    reviewer: str = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = None


class ProposalResponse(TimestampSchema):
    """Proposal in responses."""

    id: UUID
    title: str
    description: Optional[str]
    step_kinds: list[str]
    source: ProposalSource
    created_by: Optional[str]
    status: ProposalStatus
    rejection_reason: Optional[str]
    auto_approve_requested: bool
    approved_at: Optional[datetime]
    reviewed_by: Optional[str]
    reviewed_at: Optional[datetime]


# ==========================================================================
# Missions & Steps
# ==========================================================================

class StepResponse(TimestampSchema):
    """Mission step in responses."""

    id: UUID
    mission_id: UUID
    step_kind: str
    step_order: int
    status: StepStatus
    reserved_by: Optional[str]
    reserved_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    result: Optional[dict[str, Any]]
    error: Optional[str]


class MissionResponse(TimestampSchema):
    """Mission with its steps."""

    id: UUID
    proposal_id: UUID
    title: str
    status: MissionStatus
    step_count: int
    completed_count: int
    failed_count: int
    finalized_at: Optional[datetime]
    steps: list[StepResponse] = Field(default_factory=list)


class StepClaimRequest(BaseSchema):
    """Agent asking for work."""

    agent_id: str = Field(..., min_length=1, max_length=100)
    step_kinds: list[str] = Field(..., min_length=1, description="Step kinds the agent can execute")


class StepCompleteRequest(BaseSchema):
    """Outcome reported by an agent."""

    status: StepStatus = Field(..., description="completed or failed")
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    agent_id: Optional[str] = None


class StepCompleteResponse(BaseSchema):
    step_id: UUID
    recorded: bool
    status: StepStatus


# ==========================================================================
# Triggers
# ==========================================================================

class TriggerCreate(BaseSchema):
    """Request to create a trigger."""

    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    condition: dict[str, Any] = Field(..., description="Condition DSL predicate")
    action: dict[str, Any] = Field(..., description="{create_proposal: {title, step_kinds, auto_approve}}")
    cooldown_seconds: int = Field(0, ge=0)
    enabled: bool = True


class TriggerUpdate(BaseSchema):
    enabled: bool


class TriggerResponse(TimestampSchema):
    """Trigger in responses."""

    id: UUID
    name: str
    description: Optional[str]
    condition: dict[str, Any]
    action: dict[str, Any]
    cooldown_seconds: int
    enabled: bool
    last_triggered: Optional[datetime]


# ==========================================================================
# Events
# ==========================================================================

class EventCreate(BaseSchema):
    """External event reported to the orchestrator."""

    event_type: str = Field(..., min_length=1, max_length=100)
    agent_id: str = Field("system", min_length=1, max_length=100)
    event_data: dict[str, Any] = Field(default_factory=dict)
    mission_id: Optional[UUID] = None
    step_id: Optional[UUID] = None


class EventResponse(BaseSchema):
    """Agent event in responses."""

    id: UUID
    agent_id: str
    event_type: str
    event_data: dict[str, Any]
    mission_id: Optional[UUID]
    step_id: Optional[UUID]
    created_at: datetime


# ==========================================================================
# Policies
# ==========================================================================

class PolicyUpdate(BaseSchema):
    value: dict[str, Any]
    description: Optional[str] = None


class PolicyResponse(TimestampSchema):
    """Policy in responses."""

    name: str
    value: dict[str, Any]
    description: Optional[str]


# ==========================================================================
# Heartbeat
# ==========================================================================

class HeartbeatResponse(BaseSchema):
    """Aggregated heartbeat report."""

    success: bool
    heartbeat_at: datetime
    duration_ms: int
    triggers_evaluated: int
    reactions_processed: int
    stale_recovered: int
    errors: list[str]


# ==========================================================================
# Common Responses
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    heartbeat: str
