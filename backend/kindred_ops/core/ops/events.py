"""
Event Log - append-only agent event stream.

Every orchestrator state change of interest emits an AgentEvent. Payloads
are validated against a model keyed by event type; event types the
orchestrator does not own (comment_created, market_expired, ...) use an
open payload. Events of reactive types also enqueue a reaction item.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.config import settings
from kindred_ops.core.models import AgentEvent, ReactionQueueItem
from kindred_ops.core.ops.errors import ValidationError
from kindred_ops.core.timeutils import utc_now

logger = logging.getLogger(__name__)


# ==========================================================================
# Event Types
# ==========================================================================

class OpsEventType(str, Enum):
    """Event types emitted by the orchestrator itself."""
    PROPOSAL_APPROVED = "proposal_approved"
    PROPOSAL_PENDING_REVIEW = "proposal_pending_review"
    PROPOSAL_REJECTED = "proposal_rejected"
    MISSION_CREATED = "mission_created"
    MISSION_FINALIZED = "mission_finalized"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    TRIGGER_FIRED = "trigger_fired"


# ==========================================================================
# Payloads
# ==========================================================================

class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProposalApprovedData(_Payload):
    proposal_id: UUID
    mission_id: UUID
    step_count: int


class ProposalPendingReviewData(_Payload):
    proposal_id: UUID
    reason: Optional[str] = None


class ProposalRejectedData(_Payload):
    proposal_id: UUID
    reason: str


class MissionCreatedData(_Payload):
    mission_id: UUID
    proposal_id: UUID
    step_count: int


class MissionFinalizedData(_Payload):
    mission_id: UUID
    status: Literal["succeeded", "failed"]
    completed: int
    failed: int
    total: int


class StepCompletedData(_Payload):
    step_kind: str
    duration_ms: Optional[int] = None
    result: Optional[dict[str, Any]] = None


class StepFailedData(_Payload):
    step_kind: Optional[str] = None
    reason: Literal["error", "timeout"]
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    max_duration_minutes: Optional[int] = None


class TriggerFiredData(_Payload):
    trigger_id: UUID
    trigger_name: str
    source_event_id: UUID
    proposal_id: UUID
    proposal_status: str


class ExternalEventData(BaseModel):
    """Open payload for event types owned by other parts of the platform."""
    model_config = ConfigDict(extra="allow")

    step_kind: Optional[str] = None


EVENT_PAYLOADS: dict[str, type[BaseModel]] = {
    OpsEventType.PROPOSAL_APPROVED.value: ProposalApprovedData,
    OpsEventType.PROPOSAL_PENDING_REVIEW.value: ProposalPendingReviewData,
    OpsEventType.PROPOSAL_REJECTED.value: ProposalRejectedData,
    OpsEventType.MISSION_CREATED.value: MissionCreatedData,
    OpsEventType.MISSION_FINALIZED.value: MissionFinalizedData,
    OpsEventType.STEP_COMPLETED.value: StepCompletedData,
    OpsEventType.STEP_FAILED.value: StepFailedData,
    OpsEventType.TRIGGER_FIRED.value: TriggerFiredData,
}


def validate_event_data(
    event_type: Union[str, OpsEventType],
    data: Union[dict, BaseModel],
) -> dict:
    """
    Validate an event payload and return its JSON-ready form.

    Raises:
        ValidationError: If the payload does not match its event type
    """
    key = event_type.value if isinstance(event_type, OpsEventType) else event_type
    if not key:
        raise ValidationError("event_type must not be empty")

    model = EVENT_PAYLOADS.get(key, ExternalEventData)
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", exclude_none=True)

    try:
        payload = model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {key} payload: {e}") from e

    return payload.model_dump(mode="json", exclude_none=True)


# ==========================================================================
# Event Log
# ==========================================================================

class EventLog:
    """
    Writer/reader for the AgentEvent table.

    Writes are flushed into the caller's transaction; the owning service
    commits.
    """

    def __init__(
        self,
        db: AsyncSession,
        reaction_event_types: Optional[Iterable[str]] = None,
    ):
        self.db = db
        if reaction_event_types is None:
            reaction_event_types = settings.OPS_REACTION_EVENT_TYPES
        self.reaction_event_types = frozenset(reaction_event_types)

    async def emit(
        self,
        event_type: Union[str, OpsEventType],
        data: Union[dict, BaseModel],
        agent_id: str = "system",
        mission_id: Optional[UUID] = None,
        step_id: Optional[UUID] = None,
        created_at: Optional[datetime] = None,
    ) -> AgentEvent:
        """
        Append an event, enqueueing a reaction item for reactive types.

        Args:
            event_type: Orchestrator or external event type
            data: Payload (dict or payload model)
            agent_id: Emitting agent, "system" for the orchestrator
            mission_id: Optional related mission
            step_id: Optional related step
            created_at: Override the event time (imports, tests)

        Returns:
            The stored AgentEvent
        """
        key = event_type.value if isinstance(event_type, OpsEventType) else event_type
        event_data = validate_event_data(key, data)

        event = AgentEvent(
            agent_id=agent_id,
            event_type=key,
            event_data=event_data,
            mission_id=mission_id,
            step_id=step_id,
            created_at=created_at or utc_now(),
        )
        self.db.add(event)
        await self.db.flush()

        if key in self.reaction_event_types:
            self.db.add(ReactionQueueItem(source_event_id=event.id))
            await self.db.flush()

        logger.debug(f"Emitted {key} event {event.id} (agent={agent_id})")
        return event

    async def get(self, event_id: UUID) -> Optional[AgentEvent]:
        """Get a single event by ID."""
        result = await self.db.execute(
            select(AgentEvent).where(AgentEvent.id == event_id)
        )
        return result.scalar_one_or_none()

    async def recent(
        self,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> list[AgentEvent]:
        """Events created in [since, until], oldest first."""
        query = (
            select(AgentEvent)
            .where(AgentEvent.created_at >= since)
            .order_by(AgentEvent.created_at, AgentEvent.id)
        )
        if until is not None:
            query = query.where(AgentEvent.created_at <= until)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_events(
        self,
        limit: int = 50,
        event_type: Optional[str] = None,
        mission_id: Optional[UUID] = None,
    ) -> list[AgentEvent]:
        """Most recent events first, optionally filtered."""
        query = select(AgentEvent).order_by(AgentEvent.created_at.desc()).limit(limit)
        if event_type:
            query = query.where(AgentEvent.event_type == event_type)
        if mission_id:
            query = query.where(AgentEvent.mission_id == mission_id)

        result = await self.db.execute(query)
        return list(result.scalars().all())
