"""
Ops API Routes.

REST endpoints over the orchestrator: proposal admission and review,
missions, agent step claiming, heartbeat, triggers, events and policies.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from kindred_ops.api.deps import DbSession, require_api_key
from kindred_ops.core.models import MissionStatus, ProposalStatus, StepStatus
from kindred_ops.core.ops import (
    EventLog,
    HeartbeatCoordinator,
    MissionRepository,
    PolicyStore,
    ProposalService,
    StepOutcome,
    TriggerRegistry,
)
from kindred_ops.core.ops.errors import ValidationError
from kindred_ops.core.schemas import (
    AdmissionResponse,
    EventCreate,
    EventResponse,
    HeartbeatResponse,
    MissionResponse,
    PolicyResponse,
    PolicyUpdate,
    ProposalCreate,
    ProposalResponse,
    ProposalReview,
    StepClaimRequest,
    StepCompleteRequest,
    StepCompleteResponse,
    StepResponse,
    TriggerCreate,
    TriggerResponse,
    TriggerUpdate,
)

router = APIRouter(
    prefix="/ops",
    tags=["ops"],
    dependencies=[Depends(require_api_key)],
)


# ==========================================================================
# Proposals
# ==========================================================================

@router.post(
    "/proposals",
    response_model=AdmissionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": AdmissionResponse, "description": "Rejected by the cap gate"}},
)
async def admit_proposal(
    request: ProposalCreate,
    response: Response,
    db: DbSession,
) -> AdmissionResponse:
    """
    Admit a proposal.

    Returns 201 for approved and pending proposals, 400 when the cap gate
    rejects it (the rejected proposal is still recorded).
    """
    result = await ProposalService(db).admit(
        source=request.source,
        title=request.title,
        step_kinds=request.step_kinds,
        description=request.description,
        auto_approve_requested=request.auto_approve_requested,
        created_by=request.created_by,
    )

    if result.status == ProposalStatus.REJECTED:
        response.status_code = status.HTTP_400_BAD_REQUEST

    return AdmissionResponse.model_validate(result)


@router.get("/proposals", response_model=list[ProposalResponse])
async def list_proposals(
    db: DbSession,
    status_filter: Optional[ProposalStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
) -> list[ProposalResponse]:
    """List proposals, newest first."""
    proposals = await ProposalService(db).list_proposals(status=status_filter, limit=limit)
    return [ProposalResponse.model_validate(p) for p in proposals]


@router.get("/proposals/{proposal_id}", response_model=ProposalResponse)
async def get_proposal(proposal_id: UUID, db: DbSession) -> ProposalResponse:
    """Get a proposal by ID."""
    proposal = await ProposalService(db).get_proposal(proposal_id)
    if not proposal:
        raise HTTPException(status_code=404, detail="Proposal not found")

    return ProposalResponse.model_validate(proposal)


@router.post("/proposals/{proposal_id}/review", response_model=AdmissionResponse)
async def review_proposal(
    proposal_id: UUID,
    request: ProposalReview,
    db: DbSession,
) -> AdmissionResponse:
    """Approve or reject a pending proposal."""
    result = await ProposalService(db).review(
        proposal_id,
        approve=request.approve,
        reviewer=request.reviewer,
        reason=request.reason,
    )
    return AdmissionResponse.model_validate(result)


# ==========================================================================
# Missions
# ==========================================================================

@router.get("/missions", response_model=list[MissionResponse])
async def list_missions(
    db: DbSession,
    status_filter: Optional[MissionStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
) -> list[MissionResponse]:
    """List missions with their steps, newest first."""
    missions = await MissionRepository(db).list_missions(status=status_filter, limit=limit)
    return [MissionResponse.model_validate(m) for m in missions]


@router.get("/missions/{mission_id}", response_model=MissionResponse)
async def get_mission(mission_id: UUID, db: DbSession) -> MissionResponse:
    """Get a mission with its steps."""
    mission = await MissionRepository(db).get_mission(mission_id)
    if not mission:
        raise HTTPException(status_code=404, detail="Mission not found")

    return MissionResponse.model_validate(mission)


# ==========================================================================
# Steps
# ==========================================================================

@router.post(
    "/steps/claim",
    response_model=StepResponse,
    responses={204: {"description": "Nothing claimable"}},
)
async def claim_step(request: StepClaimRequest, db: DbSession):
    """Claim the oldest queued step of a kind the agent can execute."""
    step = await MissionRepository(db).claim_next_step(request.agent_id, request.step_kinds)
    if step is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return StepResponse.model_validate(step)


@router.post("/steps/{step_id}/complete", response_model=StepCompleteResponse)
async def complete_step(
    step_id: UUID,
    request: StepCompleteRequest,
    db: DbSession,
) -> StepCompleteResponse:
    """
    Report the outcome of a running step.

    Returns 409 if the step is no longer running.
    """
    if request.status == StepStatus.COMPLETED:
        outcome = StepOutcome.completed(request.result)
    elif request.status == StepStatus.FAILED:
        if not request.error:
            raise ValidationError("error is required for a failed step")
        outcome = StepOutcome.failed(request.error)
    else:
        raise ValidationError("status must be completed or failed")

    recorded = await MissionRepository(db).complete_step(
        step_id, outcome, agent_id=request.agent_id
    )
    if not recorded:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Step is not running",
        )

    return StepCompleteResponse(step_id=step_id, recorded=True, status=outcome.status)


# ==========================================================================
# Heartbeat
# ==========================================================================

@router.post("/heartbeat", response_model=HeartbeatResponse)
@router.get("/heartbeat", response_model=HeartbeatResponse)
async def run_heartbeat(db: DbSession) -> HeartbeatResponse:
    """Run trigger evaluation, reaction processing and stale recovery once."""
    report = await HeartbeatCoordinator(db).run()
    return HeartbeatResponse.model_validate(report.model_dump())


# ==========================================================================
# Triggers
# ==========================================================================

@router.get("/triggers", response_model=list[TriggerResponse])
async def list_triggers(
    db: DbSession,
    enabled_only: bool = False,
) -> list[TriggerResponse]:
    """List triggers by name."""
    triggers = await TriggerRegistry(db).list_triggers(enabled_only=enabled_only)
    return [TriggerResponse.model_validate(t) for t in triggers]


@router.post(
    "/triggers",
    response_model=TriggerResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_trigger(request: TriggerCreate, db: DbSession) -> TriggerResponse:
    """Create a trigger; condition and action are validated first."""
    trigger = await TriggerRegistry(db).create_trigger(
        name=request.name,
        description=request.description,
        condition=request.condition,
        action=request.action,
        cooldown_seconds=request.cooldown_seconds,
        enabled=request.enabled,
    )
    return TriggerResponse.model_validate(trigger)


@router.patch("/triggers/{trigger_id}", response_model=TriggerResponse)
async def update_trigger(
    trigger_id: UUID,
    request: TriggerUpdate,
    db: DbSession,
) -> TriggerResponse:
    """Enable or disable a trigger."""
    trigger = await TriggerRegistry(db).set_enabled(trigger_id, request.enabled)
    return TriggerResponse.model_validate(trigger)


# ==========================================================================
# Events
# ==========================================================================

@router.post(
    "/events",
    response_model=EventResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_event(request: EventCreate, db: DbSession) -> EventResponse:
    """Record an event from another part of the platform (e.g. comment_created)."""
    event = await EventLog(db).emit(
        request.event_type,
        request.event_data,
        agent_id=request.agent_id,
        mission_id=request.mission_id,
        step_id=request.step_id,
    )
    await db.commit()
    return EventResponse.model_validate(event)


@router.get("/events", response_model=list[EventResponse])
async def list_events(
    db: DbSession,
    event_type: Optional[str] = None,
    mission_id: Optional[UUID] = None,
    limit: int = Query(50, ge=1, le=500),
) -> list[EventResponse]:
    """List events, newest first."""
    events = await EventLog(db).list_events(limit=limit, event_type=event_type, mission_id=mission_id)
    return [EventResponse.model_validate(e) for e in events]


# ==========================================================================
# Policies
# ==========================================================================

@router.get("/policies", response_model=list[PolicyResponse])
async def list_policies(db: DbSession) -> list[PolicyResponse]:
    """List all policies."""
    policies = await PolicyStore(db).list_policies()
    return [PolicyResponse.model_validate(p) for p in policies]


@router.get("/policies/{name}", response_model=PolicyResponse)
async def get_policy(name: str, db: DbSession) -> PolicyResponse:
    """Get a policy by name."""
    policy = await PolicyStore(db).get_record(name)
    if not policy:
        raise HTTPException(status_code=404, detail="Policy not found")

    return PolicyResponse.model_validate(policy)


@router.put("/policies/{name}", response_model=PolicyResponse)
async def put_policy(name: str, request: PolicyUpdate, db: DbSession) -> PolicyResponse:
    """Create or replace a policy (operator action)."""
    policy = await PolicyStore(db).put(name, request.value, description=request.description)
    return PolicyResponse.model_validate(policy)
