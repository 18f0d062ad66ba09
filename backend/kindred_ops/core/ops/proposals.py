"""
Proposal Admission Service.

Every proposal, whatever its source (API, trigger, reaction), enters
through ``ProposalService.admit``. It is the only code path that creates
missions:

    1. Validate input
    2. Cap gate          -> rejected proposal (audit record), stop
    3. Persist pending proposal
    4. Auto-approve      -> approved: mission + queued steps
                         -> otherwise: stays pending for manual review
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.models import Mission, Proposal, ProposalSource, ProposalStatus
from kindred_ops.core.ops.errors import (
    CapExceededError,
    NotFoundError,
    ProposalStateError,
    ValidationError,
)
from kindred_ops.core.ops.events import (
    EventLog,
    OpsEventType,
    ProposalApprovedData,
    ProposalPendingReviewData,
    ProposalRejectedData,
)
from kindred_ops.core.ops.gates import ApprovalDecision, AutoApproveEvaluator, CapGate
from kindred_ops.core.ops.missions import MissionRepository
from kindred_ops.core.ops.policy import PolicyStore
from kindred_ops.core.timeutils import utc_now

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_STEP_KIND_LENGTH = 50
STEP_KIND_PATTERN = re.compile(rf"^[a-z0-9_]{{1,{MAX_STEP_KIND_LENGTH}}}$")

MANUAL_REVIEW_REASON = "Manual review requested"


@dataclass
class AdmissionResult:
    """Outcome of admitting or reviewing a proposal."""
    status: ProposalStatus
    proposal_id: UUID
    mission_id: Optional[UUID] = None
    reason: Optional[str] = None


def validate_proposal_input(title: str, step_kinds: Iterable[str]) -> tuple[str, list[str]]:
    """
    Normalize and validate admission input.

    Raises:
        ValidationError: On an empty or oversized title, no step kinds, or
            a step kind that is not a lowercase identifier of at most
            MAX_STEP_KIND_LENGTH characters
    """
    title = (title or "").strip()
    if not title:
        raise ValidationError("title must not be empty")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"title must be at most {MAX_TITLE_LENGTH} characters")

    if isinstance(step_kinds, str):
        raise ValidationError("step_kinds must be a list of step kind names")

    kinds = list(step_kinds or [])
    if not kinds:
        raise ValidationError("at least one step kind is required")

    invalid = [kind for kind in kinds if not isinstance(kind, str) or not STEP_KIND_PATTERN.match(kind)]
    if invalid:
        raise ValidationError(f"invalid step kinds: {', '.join(map(str, invalid))}")

    return title, kinds


class ProposalService:
    """
    Single admission path for proposals.

    Collaborators are injected so each gate can be replaced in tests; by
    default they all share the service's session.
    """

    def __init__(
        self,
        db: AsyncSession,
        policies: Optional[PolicyStore] = None,
        cap_gate: Optional[CapGate] = None,
        auto_approve: Optional[AutoApproveEvaluator] = None,
        missions: Optional[MissionRepository] = None,
        events: Optional[EventLog] = None,
    ):
        self.db = db
        self.policies = policies or PolicyStore(db)
        self.events = events or EventLog(db)
        self.cap_gate = cap_gate or CapGate(db, self.policies)
        self.auto_approve = auto_approve or AutoApproveEvaluator(db, self.policies)
        self.missions = missions or MissionRepository(db, self.events)

    # ======================================================================
    # Admission
    # ======================================================================

    async def admit(
        self,
        source: Union[ProposalSource, str],
        title: str,
        step_kinds: Iterable[str],
        description: Optional[str] = None,
        auto_approve_requested: bool = True,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AdmissionResult:
        """
        Admit a proposal.

        Args:
            source: Where the proposal came from
            title: Human-readable title
            step_kinds: Ordered step kinds; become steps 1..N
            description: Optional free text
            auto_approve_requested: False sends the proposal straight to
                manual review
            created_by: Requesting user, trigger or agent
            now: Clock override

        Returns:
            AdmissionResult with status approved, pending or rejected

        Raises:
            ValidationError: On malformed input (nothing is written)
        """
        try:
            source = ProposalSource(source)
        except ValueError as e:
            raise ValidationError(f"unknown proposal source: {source}") from e

        title, kinds = validate_proposal_input(title, step_kinds)
        now = now or utc_now()

        try:
            # Gate first: a capped proposal never reaches the scheduler
            try:
                await self.cap_gate.enforce(kinds, now)
            except CapExceededError as e:
                return await self._record_rejection(
                    source, title, kinds, description, auto_approve_requested, created_by, str(e)
                )

            proposal = Proposal(
                title=title,
                description=description,
                step_kinds=kinds,
                source=source,
                created_by=created_by,
                status=ProposalStatus.PENDING,
                auto_approve_requested=auto_approve_requested,
            )
            self.db.add(proposal)
            await self.db.flush()

            if auto_approve_requested:
                decision = await self.auto_approve.evaluate(kinds)
            else:
                decision = ApprovalDecision(approved=False, reason=MANUAL_REVIEW_REASON)

            if decision.approved:
                proposal.status = ProposalStatus.APPROVED
                proposal.approved_at = now
                mission = await self._create_mission(proposal)
                await self.db.commit()

                logger.info(f"Proposal {proposal.id} ({source.value}) approved -> mission {mission.id}")
                return AdmissionResult(
                    status=ProposalStatus.APPROVED,
                    proposal_id=proposal.id,
                    mission_id=mission.id,
                )

            await self.events.emit(
                OpsEventType.PROPOSAL_PENDING_REVIEW,
                ProposalPendingReviewData(proposal_id=proposal.id, reason=decision.reason),
            )
            await self.db.commit()

            logger.info(f"Proposal {proposal.id} ({source.value}) pending review: {decision.reason}")
            return AdmissionResult(
                status=ProposalStatus.PENDING,
                proposal_id=proposal.id,
                reason=decision.reason,
            )

        except Exception:
            await self.db.rollback()
            raise

    async def _record_rejection(
        self,
        source: ProposalSource,
        title: str,
        kinds: list[str],
        description: Optional[str],
        auto_approve_requested: bool,
        created_by: Optional[str],
        reason: str,
    ) -> AdmissionResult:
        proposal = Proposal(
            title=title,
            description=description,
            step_kinds=kinds,
            source=source,
            created_by=created_by,
            status=ProposalStatus.REJECTED,
            rejection_reason=reason,
            auto_approve_requested=auto_approve_requested,
        )
        self.db.add(proposal)
        await self.db.flush()

        await self.events.emit(
            OpsEventType.PROPOSAL_REJECTED,
            ProposalRejectedData(proposal_id=proposal.id, reason=reason),
        )
        await self.db.commit()

        logger.info(f"Proposal {proposal.id} ({source.value}) rejected: {reason}")
        return AdmissionResult(
            status=ProposalStatus.REJECTED,
            proposal_id=proposal.id,
            reason=reason,
        )

    async def _create_mission(self, proposal: Proposal) -> Mission:
        mission = await self.missions.create_mission_with_steps(proposal)
        await self.events.emit(
            OpsEventType.PROPOSAL_APPROVED,
            ProposalApprovedData(
                proposal_id=proposal.id,
                mission_id=mission.id,
                step_count=mission.step_count,
            ),
            mission_id=mission.id,
        )
        return mission

    # ======================================================================
    # Manual Review
    # ======================================================================

    async def review(
        self,
        proposal_id: UUID,
        approve: bool,
        reviewer: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AdmissionResult:
        """
        Decide a pending proposal by hand.

        Approval still goes through the cap gate; a capped proposal is
        rejected instead of approved.

        Raises:
            NotFoundError: If the proposal does not exist
            ProposalStateError: If the proposal is no longer pending
        """
        proposal = await self.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError(f"Proposal {proposal_id} not found")
        if proposal.status != ProposalStatus.PENDING:
            raise ProposalStateError(
                f"Proposal {proposal_id} is {proposal.status.value}, only pending proposals can be reviewed"
            )

        now = now or utc_now()
        target = ProposalStatus.APPROVED if approve else ProposalStatus.REJECTED

        if approve:
            gate = await self.cap_gate.check(proposal.step_kinds, now)
            if not gate.ok:
                target = ProposalStatus.REJECTED
                reason = gate.reason
        elif not reason:
            reason = f"Rejected by {reviewer}"

        values = {
            "status": target,
            "reviewed_by": reviewer,
            "reviewed_at": now,
            "updated_at": now,
        }
        if target == ProposalStatus.APPROVED:
            values["approved_at"] = now
        else:
            values["rejection_reason"] = reason

        try:
            written = await self.db.execute(
                update(Proposal)
                .where(Proposal.id == proposal_id)
                .where(Proposal.status == ProposalStatus.PENDING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if written.rowcount != 1:
                raise ProposalStateError(f"Proposal {proposal_id} was reviewed concurrently")

            proposal = await self.get_proposal(proposal_id)

            mission_id = None
            if target == ProposalStatus.APPROVED:
                mission = await self._create_mission(proposal)
                mission_id = mission.id
            else:
                await self.events.emit(
                    OpsEventType.PROPOSAL_REJECTED,
                    ProposalRejectedData(proposal_id=proposal_id, reason=reason),
                )

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Proposal {proposal_id} {target.value} by {reviewer}")
        return AdmissionResult(
            status=target,
            proposal_id=proposal_id,
            mission_id=mission_id,
            reason=None if target == ProposalStatus.APPROVED else reason,
        )

    # ======================================================================
    # Reads
    # ======================================================================

    async def get_proposal(self, proposal_id: UUID) -> Optional[Proposal]:
        result = await self.db.execute(
            select(Proposal)
            .where(Proposal.id == proposal_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_proposals(
        self,
        status: Optional[ProposalStatus] = None,
        limit: int = 50,
    ) -> list[Proposal]:
        query = select(Proposal).order_by(Proposal.created_at.desc()).limit(limit)
        if status:
            query = query.where(Proposal.status == status)

        result = await self.db.execute(query)
        return list(result.scalars().all())
