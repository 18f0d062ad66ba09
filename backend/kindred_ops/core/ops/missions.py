"""
Mission Repository - missions, steps and the step state machine.

Step lifecycle:
    QUEUED -> RUNNING -> COMPLETED
                      -> FAILED

Every transition is a single conditional UPDATE keyed on the step id and
the expected current status. Whoever loses a race sees a no-op (False),
never a corrupted row. This is what makes step claiming safe with any
number of concurrent agents.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.models import (
    TERMINAL_STEP_STATUSES,
    Mission,
    MissionStatus,
    MissionStep,
    Proposal,
    StepStatus,
)
from kindred_ops.core.ops.errors import InvalidTransitionError, NotFoundError
from kindred_ops.core.ops.events import (
    EventLog,
    MissionCreatedData,
    MissionFinalizedData,
    OpsEventType,
    StepCompletedData,
    StepFailedData,
)
from kindred_ops.core.timeutils import as_utc, utc_now

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.QUEUED: frozenset({StepStatus.RUNNING}),
    StepStatus.RUNNING: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
}

# Columns a transition may write besides status
TRANSITION_FIELDS = frozenset({
    "reserved_by",
    "reserved_at",
    "started_at",
    "completed_at",
    "result",
    "error",
})


@dataclass
class StepOutcome:
    """Result reported for a running step."""
    status: StepStatus
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def completed(cls, result: Optional[dict[str, Any]] = None) -> "StepOutcome":
        return cls(status=StepStatus.COMPLETED, result=result)

    @classmethod
    def failed(cls, error: str) -> "StepOutcome":
        return cls(status=StepStatus.FAILED, error=error)


class MissionRepository:
    """
    Owns mission and step records.

    Features:
    - Atomic mission + steps creation (inside the caller's transaction)
    - Conditional step transitions
    - Claiming of queued steps by capability
    - Idempotent mission finalization
    """

    # Queued candidates fetched per claim attempt
    CLAIM_CANDIDATES = 5

    def __init__(self, db: AsyncSession, events: Optional[EventLog] = None):
        self.db = db
        self.events = events or EventLog(db)

    # ======================================================================
    # Creation
    # ======================================================================

    async def create_mission_with_steps(
        self,
        proposal: Proposal,
        step_kinds: Optional[Iterable[str]] = None,
    ) -> Mission:
        """
        Create a mission and its queued steps for an approved proposal.

        Only flushes; the caller commits so the mission, its steps and the
        proposal approval land in one transaction.

        Args:
            proposal: Approved proposal that owns the mission
            step_kinds: Step kinds in execution order (defaults to the
                proposal's)

        Returns:
            The new Mission with steps ordered 1..N
        """
        kinds = list(step_kinds if step_kinds is not None else proposal.step_kinds)

        mission = Mission(
            proposal_id=proposal.id,
            title=proposal.title,
            status=MissionStatus.PENDING,
            step_count=len(kinds),
            completed_count=0,
            failed_count=0,
        )
        mission.steps = [
            MissionStep(step_kind=kind, step_order=order, status=StepStatus.QUEUED)
            for order, kind in enumerate(kinds, start=1)
        ]

        self.db.add(mission)
        await self.db.flush()

        await self.events.emit(
            OpsEventType.MISSION_CREATED,
            MissionCreatedData(
                mission_id=mission.id,
                proposal_id=proposal.id,
                step_count=len(kinds),
            ),
            mission_id=mission.id,
        )

        logger.info(f"Created mission {mission.id} with {len(kinds)} steps for proposal {proposal.id}")
        return mission

    # ======================================================================
    # Reads
    # ======================================================================

    async def get_mission(self, mission_id: UUID) -> Optional[Mission]:
        """Get a mission with its steps, bypassing stale session state."""
        result = await self.db.execute(
            select(Mission)
            .where(Mission.id == mission_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_mission_for_proposal(self, proposal_id: UUID) -> Optional[Mission]:
        result = await self.db.execute(
            select(Mission).where(Mission.proposal_id == proposal_id)
        )
        return result.scalar_one_or_none()

    async def list_missions(
        self,
        status: Optional[MissionStatus] = None,
        limit: int = 50,
    ) -> list[Mission]:
        """Most recent missions first."""
        query = select(Mission).order_by(Mission.created_at.desc()).limit(limit)
        if status:
            query = query.where(Mission.status == status)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_step(self, step_id: UUID) -> Optional[MissionStep]:
        """Get a step, bypassing stale session state."""
        result = await self.db.execute(
            select(MissionStep)
            .where(MissionStep.id == step_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_running_steps_started_before(self, cutoff: datetime) -> list[MissionStep]:
        """Running steps whose start precedes ``cutoff``."""
        result = await self.db.execute(
            select(MissionStep)
            .where(MissionStep.status == StepStatus.RUNNING)
            .where(MissionStep.started_at < cutoff)
            .order_by(MissionStep.started_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # ======================================================================
    # State Machine
    # ======================================================================

    async def transition_step(
        self,
        step_id: UUID,
        from_status: StepStatus,
        to_status: StepStatus,
        **fields: Any,
    ) -> bool:
        """
        Move a step from ``from_status`` to ``to_status``.

        Single conditional UPDATE; does not commit.

        Returns:
            True if this call moved the step, False if the step was not in
            ``from_status`` any more (someone else moved it first)

        Raises:
            InvalidTransitionError: If the edge is not part of the state
                machine or ``fields`` names a column transitions may not set
        """
        if to_status not in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
            raise InvalidTransitionError(
                f"Illegal step transition {from_status.value} -> {to_status.value}"
            )

        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise InvalidTransitionError(f"Transition cannot set: {', '.join(sorted(unknown))}")

        values = {key: value for key, value in fields.items() if value is not None}

        result = await self.db.execute(
            update(MissionStep)
            .where(MissionStep.id == step_id)
            .where(MissionStep.status == from_status)
            .values(status=to_status, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim_next_step(
        self,
        agent_id: str,
        step_kinds: Iterable[str],
        now: Optional[datetime] = None,
    ) -> Optional[MissionStep]:
        """
        Claim the oldest queued step of a kind the agent supports.

        Returns:
            The claimed step (now RUNNING, reserved by ``agent_id``) or None
            when nothing is claimable
        """
        kinds = list(step_kinds)
        if not kinds:
            return None

        now = now or utc_now()

        result = await self.db.execute(
            select(MissionStep.id)
            .where(MissionStep.status == StepStatus.QUEUED)
            .where(MissionStep.step_kind.in_(kinds))
            .order_by(MissionStep.created_at, MissionStep.step_order)
            .limit(self.CLAIM_CANDIDATES)
        )
        candidates = list(result.scalars().all())

        for step_id in candidates:
            claimed = await self.transition_step(
                step_id,
                StepStatus.QUEUED,
                StepStatus.RUNNING,
                reserved_by=agent_id,
                reserved_at=now,
                started_at=now,
            )
            if claimed:
                await self.db.commit()
                logger.info(f"Agent {agent_id} claimed step {step_id}")
                return await self.get_step(step_id)

            logger.debug(f"Agent {agent_id} lost claim race for step {step_id}")

        return None

    async def complete_step(
        self,
        step_id: UUID,
        outcome: StepOutcome,
        agent_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Record the outcome of a running step and finalize its mission.

        Returns:
            True if the outcome was recorded, False if the step was no
            longer running (e.g. already failed by stale recovery)

        Raises:
            NotFoundError: If the step does not exist
            InvalidTransitionError: If the outcome is not terminal
        """
        if outcome.status not in TERMINAL_STEP_STATUSES:
            raise InvalidTransitionError(
                f"Step outcome must be completed or failed, got {outcome.status.value}"
            )

        step = await self.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found")

        now = now or utc_now()

        recorded = await self.transition_step(
            step.id,
            StepStatus.RUNNING,
            outcome.status,
            completed_at=now,
            result=outcome.result,
            error=outcome.error,
        )
        if not recorded:
            logger.warning(
                f"Outcome for step {step_id} ignored: step is {step.status.value}, not running"
            )
            return False

        duration_ms = None
        if step.started_at:
            duration_ms = int((now - as_utc(step.started_at)).total_seconds() * 1000)

        actor = agent_id or step.reserved_by or "unknown"
        if outcome.status == StepStatus.COMPLETED:
            await self.events.emit(
                OpsEventType.STEP_COMPLETED,
                StepCompletedData(
                    step_kind=step.step_kind,
                    duration_ms=duration_ms,
                    result=outcome.result,
                ),
                agent_id=actor,
                mission_id=step.mission_id,
                step_id=step.id,
            )
        else:
            await self.events.emit(
                OpsEventType.STEP_FAILED,
                StepFailedData(
                    step_kind=step.step_kind,
                    reason="error",
                    error=outcome.error,
                    duration_ms=duration_ms,
                ),
                agent_id=actor,
                mission_id=step.mission_id,
                step_id=step.id,
            )

        await self.db.commit()
        logger.info(f"Step {step.step_kind}#{step.id} {outcome.status.value} (agent={actor})")

        await self.finalize_if_done(step.mission_id, now=now)
        return True

    # ======================================================================
    # Finalization
    # ======================================================================

    async def finalize_if_done(
        self,
        mission_id: UUID,
        now: Optional[datetime] = None,
    ) -> Optional[MissionStatus]:
        """
        Finalize a mission once every step is terminal.

        Status is FAILED if any step failed, SUCCEEDED otherwise. The write
        is guarded by ``finalized_at IS NULL`` so repeated or concurrent
        calls finalize at most once.

        Returns:
            The final status if this call finalized the mission, else None
        """
        mission = await self.get_mission(mission_id)
        if mission is None or mission.finalized_at is not None:
            return None

        result = await self.db.execute(
            select(MissionStep.status).where(MissionStep.mission_id == mission_id)
        )
        statuses = list(result.scalars().all())
        if not statuses:
            return None

        completed = sum(1 for s in statuses if s == StepStatus.COMPLETED)
        failed = sum(1 for s in statuses if s == StepStatus.FAILED)
        total = len(statuses)

        if completed + failed < total:
            return None

        final_status = MissionStatus.FAILED if failed else MissionStatus.SUCCEEDED
        now = now or utc_now()

        written = await self.db.execute(
            update(Mission)
            .where(Mission.id == mission_id)
            .where(Mission.finalized_at.is_(None))
            .values(
                status=final_status,
                completed_count=completed,
                failed_count=failed,
                finalized_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if written.rowcount != 1:
            return None

        await self.events.emit(
            OpsEventType.MISSION_FINALIZED,
            MissionFinalizedData(
                mission_id=mission_id,
                status=final_status.value,
                completed=completed,
                failed=failed,
                total=total,
            ),
            mission_id=mission_id,
        )
        await self.db.commit()

        logger.info(
            f"Mission {mission_id} finalized as {final_status.value} "
            f"({completed} completed, {failed} failed of {total})"
        )
        return final_status
