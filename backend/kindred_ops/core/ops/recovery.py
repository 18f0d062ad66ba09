"""
Stale Recovery Sweeper - force-fails steps stuck in ``running``.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.config import settings
from kindred_ops.core.models import StepStatus
from kindred_ops.core.ops.errors import StaleTimeoutError
from kindred_ops.core.ops.events import EventLog, OpsEventType, StepFailedData
from kindred_ops.core.ops.missions import MissionRepository
from kindred_ops.core.timeutils import utc_now

logger = logging.getLogger(__name__)


class StaleRecoverySweeper:
    """
    Fails running steps whose ``started_at`` is older than the threshold.

    The transition is conditional on the step still running, so a step an
    agent completed in the meantime is left alone and a repeated sweep
    emits nothing new.
    """

    def __init__(
        self,
        db: AsyncSession,
        missions: Optional[MissionRepository] = None,
        events: Optional[EventLog] = None,
        threshold_minutes: Optional[int] = None,
    ):
        self.db = db
        self.events = events or EventLog(db)
        self.missions = missions or MissionRepository(db, self.events)
        self.threshold_minutes = (
            threshold_minutes if threshold_minutes is not None
            else settings.OPS_STALE_STEP_MINUTES
        )

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Recover stale steps.

        Returns:
            Number of steps this call moved to failed
        """
        now = now or utc_now()
        cutoff = now - timedelta(minutes=self.threshold_minutes)

        stale = await self.missions.list_running_steps_started_before(cutoff)
        if not stale:
            return 0

        recovered = 0
        for step in stale:
            failure = StaleTimeoutError(self.threshold_minutes)

            moved = await self.missions.transition_step(
                step.id,
                StepStatus.RUNNING,
                StepStatus.FAILED,
                error=str(failure),
                completed_at=now,
            )
            if not moved:
                continue

            await self.events.emit(
                OpsEventType.STEP_FAILED,
                StepFailedData(
                    step_kind=step.step_kind,
                    reason="timeout",
                    error=str(failure),
                    max_duration_minutes=self.threshold_minutes,
                ),
                agent_id=step.reserved_by or "unknown",
                mission_id=step.mission_id,
                step_id=step.id,
            )
            await self.db.commit()

            logger.warning(
                f"Recovered stale step {step.step_kind}#{step.id} "
                f"(reserved by {step.reserved_by or 'unknown'})"
            )
            recovered += 1

            await self.missions.finalize_if_done(step.mission_id, now=now)

        return recovered
