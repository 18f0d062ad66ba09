"""
Heartbeat - the periodic driver of the orchestrator.

Each tick runs three stages in order:
1. Trigger evaluation (recent events -> proposals)
2. Reaction queue processing
3. Stale step recovery

Stages are isolated: one failing stage is reported in ``errors`` and the
remaining stages still run.
"""

import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kindred_ops.core.config import settings
from kindred_ops.core.ops.events import EventLog
from kindred_ops.core.ops.proposals import ProposalService
from kindred_ops.core.ops.reactions import ReactionQueueProcessor
from kindred_ops.core.ops.recovery import StaleRecoverySweeper
from kindred_ops.core.ops.triggers import TriggerEvaluator
from kindred_ops.core.timeutils import utc_now

logger = structlog.get_logger()


class HeartbeatReport(BaseModel):
    """Aggregated result of one heartbeat."""
    success: bool
    heartbeat_at: datetime
    duration_ms: int
    triggers_evaluated: int = 0
    reactions_processed: int = 0
    stale_recovered: int = 0
    errors: list[str] = Field(default_factory=list)


class HeartbeatCoordinator:
    """Runs the heartbeat stages against one session."""

    def __init__(
        self,
        db: AsyncSession,
        triggers: Optional[TriggerEvaluator] = None,
        reactions: Optional[ReactionQueueProcessor] = None,
        sweeper: Optional[StaleRecoverySweeper] = None,
    ):
        self.db = db
        events = EventLog(db)
        proposals = ProposalService(db, events=events)
        self.triggers = triggers or TriggerEvaluator(db, proposals=proposals, events=events)
        self.reactions = reactions or ReactionQueueProcessor(db, proposals=proposals, events=events)
        self.sweeper = sweeper or StaleRecoverySweeper(db, missions=proposals.missions, events=events)

    async def run(self, now: Optional[datetime] = None) -> HeartbeatReport:
        """
        Run all stages once.

        Returns:
            HeartbeatReport; ``success`` is False if any stage raised
        """
        now = now or utc_now()
        started = time.monotonic()
        errors: list[str] = []

        stages: list[tuple[str, str, Callable[..., Awaitable[int]]]] = [
            ("Trigger evaluation", "triggers_evaluated", self.triggers.evaluate),
            ("Reaction processing", "reactions_processed", self.reactions.process),
            ("Stale recovery", "stale_recovered", self.sweeper.sweep),
        ]

        counts: dict[str, int] = {}
        for label, key, stage in stages:
            try:
                counts[key] = await stage(now)
            except Exception as e:
                logger.exception("Heartbeat stage failed", stage=label, error=str(e))
                errors.append(f"{label} failed: {e}")
                await self.db.rollback()

        report = HeartbeatReport(
            success=not errors,
            heartbeat_at=now,
            duration_ms=int((time.monotonic() - started) * 1000),
            errors=errors,
            **counts,
        )

        logger.info(
            "Heartbeat completed",
            success=report.success,
            duration_ms=report.duration_ms,
            triggers_evaluated=report.triggers_evaluated,
            reactions_processed=report.reactions_processed,
            stale_recovered=report.stale_recovered,
        )
        return report


class HeartbeatScheduler:
    """
    In-process timer that runs a heartbeat every ``interval_seconds``.

    Each tick opens its own session. ``stop()`` wakes the timer and
    cancels a tick in progress.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        interval_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None
            else settings.OPS_HEARTBEAT_INTERVAL_SECONDS
        )
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.last_report: Optional[HeartbeatReport] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the heartbeat task."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Heartbeat scheduler started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the heartbeat task."""
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Heartbeat scheduler stopped")

    async def tick(self) -> HeartbeatReport:
        """Run a single heartbeat in a fresh session."""
        async with self.session_factory() as session:
            report = await HeartbeatCoordinator(session).run()
        self.last_report = report
        return report

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.exception("Heartbeat tick failed", error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
