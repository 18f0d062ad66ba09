"""
Trigger Evaluator - turns recent events into proposals.

Once per heartbeat every enabled trigger is matched against the events of
the trailing window. A firing is claimed with a compare-and-set on
``last_triggered`` before the proposal is admitted, so overlapping
heartbeats fire a trigger at most once per cooldown.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.config import settings
from kindred_ops.core.models import AgentEvent, ProposalSource, Trigger
from kindred_ops.core.ops.actions import parse_action, render_template
from kindred_ops.core.ops.conditions import evaluate, event_fields, parse_condition
from kindred_ops.core.ops.errors import (
    NotFoundError,
    TriggerEvaluationError,
    ValidationError,
)
from kindred_ops.core.ops.events import EventLog, OpsEventType, TriggerFiredData
from kindred_ops.core.ops.proposals import ProposalService
from kindred_ops.core.timeutils import as_utc, utc_now

logger = logging.getLogger(__name__)


def event_template_values(event: AgentEvent) -> dict[str, Any]:
    """Values available to ``{placeholder}`` substitution in action titles."""
    values: dict[str, Any] = dict(event.event_data or {})
    values.setdefault("event_type", event.event_type)
    values.setdefault("agent_id", event.agent_id)
    if event.mission_id:
        values.setdefault("mission_id", str(event.mission_id))
    return values


# ==========================================================================
# Trigger Management
# ==========================================================================

class TriggerRegistry:
    """CRUD for trigger definitions (operator surface)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_triggers(self, enabled_only: bool = False) -> list[Trigger]:
        query = select(Trigger).order_by(Trigger.name)
        if enabled_only:
            query = query.where(Trigger.enabled.is_(True))

        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_trigger(self, trigger_id: UUID) -> Optional[Trigger]:
        result = await self.db.execute(
            select(Trigger)
            .where(Trigger.id == trigger_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> Optional[Trigger]:
        result = await self.db.execute(select(Trigger).where(Trigger.name == name))
        return result.scalar_one_or_none()

    async def create_trigger(
        self,
        name: str,
        condition: dict,
        action: dict,
        cooldown_seconds: int = 0,
        enabled: bool = True,
        description: Optional[str] = None,
    ) -> Trigger:
        """
        Create a trigger after validating its condition and action.

        Raises:
            ValidationError: On a malformed condition/action, a negative
                cooldown or a duplicate name
        """
        try:
            parsed_condition = parse_condition(condition)
            parsed_action = parse_action(action)
        except TriggerEvaluationError as e:
            raise ValidationError(str(e)) from e

        if cooldown_seconds < 0:
            raise ValidationError("cooldown_seconds must not be negative")

        if await self.get_by_name(name) is not None:
            raise ValidationError(f"Trigger {name} already exists")

        trigger = Trigger(
            name=name,
            description=description,
            condition=parsed_condition.model_dump(mode="json"),
            action=parsed_action.model_dump(mode="json", exclude_none=True),
            cooldown_seconds=cooldown_seconds,
            enabled=enabled,
        )
        self.db.add(trigger)
        await self.db.commit()
        await self.db.refresh(trigger)

        logger.info(f"Created trigger {name}")
        return trigger

    async def set_enabled(self, trigger_id: UUID, enabled: bool) -> Trigger:
        """
        Enable or disable a trigger.

        Raises:
            NotFoundError: If the trigger does not exist
        """
        trigger = await self.get_trigger(trigger_id)
        if trigger is None:
            raise NotFoundError(f"Trigger {trigger_id} not found")

        trigger.enabled = enabled
        await self.db.commit()
        await self.db.refresh(trigger)

        logger.info(f"Trigger {trigger.name} {'enabled' if enabled else 'disabled'}")
        return trigger


# ==========================================================================
# Evaluation
# ==========================================================================

class TriggerEvaluator:
    """
    Matches enabled triggers against recent events.

    Features:
    - Closed condition DSL, never executed as code
    - Per-trigger isolation: a broken trigger is logged and skipped
    - Cooldown compare-and-set claimed before admission
    """

    def __init__(
        self,
        db: AsyncSession,
        proposals: Optional[ProposalService] = None,
        events: Optional[EventLog] = None,
        registry: Optional[TriggerRegistry] = None,
        window_seconds: Optional[int] = None,
    ):
        self.db = db
        self.events = events or EventLog(db)
        self.proposals = proposals or ProposalService(db, events=self.events)
        self.registry = registry or TriggerRegistry(db)
        self.window_seconds = (
            window_seconds if window_seconds is not None
            else settings.OPS_TRIGGER_EVENT_WINDOW_SECONDS
        )

    async def evaluate(self, now: Optional[datetime] = None) -> int:
        """
        Run every enabled trigger against the trailing event window.

        Returns:
            Number of times a trigger fired (one admitted proposal each)
        """
        now = now or utc_now()

        triggers = await self.registry.list_triggers(enabled_only=True)
        if not triggers:
            return 0

        recent = await self.events.recent(now - timedelta(seconds=self.window_seconds), until=now)
        if not recent:
            return 0

        fired = 0
        for trigger in triggers:
            try:
                fired += await self._evaluate_trigger(trigger, recent, now)
            except TriggerEvaluationError as e:
                logger.warning(f"Trigger {trigger.name} skipped: {e}")
            except Exception:
                logger.exception(f"Trigger {trigger.name} evaluation failed")
                await self.db.rollback()

        if fired:
            logger.info(f"Triggers fired {fired} time(s) for {len(recent)} recent event(s)")
        return fired

    async def _evaluate_trigger(
        self,
        trigger: Trigger,
        recent: list[AgentEvent],
        now: datetime,
    ) -> int:
        condition = parse_condition(trigger.condition)
        action = parse_action(trigger.action).create_proposal

        # Raw value as stored; the compare-and-set matches on it
        observed = trigger.last_triggered
        previous = as_utc(observed)
        last_fired = previous

        fired = 0
        for event in recent:
            # Events at or before the last firing were already considered
            if previous is not None and as_utc(event.created_at) <= previous:
                continue

            if last_fired is not None:
                if (now - last_fired).total_seconds() < trigger.cooldown_seconds:
                    break

            if not evaluate(condition, event_fields(event)):
                continue

            if not await self._claim_firing(trigger.id, observed, now):
                logger.info(f"Trigger {trigger.name} already fired by a concurrent heartbeat")
                break
            observed = now
            last_fired = now

            values = event_template_values(event)
            try:
                result = await self.proposals.admit(
                    source=ProposalSource.TRIGGER,
                    title=render_template(action.title, values),
                    description=action.description,
                    step_kinds=action.step_kinds,
                    auto_approve_requested=action.auto_approve,
                    created_by=f"trigger:{trigger.name}",
                    now=now,
                )
            except ValidationError as e:
                raise TriggerEvaluationError(f"Action produced an invalid proposal: {e}") from e

            await self.events.emit(
                OpsEventType.TRIGGER_FIRED,
                TriggerFiredData(
                    trigger_id=trigger.id,
                    trigger_name=trigger.name,
                    source_event_id=event.id,
                    proposal_id=result.proposal_id,
                    proposal_status=result.status.value,
                ),
            )
            await self.db.commit()

            logger.info(
                f"Trigger {trigger.name} fired on {event.event_type} {event.id} "
                f"-> proposal {result.proposal_id} ({result.status.value})"
            )
            fired += 1

        return fired

    async def _claim_firing(
        self,
        trigger_id: UUID,
        observed: Optional[datetime],
        now: datetime,
    ) -> bool:
        """Set ``last_triggered=now`` only if it still holds ``observed``."""
        query = update(Trigger).where(Trigger.id == trigger_id)
        if observed is None:
            query = query.where(Trigger.last_triggered.is_(None))
        else:
            query = query.where(Trigger.last_triggered == observed)

        result = await self.db.execute(
            query.values(last_triggered=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1
