"""
Reaction Queue Processor.

Drains pending reaction items, oldest first, in small batches. What an
event leads to is configured in the ``reaction_matrix`` policy:

    {"rules": [
        {"event_type": "step_failed",
         "condition": {"op": "eq", "field": "step_kind", "value": "deploy"},
         "action": {"create_proposal": {"title": "...", "step_kinds": [...]}}}
    ]}

Without a policy, or without a matching rule, an item is simply marked
completed.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.config import settings
from kindred_ops.core.models import (
    AgentEvent,
    ProposalSource,
    ReactionQueueItem,
    ReactionStatus,
)
from kindred_ops.core.ops.actions import ProposalAction, render_template
from kindred_ops.core.ops.conditions import Condition, evaluate, event_fields
from kindred_ops.core.ops.errors import (
    PolicyMissingError,
    TriggerEvaluationError,
    ValidationError,
)
from kindred_ops.core.ops.events import EventLog
from kindred_ops.core.ops.policy import REACTION_MATRIX_POLICY, PolicyStore
from kindred_ops.core.ops.proposals import ProposalService
from kindred_ops.core.ops.triggers import event_template_values
from kindred_ops.core.timeutils import utc_now

logger = logging.getLogger(__name__)


class ReactionRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event_type: str = Field(min_length=1)
    condition: Optional[Condition] = None
    action: ProposalAction


class ReactionMatrix(BaseModel):
    """Value of the ``reaction_matrix`` policy."""
    model_config = ConfigDict(extra="forbid")

    rules: list[ReactionRule] = Field(default_factory=list)

    def rules_for(self, event: AgentEvent) -> list[ReactionRule]:
        fields = event_fields(event)
        return [
            rule for rule in self.rules
            if rule.event_type == event.event_type
            and (rule.condition is None or evaluate(rule.condition, fields))
        ]


class ReactionQueueProcessor:
    """Consumes each reaction item at most once."""

    def __init__(
        self,
        db: AsyncSession,
        proposals: Optional[ProposalService] = None,
        policies: Optional[PolicyStore] = None,
        events: Optional[EventLog] = None,
        batch_size: Optional[int] = None,
    ):
        self.db = db
        self.events = events or EventLog(db)
        self.policies = policies or PolicyStore(db)
        self.proposals = proposals or ProposalService(db, policies=self.policies, events=self.events)
        self.batch_size = batch_size if batch_size is not None else settings.OPS_REACTION_BATCH_SIZE

    async def load_matrix(self) -> ReactionMatrix:
        """
        Load the reaction matrix; an absent policy means no rules.

        Raises:
            PolicyMissingError: If the policy exists but is malformed
        """
        try:
            return await self.policies.require(REACTION_MATRIX_POLICY, ReactionMatrix)
        except PolicyMissingError as e:
            if e.malformed:
                raise
            return ReactionMatrix()

    async def pending_items(self) -> list[ReactionQueueItem]:
        result = await self.db.execute(
            select(ReactionQueueItem)
            .where(ReactionQueueItem.status == ReactionStatus.PENDING)
            .where(ReactionQueueItem.processed_at.is_(None))
            .order_by(ReactionQueueItem.created_at, ReactionQueueItem.id)
            .limit(self.batch_size)
        )
        return list(result.scalars().all())

    async def process(self, now: Optional[datetime] = None) -> int:
        """
        Process one batch of pending reaction items.

        Returns:
            Number of items this call consumed (completed or failed)
        """
        now = now or utc_now()

        items = await self.pending_items()
        if not items:
            return 0

        matrix = await self.load_matrix()
        # Ids are captured up front; a rollback below expires loaded items.
        pending = [(item.id, item.source_event_id) for item in items]

        processed = 0
        for item_id, source_event_id in pending:
            if not await self._claim(item_id, now):
                logger.debug(f"Reaction item {item_id} already taken")
                continue

            event = None
            if source_event_id is not None:
                event = await self.events.get(source_event_id)

            if event is None:
                await self._finish(item_id, ReactionStatus.FAILED, "Source event not found")
                processed += 1
                continue

            event_label = f"{event.event_type} {event.id}"
            try:
                created = await self._react(event, matrix, now)
            except (TriggerEvaluationError, ValidationError) as e:
                logger.warning(f"Reaction to {event_label} failed: {e}")
                await self._finish(item_id, ReactionStatus.FAILED, str(e))
            except Exception as e:
                logger.exception(f"Reaction to {event_label} raised")
                await self.db.rollback()
                await self._finish(item_id, ReactionStatus.FAILED, f"{type(e).__name__}: {e}")
            else:
                await self._finish(item_id, ReactionStatus.COMPLETED)
                if created:
                    logger.info(f"Reaction to {event_label} created {created} proposal(s)")
            processed += 1

        return processed

    async def _react(self, event: AgentEvent, matrix: ReactionMatrix, now: datetime) -> int:
        created = 0
        values = event_template_values(event)

        for rule in matrix.rules_for(event):
            template = rule.action.create_proposal
            await self.proposals.admit(
                source=ProposalSource.REACTION,
                title=render_template(template.title, values),
                description=template.description,
                step_kinds=template.step_kinds,
                auto_approve_requested=template.auto_approve,
                created_by=f"reaction:{event.event_type}",
                now=now,
            )
            created += 1

        return created

    async def _claim(self, item_id: UUID, now: datetime) -> bool:
        result = await self.db.execute(
            update(ReactionQueueItem)
            .where(ReactionQueueItem.id == item_id)
            .where(ReactionQueueItem.status == ReactionStatus.PENDING)
            .where(ReactionQueueItem.processed_at.is_(None))
            .values(processed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _finish(
        self,
        item_id: UUID,
        status: ReactionStatus,
        error: Optional[str] = None,
    ) -> None:
        await self.db.execute(
            update(ReactionQueueItem)
            .where(ReactionQueueItem.id == item_id)
            .where(ReactionQueueItem.status == ReactionStatus.PENDING)
            .values(status=status, error=error, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
