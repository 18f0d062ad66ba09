"""
Kindred Ops - Trigger Tests
===========================

Trigger registry and evaluation: matching, cooldowns, firing claims and
per-trigger isolation.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.models import AgentEvent, Proposal, ProposalSource, Trigger
from kindred_ops.core.ops.errors import NotFoundError, ValidationError
from kindred_ops.core.ops.events import EventLog
from kindred_ops.core.ops.policy import PolicyStore
from kindred_ops.core.ops.triggers import TriggerEvaluator, TriggerRegistry
from kindred_ops.core.timeutils import as_utc

T0 = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

COMMENT_CONDITION = {"op": "eq", "field": "type", "value": "comment_created"}
MARKET_ACTION = {
    "create_proposal": {
        "title": "Create market for comment {comment_id}",
        "step_kinds": ["analyze", "research"],
        "auto_approve": False,
    }
}


async def emit(db: AsyncSession, event_type: str, at: datetime, **data) -> AgentEvent:
    event = await EventLog(db).emit(event_type, data, agent_id="kindred", created_at=at)
    await db.commit()
    return event


async def proposals(db: AsyncSession) -> list[Proposal]:
    result = await db.execute(select(Proposal).order_by(Proposal.created_at))
    return list(result.scalars().all())


# ==========================================================================
# Registry
# ==========================================================================

class TestTriggerRegistry:
    """Tests for trigger CRUD."""

    async def test_create_normalizes_definition(self, db_session: AsyncSession):
        trigger = await TriggerRegistry(db_session).create_trigger(
            name="new_comment_create_market",
            condition=COMMENT_CONDITION,
            action=MARKET_ACTION,
            cooldown_seconds=30,
        )

        assert trigger.enabled is True
        assert trigger.cooldown_seconds == 30
        assert trigger.last_triggered is None
        assert trigger.condition == COMMENT_CONDITION
        assert trigger.action["create_proposal"]["step_kinds"] == ["analyze", "research"]

    @pytest.mark.parametrize("condition,action,cooldown", [
        ({"op": "python", "code": "True"}, MARKET_ACTION, 0),
        (COMMENT_CONDITION, {"create_proposal": {"title": "x"}}, 0),
        (COMMENT_CONDITION, MARKET_ACTION, -1),
    ])
    async def test_create_rejects_invalid(self, db_session: AsyncSession, condition, action, cooldown):
        with pytest.raises(ValidationError):
            await TriggerRegistry(db_session).create_trigger(
                name="bad", condition=condition, action=action, cooldown_seconds=cooldown
            )

    async def test_duplicate_name_rejected(self, db_session: AsyncSession):
        registry = TriggerRegistry(db_session)
        await registry.create_trigger(name="dup", condition=COMMENT_CONDITION, action=MARKET_ACTION)

        with pytest.raises(ValidationError):
            await registry.create_trigger(name="dup", condition=COMMENT_CONDITION, action=MARKET_ACTION)

    async def test_set_enabled(self, db_session: AsyncSession):
        registry = TriggerRegistry(db_session)
        trigger = await registry.create_trigger(name="t", condition=COMMENT_CONDITION, action=MARKET_ACTION)

        updated = await registry.set_enabled(trigger.id, False)

        assert updated.enabled is False
        assert await registry.list_triggers(enabled_only=True) == []

        with pytest.raises(NotFoundError):
            await registry.set_enabled(uuid4(), True)


# ==========================================================================
# Evaluation
# ==========================================================================

class TestTriggerEvaluator:
    """Tests for TriggerEvaluator.evaluate."""

    async def test_fires_and_renders_title(self, db_session: AsyncSession):
        await TriggerRegistry(db_session).create_trigger(
            name="new_comment_create_market", condition=COMMENT_CONDITION, action=MARKET_ACTION
        )
        event = await emit(db_session, "comment_created", T0 - timedelta(seconds=5), comment_id="c-42")

        fired = await TriggerEvaluator(db_session).evaluate(now=T0)

        assert fired == 1
        [proposal] = await proposals(db_session)
        assert proposal.title == "Create market for comment c-42"
        assert proposal.source == ProposalSource.TRIGGER
        assert proposal.created_by == "trigger:new_comment_create_market"

        trigger = await TriggerRegistry(db_session).get_by_name("new_comment_create_market")
        await db_session.refresh(trigger)
        assert as_utc(trigger.last_triggered) == T0

        result = await db_session.execute(
            select(AgentEvent).where(AgentEvent.event_type == "trigger_fired")
        )
        fired_event = result.scalar_one()
        assert fired_event.event_data["source_event_id"] == str(event.id)
        assert fired_event.event_data["proposal_status"] == "pending"

    async def test_no_match_no_fire(self, db_session: AsyncSession):
        await TriggerRegistry(db_session).create_trigger(
            name="t", condition=COMMENT_CONDITION, action=MARKET_ACTION
        )
        await emit(db_session, "market_expired", T0 - timedelta(seconds=5), market_id="m-1")

        assert await TriggerEvaluator(db_session).evaluate(now=T0) == 0
        assert await proposals(db_session) == []

    async def test_events_outside_window_ignored(self, db_session: AsyncSession):
        await TriggerRegistry(db_session).create_trigger(
            name="t", condition=COMMENT_CONDITION, action=MARKET_ACTION
        )
        await emit(db_session, "comment_created", T0 - timedelta(minutes=5), comment_id="old")

        assert await TriggerEvaluator(db_session, window_seconds=60).evaluate(now=T0) == 0

    async def test_cooldown(self, db_session: AsyncSession):
        """Fires at T, holds at T+30, fires again at T+61 (cooldown 60)."""
        await TriggerRegistry(db_session).create_trigger(
            name="t", condition=COMMENT_CONDITION, action=MARKET_ACTION, cooldown_seconds=60
        )
        evaluator = TriggerEvaluator(db_session, window_seconds=120)

        await emit(db_session, "comment_created", T0 - timedelta(seconds=1), comment_id="c-1")
        assert await evaluator.evaluate(now=T0) == 1

        await emit(db_session, "comment_created", T0 + timedelta(seconds=29), comment_id="c-2")
        assert await evaluator.evaluate(now=T0 + timedelta(seconds=30)) == 0

        assert await evaluator.evaluate(now=T0 + timedelta(seconds=61)) == 1

        titles = [p.title for p in await proposals(db_session)]
        assert titles == ["Create market for comment c-1", "Create market for comment c-2"]

    async def test_same_event_not_fired_twice(self, db_session: AsyncSession):
        await TriggerRegistry(db_session).create_trigger(
            name="t", condition=COMMENT_CONDITION, action=MARKET_ACTION
        )
        await emit(db_session, "comment_created", T0 - timedelta(seconds=5), comment_id="c-1")
        evaluator = TriggerEvaluator(db_session)

        assert await evaluator.evaluate(now=T0) == 1
        assert await evaluator.evaluate(now=T0 + timedelta(seconds=10)) == 0

    async def test_zero_cooldown_fires_per_event(self, db_session: AsyncSession):
        await TriggerRegistry(db_session).create_trigger(
            name="t", condition=COMMENT_CONDITION, action=MARKET_ACTION
        )
        await emit(db_session, "comment_created", T0 - timedelta(seconds=10), comment_id="c-1")
        await emit(db_session, "comment_created", T0 - timedelta(seconds=5), comment_id="c-2")

        assert await TriggerEvaluator(db_session).evaluate(now=T0) == 2

    async def test_firing_claim_is_compare_and_set(self, db_session: AsyncSession):
        """A heartbeat holding a stale last_triggered cannot claim the firing."""
        trigger = await TriggerRegistry(db_session).create_trigger(
            name="t", condition=COMMENT_CONDITION, action=MARKET_ACTION, cooldown_seconds=60
        )
        evaluator = TriggerEvaluator(db_session)

        assert await evaluator._claim_firing(trigger.id, None, T0) is True
        assert await evaluator._claim_firing(trigger.id, None, T0 + timedelta(seconds=1)) is False

    async def test_disabled_trigger_ignored(self, db_session: AsyncSession):
        registry = TriggerRegistry(db_session)
        await registry.create_trigger(
            name="t", condition=COMMENT_CONDITION, action=MARKET_ACTION, enabled=False
        )
        await emit(db_session, "comment_created", T0 - timedelta(seconds=5), comment_id="c-1")

        assert await TriggerEvaluator(db_session).evaluate(now=T0) == 0

    async def test_malformed_trigger_does_not_block_others(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        """A broken stored definition is skipped; healthy triggers still fire."""
        db_session.add(Trigger(
            name="aaa_broken",
            condition={"op": "eval", "expr": "1"},
            action=MARKET_ACTION,
            cooldown_seconds=0,
            enabled=True,
        ))
        await db_session.commit()
        await TriggerRegistry(db_session).create_trigger(
            name="zzz_healthy",
            condition={"op": "eq", "field": "step_kind", "value": "deploy"},
            action={"create_proposal": {"title": "Audit deploy", "step_kinds": ["audit"]}},
        )
        await emit(db_session, "step_completed", T0 - timedelta(seconds=5), step_kind="deploy")

        fired = await TriggerEvaluator(db_session).evaluate(now=T0)

        assert fired == 1
        [proposal] = await proposals(db_session)
        assert proposal.title == "Audit deploy"
        assert proposal.created_by == "trigger:zzz_healthy"
