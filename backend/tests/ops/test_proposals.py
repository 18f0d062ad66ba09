"""
Kindred Ops - Proposal Admission Tests
======================================

Admission through the cap gate and auto-approve, plus manual review.
"""

from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.models import (
    AgentEvent,
    Mission,
    MissionStatus,
    Proposal,
    ProposalSource,
    ProposalStatus,
    StepStatus,
)
from kindred_ops.core.ops.errors import NotFoundError, ProposalStateError, ValidationError
from kindred_ops.core.ops.missions import MissionRepository
from kindred_ops.core.ops.policy import PolicyStore
from kindred_ops.core.ops.proposals import (
    MANUAL_REVIEW_REASON,
    ProposalService,
    validate_proposal_input,
)

from factories import admit, set_daily_cap


async def event_types(db: AsyncSession) -> list[str]:
    result = await db.execute(select(AgentEvent.event_type).order_by(AgentEvent.created_at))
    return list(result.scalars().all())


async def count(db: AsyncSession, model) -> int:
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar_one()


# ==========================================================================
# Input Validation
# ==========================================================================

class TestValidateProposalInput:
    """Tests for admission input checks."""

    def test_strips_title(self):
        title, kinds = validate_proposal_input("  Build  ", ["build"])

        assert title == "Build"
        assert kinds == ["build"]

    def test_accepts_step_kind_at_length_limit(self):
        _, kinds = validate_proposal_input("Build", ["x" * 50])

        assert kinds == ["x" * 50]

    @pytest.mark.parametrize("title", ["", "   ", "x" * 501])
    def test_rejects_bad_title(self, title):
        with pytest.raises(ValidationError):
            validate_proposal_input(title, ["build"])

    @pytest.mark.parametrize("kinds", [[], "build", ["Build"], ["build-it"], ["build", ""], ["x" * 51]])
    def test_rejects_bad_step_kinds(self, kinds):
        with pytest.raises(ValidationError):
            validate_proposal_input("Build", kinds)


# ==========================================================================
# Admission
# ==========================================================================

class TestAdmission:
    """Tests for ProposalService.admit."""

    async def test_auto_approved_creates_mission_with_ordered_steps(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        """Allowed step kinds create a mission with queued steps 1..N."""
        result = await admit(db_session, ["build", "test", "deploy"])

        assert result.status == ProposalStatus.APPROVED
        assert result.mission_id is not None
        assert result.reason is None

        mission = await MissionRepository(db_session).get_mission(result.mission_id)
        assert mission.status == MissionStatus.PENDING
        assert mission.step_count == 3
        assert mission.title == "Build Pipeline"
        assert [s.step_kind for s in mission.steps] == ["build", "test", "deploy"]
        assert [s.step_order for s in mission.steps] == [1, 2, 3]
        assert all(s.status == StepStatus.QUEUED for s in mission.steps)

        proposal = await ProposalService(db_session).get_proposal(result.proposal_id)
        assert proposal.status == ProposalStatus.APPROVED
        assert proposal.approved_at is not None

        types = await event_types(db_session)
        assert "mission_created" in types
        assert "proposal_approved" in types

    async def test_disallowed_kind_stays_pending(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        """A kind outside the allow-list leaves the proposal for review."""
        result = await admit(db_session, ["build", "foo"])

        assert result.status == ProposalStatus.PENDING
        assert result.mission_id is None
        assert "foo" in result.reason
        assert await count(db_session, Mission) == 0
        assert await event_types(db_session) == ["proposal_pending_review"]

    async def test_without_auto_approve_policy_stays_pending(self, db_session: AsyncSession):
        result = await admit(db_session, ["build"])

        assert result.status == ProposalStatus.PENDING
        assert result.reason == "No auto-approve policy found"

    async def test_auto_approve_not_requested(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        """Opting out of auto-approve sends even allowed kinds to review."""
        result = await admit(db_session, ["build"], auto_approve_requested=False)

        assert result.status == ProposalStatus.PENDING
        assert result.reason == MANUAL_REVIEW_REASON

    async def test_cap_exceeded_records_rejection(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        """A capped proposal is kept for audit and never becomes a mission."""
        await set_daily_cap(db_session, "steve", 0)

        result = await admit(db_session, ["build"])

        assert result.status == ProposalStatus.REJECTED
        assert result.mission_id is None
        assert result.reason == "Agent steve has reached daily task cap (0/0)"

        proposal = await ProposalService(db_session).get_proposal(result.proposal_id)
        assert proposal.status == ProposalStatus.REJECTED
        assert proposal.rejection_reason == result.reason
        assert await count(db_session, Mission) == 0
        assert await event_types(db_session) == ["proposal_rejected"]

    async def test_invalid_input_writes_nothing(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        with pytest.raises(ValidationError):
            await admit(db_session, [], title="Nothing to do")

        with pytest.raises(ValidationError):
            await admit(db_session, ["build"], source="carrier_pigeon")

        assert await count(db_session, Proposal) == 0
        assert await count(db_session, AgentEvent) == 0

    async def test_records_source_and_creator(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        result = await admit(
            db_session,
            ["audit"],
            source=ProposalSource.TRIGGER,
            created_by="trigger:code_deployed_trigger_audit",
            description="Audit the latest deploy",
        )

        proposal = await ProposalService(db_session).get_proposal(result.proposal_id)
        assert proposal.source == ProposalSource.TRIGGER
        assert proposal.created_by == "trigger:code_deployed_trigger_audit"
        assert proposal.description == "Audit the latest deploy"

    async def test_list_proposals_filters_by_status(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        await admit(db_session, ["build"])
        await admit(db_session, ["foo"])

        service = ProposalService(db_session)
        assert len(await service.list_proposals()) == 2
        pending = await service.list_proposals(status=ProposalStatus.PENDING)
        assert [p.step_kinds for p in pending] == [["foo"]]


# ==========================================================================
# Manual Review
# ==========================================================================

class TestReview:
    """Tests for ProposalService.review."""

    async def test_approve_creates_mission(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        pending = await admit(db_session, ["foo", "build"])

        result = await ProposalService(db_session).review(pending.proposal_id, approve=True, reviewer="ops")

        assert result.status == ProposalStatus.APPROVED
        assert result.mission_id is not None

        proposal = await ProposalService(db_session).get_proposal(pending.proposal_id)
        assert proposal.reviewed_by == "ops"
        assert proposal.reviewed_at is not None

        mission = await MissionRepository(db_session).get_mission(result.mission_id)
        assert [s.step_kind for s in mission.steps] == ["foo", "build"]

    async def test_reject_with_default_reason(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        pending = await admit(db_session, ["foo"])

        result = await ProposalService(db_session).review(pending.proposal_id, approve=False, reviewer="ops")

        assert result.status == ProposalStatus.REJECTED
        assert result.reason == "Rejected by ops"
        assert await count(db_session, Mission) == 0

    async def test_approve_still_checks_cap(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        """A reviewer cannot approve work for an agent at its cap."""
        pending = await admit(db_session, ["foo", "deploy"])
        await set_daily_cap(db_session, "steve", 0)

        result = await ProposalService(db_session).review(pending.proposal_id, approve=True, reviewer="ops")

        assert result.status == ProposalStatus.REJECTED
        assert "steve" in result.reason
        assert await count(db_session, Mission) == 0

    async def test_terminal_proposal_cannot_be_reviewed(
        self, db_session: AsyncSession, default_policies: PolicyStore
    ):
        approved = await admit(db_session, ["build"])

        with pytest.raises(ProposalStateError):
            await ProposalService(db_session).review(approved.proposal_id, approve=False, reviewer="ops")

    async def test_unknown_proposal(self, db_session: AsyncSession):
        with pytest.raises(NotFoundError):
            await ProposalService(db_session).review(uuid4(), approve=True, reviewer="ops")
