"""
Admission gates - cap gate and auto-approve evaluator.

Both run before a proposal can spawn work:
1. CapGate rejects proposals that would hand work to an agent already at
   its daily cap.
2. AutoApproveEvaluator decides whether the requested step kinds may skip
   human review. It fails closed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.config import settings
from kindred_ops.core.models import MissionStep, StepStatus
from kindred_ops.core.ops.errors import CapExceededError, PolicyMissingError
from kindred_ops.core.ops.policy import (
    AUTO_APPROVE_POLICY,
    DAILY_CAP_PREFIX,
    AgentDailyCapPolicy,
    AutoApprovePolicy,
    PolicyStore,
)
from kindred_ops.core.timeutils import start_of_utc_day

logger = logging.getLogger(__name__)


@dataclass
class GateResult:
    """Result of the cap gate."""
    ok: bool
    reason: Optional[str] = None


@dataclass
class ApprovalDecision:
    """Result of auto-approve evaluation."""
    approved: bool
    reason: Optional[str] = None
    disallowed: list[str] = field(default_factory=list)


class CapGate:
    """
    Per-agent daily throughput limiter.

    An agent is relevant to a proposal when it can execute at least one of
    the requested step kinds. For every relevant agent with an
    ``agent_daily_cap_<agent>`` policy, steps it completed since midnight
    UTC are counted against ``max_tasks``. Read-only.
    """

    def __init__(
        self,
        db: AsyncSession,
        policies: Optional[PolicyStore] = None,
        agent_capabilities: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.db = db
        self.policies = policies or PolicyStore(db)
        if agent_capabilities is None:
            agent_capabilities = settings.AGENT_CAPABILITIES
        self.agent_capabilities = {
            agent: frozenset(kinds) for agent, kinds in agent_capabilities.items()
        }

    def relevant_agents(self, step_kinds: Iterable[str]) -> set[str]:
        """Agents able to execute any of ``step_kinds``."""
        requested = set(step_kinds)
        return {
            agent for agent, kinds in self.agent_capabilities.items()
            if kinds & requested
        }

    async def completed_today(self, agent_id: str, now: Optional[datetime] = None) -> int:
        """Steps ``agent_id`` has completed since the start of the UTC day."""
        result = await self.db.execute(
            select(func.count())
            .select_from(MissionStep)
            .where(MissionStep.reserved_by == agent_id)
            .where(MissionStep.status == StepStatus.COMPLETED)
            .where(MissionStep.completed_at >= start_of_utc_day(now))
        )
        return result.scalar_one()

    async def enforce(self, step_kinds: Iterable[str], now: Optional[datetime] = None) -> None:
        """
        Check daily caps for the agents a proposal would use.

        Raises:
            CapExceededError: If any relevant agent is at or over its cap,
                or its cap policy is unreadable
        """
        relevant = self.relevant_agents(step_kinds)
        if not relevant:
            return

        caps = await self.policies.get_prefixed(DAILY_CAP_PREFIX)

        for name, value in sorted(caps.items()):
            agent_id = name[len(DAILY_CAP_PREFIX):]
            if agent_id not in relevant:
                continue

            try:
                cap = AgentDailyCapPolicy.model_validate(value).max_tasks
            except PydanticValidationError as e:
                logger.warning(f"Cap policy {name} is malformed: {e}")
                raise CapExceededError(
                    agent_id, reason=f"Daily cap policy {name} is malformed"
                ) from e

            count = await self.completed_today(agent_id, now)
            if count >= cap:
                raise CapExceededError(agent_id, count, cap)

    async def check(self, step_kinds: Iterable[str], now: Optional[datetime] = None) -> GateResult:
        """Non-raising form of ``enforce``."""
        try:
            await self.enforce(step_kinds, now)
        except CapExceededError as e:
            return GateResult(ok=False, reason=str(e))
        return GateResult(ok=True)


class AutoApproveEvaluator:
    """Allow-list check against the ``auto_approve_step_kinds`` policy."""

    def __init__(self, db: AsyncSession, policies: Optional[PolicyStore] = None):
        self.db = db
        self.policies = policies or PolicyStore(db)

    async def evaluate(self, step_kinds: Iterable[str]) -> ApprovalDecision:
        step_kinds = list(step_kinds)

        try:
            policy = await self.policies.require(AUTO_APPROVE_POLICY, AutoApprovePolicy)
        except PolicyMissingError as e:
            reason = str(e) if e.malformed else "No auto-approve policy found"
            return ApprovalDecision(approved=False, reason=reason)

        allowed = set(policy.allowed)
        disallowed = [kind for kind in step_kinds if kind not in allowed]

        if disallowed:
            return ApprovalDecision(
                approved=False,
                reason=f"Steps not in auto-approve list: {', '.join(disallowed)}",
                disallowed=disallowed,
            )

        return ApprovalDecision(approved=True)
