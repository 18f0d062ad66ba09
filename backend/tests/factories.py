"""Builders shared by the ops tests."""

from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.models import MissionStep, ProposalSource
from kindred_ops.core.ops.missions import MissionRepository
from kindred_ops.core.ops.policy import PolicyStore, daily_cap_policy_name
from kindred_ops.core.ops.proposals import AdmissionResult, ProposalService

DEFAULT_ALLOWED = ["build", "test", "deploy", "code_review", "audit"]


async def set_daily_cap(db: AsyncSession, agent_id: str, max_tasks: int) -> None:
    await PolicyStore(db).put(daily_cap_policy_name(agent_id), {"max_tasks": max_tasks})


async def admit(
    db: AsyncSession,
    step_kinds: list[str],
    title: str = "Build Pipeline",
    now: Optional[datetime] = None,
    **kwargs,
) -> AdmissionResult:
    """Admit an API proposal with sensible defaults."""
    return await ProposalService(db).admit(
        source=kwargs.pop("source", ProposalSource.API),
        title=title,
        step_kinds=step_kinds,
        now=now,
        **kwargs,
    )


async def claim(
    db: AsyncSession,
    agent_id: str,
    step_kinds: list[str],
    now: Optional[datetime] = None,
) -> Optional[MissionStep]:
    return await MissionRepository(db).claim_next_step(agent_id, step_kinds, now=now)
