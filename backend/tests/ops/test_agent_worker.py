"""
Kindred Ops - Agent Worker Tests
================================
"""

import asyncio

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kindred_ops.core.models import MissionStatus, MissionStep, StepStatus
from kindred_ops.core.ops.agent import AgentWorker
from kindred_ops.core.ops.errors import StepExecutionError
from kindred_ops.core.ops.missions import MissionRepository
from kindred_ops.core.ops.policy import PolicyStore

from factories import admit


async def run_build(step: MissionStep) -> dict:
    return {"built": step.step_kind}


async def run_tests(step: MissionStep) -> int:
    return 42


async def explode(step: MissionStep) -> None:
    raise RuntimeError("disk full")


async def refuse(step: MissionStep) -> None:
    raise StepExecutionError("tests are red")


class TestAgentWorker:
    """Tests for the claim/execute/complete loop."""

    async def test_run_once_completes_step(
        self,
        db_session: AsyncSession,
        session_factory: async_sessionmaker,
        default_policies: PolicyStore,
    ):
        result = await admit(db_session, ["build"])
        worker = AgentWorker("steve", {"build": run_build}, session_factory=session_factory)

        outcome = await worker.run_once()

        assert outcome.status == StepStatus.COMPLETED
        repo = MissionRepository(db_session)
        mission = await repo.get_mission(result.mission_id)
        assert mission.status == MissionStatus.SUCCEEDED
        step = await repo.get_step(mission.steps[0].id)
        assert step.reserved_by == "steve"
        assert step.result == {"built": "build"}

    async def test_non_dict_result_is_wrapped(
        self,
        db_session: AsyncSession,
        session_factory: async_sessionmaker,
        default_policies: PolicyStore,
    ):
        result = await admit(db_session, ["test"])
        worker = AgentWorker("steve", {"test": run_tests}, session_factory=session_factory)

        await worker.run_once()

        repo = MissionRepository(db_session)
        mission = await repo.get_mission(result.mission_id)
        assert (await repo.get_step(mission.steps[0].id)).result == {"value": 42}

    async def test_executor_exception_fails_step(
        self,
        db_session: AsyncSession,
        session_factory: async_sessionmaker,
        default_policies: PolicyStore,
    ):
        result = await admit(db_session, ["deploy"])
        worker = AgentWorker("steve", {"deploy": explode}, session_factory=session_factory)

        outcome = await worker.run_once()

        assert outcome.status == StepStatus.FAILED
        assert outcome.error == "RuntimeError: disk full"
        repo = MissionRepository(db_session)
        mission = await repo.get_mission(result.mission_id)
        assert mission.status == MissionStatus.FAILED
        assert (await repo.get_step(mission.steps[0].id)).error == "RuntimeError: disk full"

    async def test_step_execution_error_message_kept(
        self,
        db_session: AsyncSession,
        session_factory: async_sessionmaker,
        default_policies: PolicyStore,
    ):
        await admit(db_session, ["test"])
        worker = AgentWorker("steve", {"test": refuse}, session_factory=session_factory)

        outcome = await worker.run_once()

        assert outcome.error == "tests are red"

    async def test_missing_executor_fails(self):
        worker = AgentWorker("steve", {"build": run_build}, session_factory=None)
        step = MissionStep(step_kind="deploy", step_order=1)

        outcome = await worker.execute(step)

        assert outcome.status == StepStatus.FAILED
        assert "no executor for deploy" in outcome.error

    async def test_nothing_to_claim(
        self,
        db_session: AsyncSession,
        session_factory: async_sessionmaker,
        default_policies: PolicyStore,
    ):
        await admit(db_session, ["code_review"])
        worker = AgentWorker("steve", {"build": run_build}, session_factory=session_factory)

        assert worker.capabilities == ["build"]
        assert await worker.run_once() is None

    async def test_start_drains_queue_then_stops(
        self,
        db_session: AsyncSession,
        session_factory: async_sessionmaker,
        default_policies: PolicyStore,
    ):
        result = await admit(db_session, ["build", "test"])
        worker = AgentWorker(
            "steve",
            {"build": run_build, "test": run_tests},
            session_factory=session_factory,
            poll_interval=0.01,
        )

        await worker.start()
        assert worker.is_running is True

        repo = MissionRepository(db_session)
        for _ in range(200):
            mission = await repo.get_mission(result.mission_id)
            if mission.finalized_at is not None:
                break
            await asyncio.sleep(0.01)

        await worker.stop(timeout=1)

        assert worker.is_running is False
        assert mission.status == MissionStatus.SUCCEEDED
        assert mission.completed_count == 2
