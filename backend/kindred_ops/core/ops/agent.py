"""
Agent Worker - claims queued steps and runs their executors.

An agent declares what it can do by the executors it is given:

    worker = AgentWorker(
        "steve",
        {"build": run_build, "test": run_tests, "deploy": run_deploy},
        session_factory=AsyncSessionLocal,
    )
    await worker.start()
    ...
    await worker.stop()

Executors are ``async def executor(step) -> dict | None``. They receive a
detached snapshot of the claimed step; whatever they return is stored as
the step result, whatever they raise marks the step failed.
"""

import asyncio
from typing import Any, Awaitable, Callable, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from kindred_ops.core.config import settings
from kindred_ops.core.models import MissionStep
from kindred_ops.core.ops.errors import StepExecutionError
from kindred_ops.core.ops.missions import MissionRepository, StepOutcome

logger = structlog.get_logger()

StepExecutor = Callable[[MissionStep], Awaitable[Optional[Any]]]


class AgentWorker:
    """
    Claim/execute/complete loop for one agent.

    Any number of workers may poll concurrently; claiming is a conditional
    transition, so each step runs on exactly one agent.
    """

    def __init__(
        self,
        agent_id: str,
        executors: Mapping[str, StepExecutor],
        session_factory: async_sessionmaker,
        poll_interval: Optional[float] = None,
    ):
        self.agent_id = agent_id
        self.executors = dict(executors)
        self.session_factory = session_factory
        self.poll_interval = (
            poll_interval if poll_interval is not None
            else settings.AGENT_POLL_INTERVAL_SECONDS
        )
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def capabilities(self) -> list[str]:
        return list(self.executors)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ======================================================================
    # Single Iteration
    # ======================================================================

    async def run_once(self) -> Optional[StepOutcome]:
        """
        Claim one step, execute it and record the outcome.

        Returns:
            The recorded outcome, or None when nothing was claimable
        """
        async with self.session_factory() as session:
            step = await MissionRepository(session).claim_next_step(self.agent_id, self.capabilities)

        if step is None:
            return None

        logger.info("Step claimed", agent_id=self.agent_id, step_id=str(step.id), step_kind=step.step_kind)
        outcome = await self.execute(step)

        async with self.session_factory() as session:
            recorded = await MissionRepository(session).complete_step(
                step.id, outcome, agent_id=self.agent_id
            )

        if not recorded:
            logger.warning(
                "Step outcome discarded, step no longer running",
                agent_id=self.agent_id,
                step_id=str(step.id),
            )
        return outcome

    async def execute(self, step: MissionStep) -> StepOutcome:
        """Run the executor for ``step`` and convert the result to an outcome."""
        executor = self.executors.get(step.step_kind)

        try:
            if executor is None:
                raise StepExecutionError(f"Agent {self.agent_id} has no executor for {step.step_kind}")
            result = await executor(step)
        except StepExecutionError as e:
            logger.warning("Step failed", agent_id=self.agent_id, step_id=str(step.id), error=str(e))
            return StepOutcome.failed(str(e))
        except Exception as e:
            logger.exception("Step executor raised", agent_id=self.agent_id, step_id=str(step.id))
            return StepOutcome.failed(str(StepExecutionError(f"{type(e).__name__}: {e}")))

        if result is not None and not isinstance(result, dict):
            result = {"value": result}
        return StepOutcome.completed(result)

    # ======================================================================
    # Loop
    # ======================================================================

    async def start(self) -> None:
        """Start polling for work."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Agent started", agent_id=self.agent_id, capabilities=self.capabilities)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop claiming new steps.

        A step already executing is allowed to finish; with ``timeout`` set
        the loop is cancelled if it does not finish in time.
        """
        self._stop_event.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Agent stop timed out, in-flight step cancelled", agent_id=self.agent_id)
            self._task = None
        logger.info("Agent stopped", agent_id=self.agent_id)

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                outcome = await self.run_once()
            except Exception as e:
                logger.exception("Agent iteration failed", agent_id=self.agent_id, error=str(e))
                outcome = None

            # Keep draining while there is work
            if outcome is not None:
                continue

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
