from __future__ import annotations

from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyrotor.domain.state import TargetConfiguration
from keyrotor.persistence.repos.encryption_config import get_target_configuration
from keyrotor.tests.utils.replicas import COMPONENT, FakeClock, heartbeat, rollout
from keyrotor.workers.encryption_controllers import ControllerRunner


class RolloutSimulator:
    """Drives controllers the way a cluster would: every new target becomes a new revision."""

    def __init__(
        self,
        runner: ControllerRunner,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FakeClock,
    ) -> None:
        self.runner = runner
        self.session_factory = session_factory
        self.clock = clock
        self.revision = 0
        self.observed: TargetConfiguration | None = None
        self.history: list[TargetConfiguration] = []

    async def current_target(self) -> TargetConfiguration:
        async with self.session_factory() as session:
            target, _ = await get_target_configuration(session, component=COMPONENT)
        return target

    async def roll(self) -> None:
        self.revision += 1
        self.observed = await rollout(self.session_factory, revision=f"rev-{self.revision}", now=self.clock())
        self.history.append(self.observed)

    async def settle(
        self,
        *,
        max_rounds: int = 40,
        after_round: Callable[[TargetConfiguration, TargetConfiguration], Awaitable[None]] | None = None,
    ) -> TargetConfiguration:
        if self.observed is None:
            await self.roll()
        for _ in range(max_rounds):
            await heartbeat(self.session_factory, revision=f"rev-{self.revision}", now=self.clock())
            results = await self.runner.run_once()
            target = await self.current_target()
            if after_round is not None:
                await after_round(self.observed, target)
            if target != self.observed:
                await self.roll()
                continue
            if not any(result.applied for result in results):
                return target
        raise AssertionError("controllers did not settle")
