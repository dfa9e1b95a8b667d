"""Replica convergence: have all running replicas settled on one revision?

Configuration changes may only move forward once every replica serves the same
revision and that revision loaded the configuration we expect. The view is a
plain query object over a snapshot so it can be tested without a database.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from keyrotor.domain.state import EMPTY_CONFIGURATION, ReplicaState, TargetConfiguration
from keyrotor.persistence.repos.encryption_config import list_observed_configurations
from keyrotor.persistence.repos.replicas import list_replicas


@dataclass(frozen=True)
class ConvergenceReport:
    converged: bool
    revision: str | None
    observed: TargetConfiguration | None
    running_replicas: int
    blockers: tuple[str, ...]

    def converged_on(self, configuration: TargetConfiguration) -> bool:
        return self.converged and self.observed == configuration


class ReplicaConvergenceView:
    def __init__(
        self,
        replicas: Sequence[ReplicaState],
        observed: Mapping[str, TargetConfiguration],
        *,
        now: datetime,
        stale_after_s: int,
    ) -> None:
        self._replicas = tuple(replicas)
        self._observed = dict(observed)
        self._now = now
        self._stale_after = timedelta(seconds=max(1, int(stale_after_s)))

    @classmethod
    async def load(
        cls,
        session: AsyncSession,
        *,
        component: str,
        now: datetime,
        stale_after_s: int,
    ) -> ReplicaConvergenceView:
        replicas = await list_replicas(session, component=component)
        observed = await list_observed_configurations(session, component=component)
        return cls(replicas, observed, now=now, stale_after_s=stale_after_s)

    def _is_stale(self, replica: ReplicaState) -> bool:
        if replica.last_heartbeat_at is None:
            return True
        return self._now - replica.last_heartbeat_at > self._stale_after

    @property
    def live_replicas(self) -> tuple[ReplicaState, ...]:
        # Replicas that stopped heartbeating are treated as gone, not as blocking.
        return tuple(replica for replica in self._replicas if not self._is_stale(replica))

    @property
    def observed_configurations(self) -> dict[str, TargetConfiguration]:
        return dict(self._observed)

    def report(self) -> ConvergenceReport:
        live = self.live_replicas
        blockers: list[str] = []
        if not live:
            blockers.append("no live replicas")
        not_running = sorted(replica.replica_id for replica in live if not replica.running)
        if not_running:
            blockers.append(f"replicas not running: {', '.join(not_running)}")
        revisions = sorted({replica.revision or "" for replica in live})
        if len(revisions) > 1:
            blockers.append(f"replicas on different revisions: {', '.join(revisions)}")
        revision = revisions[0] if len(revisions) == 1 and revisions[0] else None
        if len(revisions) == 1 and revision is None:
            blockers.append("replicas report no revision")
        # A revision that never published a configuration has not loaded one.
        observed = self._observed.get(revision, EMPTY_CONFIGURATION) if revision is not None else None
        converged = not blockers
        return ConvergenceReport(
            converged=converged,
            revision=revision if converged else None,
            observed=observed if converged else None,
            running_replicas=sum(1 for replica in live if replica.running),
            blockers=tuple(blockers),
        )

    def is_converged_on(self, configuration: TargetConfiguration) -> bool:
        return self.report().converged_on(configuration)

    def revisions_in_use(self) -> tuple[str, ...]:
        return tuple(sorted({replica.revision for replica in self.live_replicas if replica.revision}))
