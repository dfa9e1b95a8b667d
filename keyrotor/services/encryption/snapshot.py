from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from keyrotor.domain.state import KeyState, ResourcePolicy, TargetConfiguration
from keyrotor.persistence.repos.encryption_config import get_encryption_mode, get_target_configuration
from keyrotor.persistence.repos.keys import list_key_metadata, list_keys
from keyrotor.services.crypto.sealing import KeySealer
from keyrotor.services.encryption.convergence import ConvergenceReport, ReplicaConvergenceView


@dataclass(frozen=True)
class EncryptionSnapshot:
    """Everything one reconcile pass reads, loaded together at the start of the pass."""

    component: str
    mode: str
    keys: tuple[KeyState, ...]
    target: TargetConfiguration
    target_version: int
    convergence: ReplicaConvergenceView
    policy: ResourcePolicy
    now: datetime

    @property
    def newest_key(self) -> KeyState | None:
        return self.keys[-1] if self.keys else None

    @property
    def report(self) -> ConvergenceReport:
        return self.convergence.report()

    def key_by_id(self) -> dict[int, KeyState]:
        return {key.key_id: key for key in self.keys}


async def load_snapshot(
    session: AsyncSession,
    *,
    component: str,
    policy: ResourcePolicy,
    now: datetime,
    stale_after_s: int,
    sealer: KeySealer | None = None,
    key_material: bool = True,
) -> EncryptionSnapshot:
    # Status reads skip key material so a broken master key cannot hide lifecycle state.
    if key_material:
        keys = await list_keys(session, component=component, sealer=sealer)
    else:
        keys = await list_key_metadata(session, component=component)
    target, version = await get_target_configuration(session, component=component)
    mode = await get_encryption_mode(session, component=component)
    convergence = await ReplicaConvergenceView.load(
        session, component=component, now=now, stale_after_s=stale_after_s
    )
    return EncryptionSnapshot(
        component=component,
        mode=mode,
        keys=tuple(keys),
        target=target,
        target_version=version,
        convergence=convergence,
        policy=policy,
        now=now,
    )
