from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyrotor.core.config import Settings, get_settings
from keyrotor.core.errors import ConflictError, MigrationError, UnbackedKeyError
from keyrotor.domain.state import ResourcePolicy
from keyrotor.services.crypto.sealing import KeySealer
from keyrotor.services.encryption.policy import default_resource_policy
from keyrotor.services.encryption.snapshot import EncryptionSnapshot, load_snapshot
from keyrotor.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


SYNC_APPLIED = "applied"
SYNC_NOOP = "noop"
SYNC_DEFERRED = "deferred"


@dataclass(frozen=True)
class SyncResult:
    controller: str
    status: str
    detail: str = ""

    @property
    def applied(self) -> bool:
        return self.status == SYNC_APPLIED


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EncryptionController:
    """One reconcile pass over a fresh snapshot; subclasses implement ``reconcile``.

    Lost races, unbacked configurations, migration failures and database errors
    end the pass as deferred. The next trigger retries from fresh state.
    """

    name = "controller"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
        policy: ResourcePolicy | None = None,
        sealer: KeySealer | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._policy = policy or default_resource_policy()
        self._sealer = sealer
        self._clock = clock or utc_now

    @property
    def component(self) -> str:
        return self._settings.encryption_component

    async def load(self, session: AsyncSession) -> EncryptionSnapshot:
        return await load_snapshot(
            session,
            component=self.component,
            policy=self._policy,
            now=self._clock(),
            stale_after_s=self._settings.replica_stale_after_s,
            sealer=self._sealer,
        )

    def noop(self, detail: str = "") -> SyncResult:
        return SyncResult(self.name, SYNC_NOOP, detail)

    def applied(self, detail: str) -> SyncResult:
        increment_counter(f"encryption_{self.name}_applied_total")
        return SyncResult(self.name, SYNC_APPLIED, detail)

    def deferred(self, detail: str) -> SyncResult:
        increment_counter(f"encryption_{self.name}_deferred_total")
        logger.info("encryption_controller_deferred controller=%s detail=%s", self.name, detail)
        return SyncResult(self.name, SYNC_DEFERRED, detail)

    async def reconcile(self, session: AsyncSession, snapshot: EncryptionSnapshot) -> SyncResult:
        raise NotImplementedError

    async def sync(self) -> SyncResult:
        async with self._session_factory() as session:
            try:
                snapshot = await self.load(session)
                return await self.reconcile(session, snapshot)
            except ConflictError as exc:
                increment_counter("encryption_conflicts_total")
                logger.info("encryption_controller_conflict controller=%s error=%s", self.name, exc)
                return self.deferred(f"conflict: {exc}")
            except UnbackedKeyError as exc:
                logger.warning("encryption_controller_unbacked_keys controller=%s key_ids=%s", self.name, exc.key_ids)
                return self.deferred(str(exc))
            except MigrationError as exc:
                logger.warning("encryption_controller_migration_failed controller=%s error=%s", self.name, exc)
                return self.deferred(str(exc))
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("encryption_controller_state_unavailable controller=%s", self.name, exc_info=exc)
                return self.deferred("shared state unavailable")
