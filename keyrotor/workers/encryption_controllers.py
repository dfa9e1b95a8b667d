from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyrotor.core.config import Settings, get_settings
from keyrotor.domain.state import ResourcePolicy
from keyrotor.persistence.db import SessionLocal
from keyrotor.services.encryption.config_apply import ConfigApplyController
from keyrotor.services.encryption.controller import EncryptionController, SyncResult, utc_now
from keyrotor.services.encryption.key_mint import KeyMintController
from keyrotor.services.encryption.migration import MigrationController
from keyrotor.services.encryption.migrator import MigrationCollaborator
from keyrotor.services.encryption.prune import PruneController
from keyrotor.services.resilience import get_resilience_redis


logger = logging.getLogger(__name__)

CONTROLLER_NAMES = (
    KeyMintController.name,
    ConfigApplyController.name,
    MigrationController.name,
    PruneController.name,
)


def build_default_controllers(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    settings: Settings | None = None,
    policy: ResourcePolicy | None = None,
    migrator: MigrationCollaborator | None = None,
    clock: Callable[[], datetime] | None = None,
) -> list[EncryptionController]:
    factory = session_factory or SessionLocal
    common: dict[str, Any] = {"settings": settings, "policy": policy, "clock": clock}
    return [
        KeyMintController(factory, **common),
        ConfigApplyController(factory, **common),
        MigrationController(factory, migrator=migrator, **common),
        PruneController(factory, **common),
    ]


async def set_controller_heartbeat(name: str, *, timestamp: datetime | None = None) -> None:
    # Publish per-controller heartbeats so ops surfaces can detect a stalled loop.
    redis = await get_resilience_redis()
    if redis is None:
        return
    settings = get_settings()
    heartbeat = timestamp or utc_now()
    ttl_s = max(60, int(settings.controller_resync_interval_s) * 10)
    try:
        await redis.set(f"{settings.controller_heartbeat_prefix}:{name}", heartbeat.isoformat(), ex=ttl_s)
    except Exception as exc:  # noqa: BLE001 - heartbeats are best effort
        logger.debug("controller_heartbeat_failed controller=%s error=%s", name, exc)


async def get_controller_heartbeat(name: str) -> datetime | None:
    # Return None when the heartbeat is missing/unreadable so ops endpoints degrade gracefully.
    redis = await get_resilience_redis()
    if redis is None:
        return None
    try:
        value = await redis.get(f"{get_settings().controller_heartbeat_prefix}:{name}")
    except Exception:  # noqa: BLE001 - Redis might be unavailable in dev
        return None
    if not value:
        return None
    decoded = value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)
    try:
        return datetime.fromisoformat(decoded)
    except ValueError:
        return None


class ControllerRunner:
    """Runs each controller in its own level-triggered loop.

    A loop wakes on its resync interval or when ``trigger()`` is called. Any pass
    that applies a change wakes the other controllers, since their inputs moved.
    """

    def __init__(
        self,
        controllers: Sequence[EncryptionController],
        *,
        resync_interval_s: float | None = None,
        heartbeats: bool = True,
    ) -> None:
        self._controllers = list(controllers)
        self._interval = max(0.01, float(resync_interval_s or get_settings().controller_resync_interval_s))
        self._heartbeats = heartbeats
        self._events = {controller.name: asyncio.Event() for controller in self._controllers}
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = False

    @property
    def controllers(self) -> list[EncryptionController]:
        return list(self._controllers)

    def trigger(self, names: Iterable[str] | None = None) -> None:
        wanted = set(names) if names is not None else set(self._events)
        for name, event in self._events.items():
            if name in wanted:
                event.set()

    async def run_pass(self, controller: EncryptionController) -> SyncResult:
        result = await controller.sync()
        if result.applied:
            self.trigger(name for name in self._events if name != controller.name)
        if self._heartbeats:
            await set_controller_heartbeat(controller.name)
        return result

    async def run_once(self) -> list[SyncResult]:
        # One sequential pass over every controller, for scripts and tests.
        return [await self.run_pass(controller) for controller in self._controllers]

    async def run_until_settled(self, *, max_rounds: int = 50) -> list[SyncResult]:
        history: list[SyncResult] = []
        for _ in range(max_rounds):
            results = await self.run_once()
            history.extend(results)
            if not any(result.applied for result in results):
                break
        return history

    async def _loop(self, controller: EncryptionController) -> None:
        event = self._events[controller.name]
        while not self._stopping:
            event.clear()
            try:
                result = await self.run_pass(controller)
                logger.debug(
                    "encryption_controller_pass controller=%s status=%s detail=%s",
                    controller.name,
                    result.status,
                    result.detail,
                )
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("encryption controller pass failed controller=%s", controller.name)
            try:
                await asyncio.wait_for(event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        self._tasks = [
            asyncio.create_task(self._loop(controller), name=f"encryption-{controller.name}")
            for controller in self._controllers
        ]
        logger.info("encryption_controllers_started controllers=%s", [c.name for c in self._controllers])

    async def stop(self) -> None:
        self._stopping = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("encryption_controllers_stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()
