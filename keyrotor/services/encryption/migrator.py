from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyrotor.core.config import get_settings
from keyrotor.core.errors import MigrationError
from keyrotor.domain.state import GroupResource, KeyState
from keyrotor.persistence.repos.objects import list_objects_after, replace_object_value
from keyrotor.services.crypto.sealing import KeySealer
from keyrotor.services.encryption.storage import load_provider_chain


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationResult:
    resource: GroupResource
    key_id: int
    migrated_objects: int
    skipped_objects: int = 0


class MigrationCollaborator(Protocol):
    async def migrate(self, resource: GroupResource, key: KeyState) -> MigrationResult:
        """Rewrite every stored object of ``resource`` so it is encrypted with ``key``.

        Returns only once all objects are rewritten; raises on failure.
        """
        ...


class StoredObjectMigrator:
    # Re-encrypt stored objects in batches, mirroring the key rotation job.
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        component: str,
        batch_size: int | None = None,
        sealer: KeySealer | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._component = component
        self._batch_size = max(1, batch_size or get_settings().migration_batch_size)
        self._sealer = sealer

    async def migrate(self, resource: GroupResource, key: KeyState) -> MigrationResult:
        migrated = 0
        skipped = 0
        async with self._session_factory() as session:
            chain = await load_provider_chain(
                session, component=self._component, resource=resource, sealer=self._sealer
            )
            if chain.writer.reference != key.reference:
                raise MigrationError(f"{resource} does not write with key {key.key_id}")
            after_id = 0
            while True:
                rows = await list_objects_after(
                    session,
                    component=self._component,
                    resource=str(resource),
                    after_id=after_id,
                    limit=self._batch_size,
                )
                if not rows:
                    break
                for row in rows:
                    after_id = row.id
                    current = row.value
                    if chain.is_current(current):
                        skipped += 1
                        continue
                    try:
                        plaintext, _ = chain.decode(current)
                    except ValueError as exc:
                        raise MigrationError(f"{resource} object {row.name} is unreadable") from exc
                    # A concurrent writer already stored the value with the current key.
                    if await replace_object_value(
                        session, object_id=row.id, expected=current, value=chain.encode(plaintext)
                    ):
                        migrated += 1
                    else:
                        skipped += 1
                await session.commit()
                logger.info(
                    "stored_objects_migrated_batch resource=%s key_id=%s after_id=%s migrated=%s",
                    resource,
                    key.key_id,
                    after_id,
                    migrated,
                )
        return MigrationResult(resource=resource, key_id=key.key_id, migrated_objects=migrated, skipped_objects=skipped)
