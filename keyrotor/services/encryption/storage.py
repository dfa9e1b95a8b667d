from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyrotor.core.errors import KeyrotorError
from keyrotor.domain.state import (
    IDENTITY_FALLBACK,
    GroupResource,
    KeyReference,
    TargetConfiguration,
)
from keyrotor.persistence.repos.encryption_config import get_target_configuration
from keyrotor.persistence.repos.keys import list_keys
from keyrotor.persistence.repos.objects import get_object, put_object
from keyrotor.services.crypto.sealing import KeySealer
from keyrotor.services.crypto.transformers import ProviderChain
from keyrotor.services.encryption.encryption_config import to_encryption_config


logger = logging.getLogger(__name__)


async def load_provider_chain(
    session: AsyncSession,
    *,
    component: str,
    resource: GroupResource,
    configuration: TargetConfiguration | None = None,
    sealer: KeySealer | None = None,
) -> ProviderChain:
    # Resources outside the configuration are stored in plaintext.
    if configuration is None:
        configuration, _ = await get_target_configuration(session, component=component)
    state = configuration.get(resource)
    references: tuple[KeyReference, ...] = state.providers if state is not None else (IDENTITY_FALLBACK,)
    keys = {key.key_id: key for key in await list_keys(session, component=component, sealer=sealer)}
    return ProviderChain.build(references, keys)


async def load_encryption_config(
    session: AsyncSession,
    *,
    component: str,
    configuration: TargetConfiguration | None = None,
    sealer: KeySealer | None = None,
) -> dict[str, Any]:
    # The EncryptionConfiguration document handed to replicas of the next revision.
    if configuration is None:
        configuration, _ = await get_target_configuration(session, component=component)
    keys = {key.key_id: key for key in await list_keys(session, component=component, sealer=sealer)}
    return to_encryption_config(configuration, keys)


class EncryptedObjectStore:
    """Stores resource values through the provider chain a replica would use.

    Pass ``configuration`` to act as a replica that loaded a specific
    configuration; otherwise the current target configuration is used.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        component: str,
        configuration: TargetConfiguration | None = None,
        sealer: KeySealer | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._component = component
        self._configuration = configuration
        self._sealer = sealer

    async def put(self, resource: GroupResource, name: str, value: bytes) -> KeyReference:
        async with self._session_factory() as session:
            chain = await load_provider_chain(
                session,
                component=self._component,
                resource=resource,
                configuration=self._configuration,
                sealer=self._sealer,
            )
            await put_object(
                session,
                component=self._component,
                resource=str(resource),
                name=name,
                value=chain.encode(value),
            )
            return chain.writer.reference

    async def get(self, resource: GroupResource, name: str) -> bytes:
        value, _ = await self.get_with_provider(resource, name)
        return value

    async def get_with_provider(self, resource: GroupResource, name: str) -> tuple[bytes, KeyReference]:
        async with self._session_factory() as session:
            row = await get_object(session, component=self._component, resource=str(resource), name=name)
            if row is None:
                raise KeyError(f"{resource}/{name}")
            chain = await load_provider_chain(
                session,
                component=self._component,
                resource=resource,
                configuration=self._configuration,
                sealer=self._sealer,
            )
            try:
                return chain.decode(row.value)
            except ValueError as exc:
                logger.error("encrypted_object_unreadable resource=%s name=%s", resource, name)
                raise KeyrotorError(f"{resource}/{name} cannot be decrypted with the configured providers") from exc
