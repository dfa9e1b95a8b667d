"""Key store: persistence and lifecycle of encryption key records.

Every mutation is a conditional write on the record's ``version`` column. A write
that matches no row raises :class:`ConflictError`; callers drop the pass and retry
on the next trigger with fresh state.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keyrotor.core.errors import ConflictError, KeyInUseError, KeyrotorError
from keyrotor.domain.models import EncryptionKeyRecord, KeySequence
from keyrotor.domain.state import (
    MODE_AESCBC,
    GroupResource,
    KeyState,
    TargetConfiguration,
    key_name,
    normalize_mode,
)
from keyrotor.persistence.db import as_utc
from keyrotor.services.crypto.sealing import KeySealer, get_key_sealer


logger = logging.getLogger(__name__)

KEY_SECRET_BYTES = 32


def _resource_names(resources: Iterable[GroupResource]) -> list[str]:
    return sorted(str(resource) for resource in resources)


def _to_state(row: EncryptionKeyRecord, sealer: KeySealer | None) -> KeyState:
    # Without a sealer only metadata is read; the secret stays unset.
    secret = sealer.unseal(row.secret_ciphertext) if sealer is not None and row.secret_ciphertext else None
    return KeyState(
        key_id=int(row.key_id),
        mode=row.mode,
        secret=secret,
        created_at=as_utc(row.created_at),
        migrated_at=as_utc(row.migrated_at),
        migrated_resources=frozenset(GroupResource.parse(name) for name in row.migrated_resources or []),
        reason=row.reason,
        deletion_requested_at=as_utc(row.deletion_requested_at),
        version=int(row.version),
    )


async def _key_rows(session: AsyncSession, *, component: str) -> list[EncryptionKeyRecord]:
    # Oldest first; populate_existing so conditional updates in this session are visible.
    rows = (
        await session.execute(
            select(EncryptionKeyRecord)
            .where(EncryptionKeyRecord.component == component)
            .order_by(EncryptionKeyRecord.key_id.asc())
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(rows)


async def list_keys(
    session: AsyncSession,
    *,
    component: str,
    sealer: KeySealer | None = None,
) -> list[KeyState]:
    sealer = sealer or get_key_sealer()
    return [_to_state(row, sealer) for row in await _key_rows(session, component=component)]


async def list_key_metadata(session: AsyncSession, *, component: str) -> list[KeyState]:
    # Lifecycle fields only; never touches the master key.
    return [_to_state(row, None) for row in await _key_rows(session, component=component)]


async def get_key(
    session: AsyncSession,
    *,
    component: str,
    key_id: int,
    sealer: KeySealer | None = None,
) -> KeyState | None:
    row = (
        await session.execute(
            select(EncryptionKeyRecord)
            .where(EncryptionKeyRecord.component == component, EncryptionKeyRecord.key_id == key_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if row is None:
        return None
    return _to_state(row, sealer or get_key_sealer())


async def _allocate_key_id(session: AsyncSession, *, component: str) -> int:
    # Advance the high-water mark conditionally; ids stay unique even after deletes.
    max_existing = await session.scalar(
        select(func.max(EncryptionKeyRecord.key_id)).where(EncryptionKeyRecord.component == component)
    )
    current = (
        await session.execute(
            select(KeySequence.last_key_id, KeySequence.version).where(KeySequence.component == component)
        )
    ).one_or_none()
    if current is None:
        next_id = int(max_existing or 0) + 1
        session.add(KeySequence(component=component, last_key_id=next_id, version=1))
        await session.flush()
        return next_id
    last_key_id, version = current
    next_id = max(int(last_key_id), int(max_existing or 0)) + 1
    result = await session.execute(
        update(KeySequence)
        .where(KeySequence.component == component, KeySequence.version == version)
        .values(last_key_id=next_id, version=version + 1)
    )
    if result.rowcount != 1:
        raise ConflictError(f"key sequence for {component} changed concurrently")
    return next_id


async def create_key(
    session: AsyncSession,
    *,
    component: str,
    mode: str,
    reason: str,
    now: datetime,
    sealer: KeySealer | None = None,
) -> KeyState:
    mode = normalize_mode(mode)
    sealer = sealer or get_key_sealer()
    secret = secrets.token_bytes(KEY_SECRET_BYTES) if mode == MODE_AESCBC else None
    try:
        key_id = await _allocate_key_id(session, component=component)
        session.add(
            EncryptionKeyRecord(
                component=component,
                key_id=key_id,
                name=key_name(component, key_id),
                mode=mode,
                secret_ciphertext=sealer.seal(secret) if secret is not None else None,
                reason=reason,
                created_at=now,
                migrated_at=None,
                migrated_resources=[],
                deletion_requested_at=None,
                version=1,
            )
        )
        await session.commit()
    except ConflictError:
        await session.rollback()
        raise
    except IntegrityError as exc:
        # Another writer allocated the same id first.
        await session.rollback()
        raise ConflictError(f"key id allocation for {component} raced with another writer") from exc
    logger.info("encryption_key_created component=%s key_id=%s mode=%s reason=%s", component, key_id, mode, reason)
    return KeyState(
        key_id=key_id,
        mode=mode,
        secret=secret,
        created_at=now,
        reason=reason,
        version=1,
    )


async def _conditional_update(session: AsyncSession, *, component: str, key: KeyState, **values: object) -> None:
    result = await session.execute(
        update(EncryptionKeyRecord)
        .where(
            EncryptionKeyRecord.component == component,
            EncryptionKeyRecord.key_id == key.key_id,
            EncryptionKeyRecord.version == key.version,
        )
        .values(version=key.version + 1, **values)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConflictError(f"key {key.key_id} changed concurrently (version {key.version})")
    await session.commit()


async def record_key_migration(
    session: AsyncSession,
    *,
    component: str,
    key: KeyState,
    resource: GroupResource,
    now: datetime,
) -> KeyState:
    # Annotate only after the migration collaborator confirmed success.
    migrated = frozenset(key.migrated_resources | {resource})
    await _conditional_update(
        session,
        component=component,
        key=key,
        migrated_at=now,
        migrated_resources=_resource_names(migrated),
    )
    logger.info(
        "encryption_key_migrated component=%s key_id=%s resource=%s", component, key.key_id, resource
    )
    return replace(key, migrated_at=now, migrated_resources=migrated, version=key.version + 1)


async def mark_key_for_deletion(
    session: AsyncSession,
    *,
    component: str,
    key: KeyState,
    now: datetime,
) -> KeyState:
    if key.marked_for_deletion:
        return key
    await _conditional_update(session, component=component, key=key, deletion_requested_at=now)
    logger.info("encryption_key_marked_for_deletion component=%s key_id=%s", component, key.key_id)
    return replace(key, deletion_requested_at=now, version=key.version + 1)


def verify_key_unreferenced(key_id: int, references: Sequence[tuple[str, TargetConfiguration]]) -> None:
    """Raise KeyInUseError when any named configuration still lists the key as a provider."""
    for where, configuration in references:
        if key_id in configuration.referenced_key_ids():
            raise KeyInUseError(key_id, where)


async def delete_key(
    session: AsyncSession,
    *,
    component: str,
    key: KeyState,
    references: Sequence[tuple[str, TargetConfiguration]],
) -> None:
    # Phase two: only marked keys that no configuration references are removed.
    if not key.marked_for_deletion:
        raise KeyrotorError(f"key {key.key_id} must be marked for deletion before removal")
    verify_key_unreferenced(key.key_id, references)
    result = await session.execute(
        delete(EncryptionKeyRecord).where(
            EncryptionKeyRecord.component == component,
            EncryptionKeyRecord.key_id == key.key_id,
            EncryptionKeyRecord.version == key.version,
            EncryptionKeyRecord.deletion_requested_at.is_not(None),
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConflictError(f"key {key.key_id} changed concurrently (version {key.version})")
    await session.commit()
    logger.info("encryption_key_deleted component=%s key_id=%s", component, key.key_id)
