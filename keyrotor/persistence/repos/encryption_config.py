from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keyrotor.core.config import get_settings
from keyrotor.core.errors import ConflictError
from keyrotor.domain.models import (
    EncryptionModeSetting,
    ObservedConfigurationRecord,
    TargetConfigurationRecord,
)
from keyrotor.domain.state import EMPTY_CONFIGURATION, TargetConfiguration, normalize_mode


logger = logging.getLogger(__name__)


async def get_target_configuration(
    session: AsyncSession,
    *,
    component: str,
) -> tuple[TargetConfiguration, int]:
    # Version 0 means no target has ever been written.
    row = (
        await session.execute(
            select(TargetConfigurationRecord.config_json, TargetConfigurationRecord.version).where(
                TargetConfigurationRecord.component == component
            )
        )
    ).one_or_none()
    if row is None:
        return EMPTY_CONFIGURATION, 0
    config_json, version = row
    return TargetConfiguration.from_dict(config_json), int(version)


async def apply_target_configuration(
    session: AsyncSession,
    *,
    component: str,
    configuration: TargetConfiguration,
    expected_version: int,
    now: datetime,
) -> int:
    # Conditional write against the version the caller computed from.
    payload = configuration.to_dict()
    if expected_version == 0:
        session.add(
            TargetConfigurationRecord(component=component, config_json=payload, version=1, updated_at=now)
        )
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise ConflictError(f"target configuration for {component} was created concurrently") from exc
        return 1
    result = await session.execute(
        update(TargetConfigurationRecord)
        .where(
            TargetConfigurationRecord.component == component,
            TargetConfigurationRecord.version == expected_version,
        )
        .values(config_json=payload, version=expected_version + 1, updated_at=now)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConflictError(f"target configuration for {component} changed since version {expected_version}")
    await session.commit()
    return expected_version + 1


async def list_observed_configurations(
    session: AsyncSession,
    *,
    component: str,
) -> dict[str, TargetConfiguration]:
    rows = (
        await session.execute(
            select(ObservedConfigurationRecord.revision, ObservedConfigurationRecord.config_json).where(
                ObservedConfigurationRecord.component == component
            )
        )
    ).all()
    return {revision: TargetConfiguration.from_dict(config_json) for revision, config_json in rows}


async def record_observed_configuration(
    session: AsyncSession,
    *,
    component: str,
    revision: str,
    configuration: TargetConfiguration,
    now: datetime,
) -> None:
    # Replicas publish the configuration their revision actually loaded.
    row = await session.get(ObservedConfigurationRecord, (component, revision))
    if row is None:
        session.add(
            ObservedConfigurationRecord(
                component=component,
                revision=revision,
                config_json=configuration.to_dict(),
                observed_at=now,
            )
        )
    else:
        row.config_json = configuration.to_dict()
        row.observed_at = now
    await session.commit()


async def get_encryption_mode(session: AsyncSession, *, component: str) -> str:
    row = await session.get(EncryptionModeSetting, component)
    if row is None:
        return normalize_mode(get_settings().encryption_default_mode)
    return normalize_mode(row.mode)


async def set_encryption_mode(session: AsyncSession, *, component: str, mode: str | None, now: datetime) -> str:
    normalized = normalize_mode(mode)
    row = await session.get(EncryptionModeSetting, component)
    if row is None:
        session.add(EncryptionModeSetting(component=component, mode=normalized, updated_at=now))
    else:
        row.mode = normalized
        row.updated_at = now
    await session.commit()
    logger.info("encryption_mode_set component=%s mode=%s", component, normalized)
    return normalized
