from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from keyrotor.domain.models import KeyMigrationJob


MIGRATION_STATUS_RUNNING = "running"
MIGRATION_STATUS_SUCCEEDED = "succeeded"
MIGRATION_STATUS_FAILED = "failed"


async def start_migration_job(
    session: AsyncSession,
    *,
    component: str,
    key_id: int,
    resource: str,
    now: datetime,
) -> KeyMigrationJob:
    # A fresh row per attempt; earlier "running" rows from a crashed pass are left as history.
    job = KeyMigrationJob(
        component=component,
        key_id=key_id,
        resource=resource,
        status=MIGRATION_STATUS_RUNNING,
        migrated_objects=0,
        started_at=now,
    )
    session.add(job)
    await session.commit()
    await session.refresh(job)
    return job


async def finish_migration_job(
    session: AsyncSession,
    *,
    job: KeyMigrationJob,
    succeeded: bool,
    migrated_objects: int,
    error_message: str | None,
    now: datetime,
) -> KeyMigrationJob:
    job.status = MIGRATION_STATUS_SUCCEEDED if succeeded else MIGRATION_STATUS_FAILED
    job.migrated_objects = migrated_objects
    job.error_message = error_message
    job.completed_at = now
    await session.commit()
    return job


async def list_migration_jobs(
    session: AsyncSession,
    *,
    component: str,
    key_id: int | None = None,
    limit: int = 50,
) -> list[KeyMigrationJob]:
    query = select(KeyMigrationJob).where(KeyMigrationJob.component == component)
    if key_id is not None:
        query = query.where(KeyMigrationJob.key_id == key_id)
    rows = (
        await session.execute(query.order_by(KeyMigrationJob.id.desc()).limit(max(1, min(limit, 200))))
    ).scalars().all()
    return list(rows)
