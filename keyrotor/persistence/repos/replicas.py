from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from keyrotor.domain.models import ReplicaStatus
from keyrotor.domain.state import ReplicaState
from keyrotor.persistence.db import as_utc


async def list_replicas(session: AsyncSession, *, component: str) -> list[ReplicaState]:
    rows = (
        await session.execute(
            select(ReplicaStatus)
            .where(ReplicaStatus.component == component)
            .order_by(ReplicaStatus.replica_id.asc())
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return [
        ReplicaState(
            replica_id=row.replica_id,
            running=bool(row.running),
            revision=row.revision,
            last_heartbeat_at=as_utc(row.last_heartbeat_at),
        )
        for row in rows
    ]


async def record_replica_status(
    session: AsyncSession,
    *,
    component: str,
    replica_id: str,
    running: bool,
    revision: str | None,
    now: datetime,
) -> None:
    # Replicas heartbeat their readiness and the revision they serve.
    row = await session.get(ReplicaStatus, (component, replica_id))
    if row is None:
        session.add(
            ReplicaStatus(
                component=component,
                replica_id=replica_id,
                running=running,
                revision=revision,
                last_heartbeat_at=now,
            )
        )
    else:
        row.running = running
        row.revision = revision
        row.last_heartbeat_at = now
    await session.commit()


async def remove_replica(session: AsyncSession, *, component: str, replica_id: str) -> None:
    # Called on graceful shutdown so a departed replica stops counting.
    await session.execute(
        delete(ReplicaStatus).where(ReplicaStatus.component == component, ReplicaStatus.replica_id == replica_id)
    )
    await session.commit()
