from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keyrotor.domain.models import StoredObject


async def get_object(session: AsyncSession, *, component: str, resource: str, name: str) -> StoredObject | None:
    return (
        await session.execute(
            select(StoredObject).where(
                StoredObject.component == component,
                StoredObject.resource == resource,
                StoredObject.name == name,
            )
        )
    ).scalar_one_or_none()


async def put_object(session: AsyncSession, *, component: str, resource: str, name: str, value: bytes) -> StoredObject:
    row = await get_object(session, component=component, resource=resource, name=name)
    if row is None:
        row = StoredObject(component=component, resource=resource, name=name, value=value)
        session.add(row)
    else:
        row.value = value
    await session.commit()
    return row


async def list_objects_after(
    session: AsyncSession,
    *,
    component: str,
    resource: str,
    after_id: int,
    limit: int,
) -> list[StoredObject]:
    # Keyset pagination keeps batches stable while rows are rewritten.
    rows = (
        await session.execute(
            select(StoredObject)
            .where(
                StoredObject.component == component,
                StoredObject.resource == resource,
                StoredObject.id > after_id,
            )
            .order_by(StoredObject.id.asc())
            .limit(max(1, limit))
        )
    ).scalars().all()
    return list(rows)


async def replace_object_value(session: AsyncSession, *, object_id: int, expected: bytes, value: bytes) -> bool:
    # Compare-and-swap on the stored bytes so a concurrent write is never clobbered.
    result = await session.execute(
        update(StoredObject)
        .where(StoredObject.id == object_id, StoredObject.value == expected)
        .values(value=value)
    )
    return result.rowcount == 1
