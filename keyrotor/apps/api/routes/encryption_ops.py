from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from keyrotor.apps.api.deps import get_db
from keyrotor.apps.api.response import SuccessEnvelope, success_response
from keyrotor.core.config import get_settings
from keyrotor.domain.state import KeyState
from keyrotor.persistence.repos.encryption_config import set_encryption_mode
from keyrotor.persistence.repos.migrations import list_migration_jobs
from keyrotor.services.encryption.controller import utc_now
from keyrotor.services.encryption.policy import default_resource_policy
from keyrotor.services.encryption.snapshot import load_snapshot
from keyrotor.services.telemetry import counters_snapshot, gauges_snapshot
from keyrotor.workers.encryption_controllers import CONTROLLER_NAMES, get_controller_heartbeat


router = APIRouter(prefix="/ops/encryption", tags=["encryption"])


class EncryptionKeyResponse(BaseModel):
    # Key material never leaves the key store.
    key_id: int
    mode: str
    reason: str | None
    created_at: datetime
    migrated_at: datetime | None
    migrated_resources: list[str]
    deletion_requested_at: datetime | None


class ControllerHeartbeatResponse(BaseModel):
    name: str
    last_heartbeat_at: datetime | None
    heartbeat_age_s: float | None
    stalled: bool


class ConvergenceResponse(BaseModel):
    converged: bool
    revision: str | None
    running_replicas: int
    blockers: list[str]
    converged_on_target: bool


class EncryptionStatusResponse(BaseModel):
    component: str
    mode: str
    keys: list[EncryptionKeyResponse]
    target_version: int
    target: dict[str, Any]
    convergence: ConvergenceResponse
    controllers: list[ControllerHeartbeatResponse]
    counters: dict[str, int]
    gauges: dict[str, float]


class EncryptionModeRequest(BaseModel):
    # Unset means no encryption.
    mode: str | None = Field(default=None, max_length=32)


class EncryptionModeResponse(BaseModel):
    component: str
    mode: str


class MigrationJobResponse(BaseModel):
    id: int
    key_id: int
    resource: str
    status: str
    migrated_objects: int
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None


async def _controller_heartbeats(now: datetime) -> list[ControllerHeartbeatResponse]:
    # Missing heartbeats count as stalled; Redis being down degrades to the same answer.
    stale_after_s = get_settings().controller_heartbeat_stale_after_s
    heartbeats: list[ControllerHeartbeatResponse] = []
    for name in CONTROLLER_NAMES:
        last_seen = await get_controller_heartbeat(name)
        age_s = (now - last_seen).total_seconds() if last_seen else None
        heartbeats.append(
            ControllerHeartbeatResponse(
                name=name,
                last_heartbeat_at=last_seen,
                heartbeat_age_s=age_s,
                stalled=age_s is None or age_s > stale_after_s,
            )
        )
    return heartbeats


def _key_payload(key: KeyState) -> EncryptionKeyResponse:
    return EncryptionKeyResponse(
        key_id=key.key_id,
        mode=key.mode,
        reason=key.reason,
        created_at=key.created_at,
        migrated_at=key.migrated_at,
        migrated_resources=sorted(str(resource) for resource in key.migrated_resources),
        deletion_requested_at=key.deletion_requested_at,
    )


@router.get("", response_model=SuccessEnvelope[EncryptionStatusResponse])
async def encryption_status(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    settings = get_settings()
    now = utc_now()
    snapshot = await load_snapshot(
        db,
        component=settings.encryption_component,
        policy=default_resource_policy(),
        now=now,
        stale_after_s=settings.replica_stale_after_s,
        key_material=False,
    )
    report = snapshot.report
    payload = EncryptionStatusResponse(
        component=snapshot.component,
        mode=snapshot.mode,
        keys=[_key_payload(key) for key in snapshot.keys],
        target_version=snapshot.target_version,
        target=snapshot.target.to_dict(),
        convergence=ConvergenceResponse(
            converged=report.converged,
            revision=report.revision,
            running_replicas=report.running_replicas,
            blockers=list(report.blockers),
            converged_on_target=report.converged_on(snapshot.target),
        ),
        controllers=await _controller_heartbeats(now),
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
    )
    return success_response(request=request, data=payload)


@router.put("/mode", response_model=SuccessEnvelope[EncryptionModeResponse])
async def update_encryption_mode(
    payload: EncryptionModeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    component = get_settings().encryption_component
    mode = await set_encryption_mode(db, component=component, mode=payload.mode, now=utc_now())
    return success_response(request=request, data=EncryptionModeResponse(component=component, mode=mode))


@router.get("/migrations", response_model=SuccessEnvelope[list[MigrationJobResponse]])
async def list_migrations(
    request: Request,
    key_id: int | None = Query(default=None, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_migration_jobs(db, component=get_settings().encryption_component, key_id=key_id, limit=limit)
    data = [
        MigrationJobResponse(
            id=row.id,
            key_id=row.key_id,
            resource=row.resource,
            status=row.status,
            migrated_objects=row.migrated_objects,
            error_message=row.error_message,
            started_at=row.started_at,
            completed_at=row.completed_at,
        ).model_dump(mode="json")
        for row in rows
    ]
    return success_response(request=request, data=data)
