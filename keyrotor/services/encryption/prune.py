from __future__ import annotations

import logging
from collections import defaultdict
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from keyrotor.core.errors import KeyInUseError
from keyrotor.domain.state import GroupResource, KeyState, TargetConfiguration
from keyrotor.persistence.repos.encryption_config import get_target_configuration, list_observed_configurations
from keyrotor.persistence.repos.keys import delete_key, mark_key_for_deletion
from keyrotor.persistence.repos.replicas import list_replicas
from keyrotor.services.encryption.controller import EncryptionController, SyncResult
from keyrotor.services.encryption.snapshot import EncryptionSnapshot
from keyrotor.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def prunable_key_ids(keys: Sequence[KeyState], *, retention: int) -> frozenset[int]:
    # A key is excess once `retention` newer keys were migrated for every resource it was migrated for.
    retention = max(1, int(retention))
    ranked: dict[GroupResource, list[int]] = defaultdict(list)
    for key in keys:
        if key.migrated_at is None:
            continue
        for resource in key.migrated_resources:
            ranked[resource].append(key.key_id)
    excess: dict[GroupResource, set[int]] = {
        resource: set(sorted(ids, reverse=True)[retention:]) for resource, ids in ranked.items()
    }
    return frozenset(
        key.key_id
        for key in keys
        if key.migrated_at is not None
        and key.migrated_resources
        and all(key.key_id in excess[resource] for resource in key.migrated_resources)
    )


async def _live_references(session: AsyncSession, *, component: str) -> list[tuple[str, TargetConfiguration]]:
    # Observed configurations count while any replica row, running or not, still reports their revision.
    target, _ = await get_target_configuration(session, component=component)
    observed = await list_observed_configurations(session, component=component)
    revisions = {replica.revision for replica in await list_replicas(session, component=component)}
    references = [("target configuration", target)]
    references.extend(
        (f"observed configuration of revision {revision}", configuration)
        for revision, configuration in sorted(observed.items())
        if revision in revisions
    )
    return references


class PruneController(EncryptionController):
    name = "prune"

    async def reconcile(self, session: AsyncSession, snapshot: EncryptionSnapshot) -> SyncResult:
        prunable = prunable_key_ids(snapshot.keys, retention=self._settings.key_retention_count)
        marked: list[KeyState] = []
        for key in snapshot.keys:
            if key.key_id in prunable and not key.marked_for_deletion:
                key = await mark_key_for_deletion(session, component=snapshot.component, key=key, now=snapshot.now)
                increment_counter("encryption_keys_marked_total")
            if key.marked_for_deletion:
                marked.append(key)
        if not marked:
            return self.noop()
        # Re-read the configurations after marking; a marked key is never added back.
        references = await _live_references(session, component=snapshot.component)
        deleted: list[int] = []
        for key in marked:
            try:
                await delete_key(session, component=snapshot.component, key=key, references=references)
            except KeyInUseError as exc:
                increment_counter("encryption_key_delete_refused_total")
                logger.info("encryption_key_delete_refused key_id=%s where=%s", exc.key_id, exc.where)
                continue
            deleted.append(key.key_id)
            increment_counter("encryption_keys_deleted_total")
        if not deleted:
            return self.deferred(f"marked keys still referenced: {[key.key_id for key in marked]}")
        return self.applied(f"deleted keys {deleted}")
