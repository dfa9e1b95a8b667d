from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from keyrotor.domain.state import MODE_AESCBC, MODE_IDENTITY
from keyrotor.persistence.repos.keys import create_key
from keyrotor.services.encryption.controller import EncryptionController, SyncResult
from keyrotor.services.encryption.snapshot import EncryptionSnapshot
from keyrotor.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


REASON_ENCRYPTION_ENABLED = "encryption-enabled"
REASON_MODE_CHANGED = "mode-changed"
REASON_NEW_RESOURCES = "new-resources"
REASON_ROTATION_INTERVAL_ELAPSED = "rotation-interval-elapsed"


def mint_reason(snapshot: EncryptionSnapshot, *, rotation_interval_s: int) -> str | None:
    # First matching reason wins; at most one key is minted per pass.
    newest = snapshot.newest_key
    if newest is None:
        return REASON_ENCRYPTION_ENABLED if snapshot.mode != MODE_IDENTITY else None
    if newest.mode != snapshot.mode:
        return REASON_MODE_CHANGED
    # Until the newest key writes, minting again would only pile up unused keys.
    if newest.reference not in snapshot.target.write_keys():
        return None
    if newest.migrated_at is not None and any(
        resource not in newest.migrated_resources for resource in snapshot.policy
    ):
        return REASON_NEW_RESOURCES
    if snapshot.mode == MODE_AESCBC and snapshot.now - newest.created_at >= timedelta(seconds=rotation_interval_s):
        return REASON_ROTATION_INTERVAL_ELAPSED
    return None


class KeyMintController(EncryptionController):
    name = "key_mint"

    async def reconcile(self, session: AsyncSession, snapshot: EncryptionSnapshot) -> SyncResult:
        reason = mint_reason(snapshot, rotation_interval_s=self._settings.key_rotation_interval_s)
        if reason is None:
            return self.noop()
        key = await create_key(
            session,
            component=snapshot.component,
            mode=snapshot.mode,
            reason=reason,
            now=snapshot.now,
            sealer=self._sealer,
        )
        increment_counter("encryption_keys_minted_total")
        logger.info("encryption_key_minted key_id=%s mode=%s reason=%s", key.key_id, key.mode, reason)
        return self.applied(f"minted key {key.key_id} ({reason})")
