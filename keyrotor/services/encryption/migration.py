from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyrotor.core.errors import MigrationError
from keyrotor.persistence.repos.keys import record_key_migration
from keyrotor.persistence.repos.migrations import finish_migration_job, start_migration_job
from keyrotor.services.encryption.config_computer import compute, shared_write_key
from keyrotor.services.encryption.controller import EncryptionController, SyncResult
from keyrotor.services.encryption.migrator import MigrationCollaborator, StoredObjectMigrator
from keyrotor.services.encryption.snapshot import EncryptionSnapshot
from keyrotor.services.resilience import RetryPolicy, migration_retry_policy, retry_async
from keyrotor.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class MigrationController(EncryptionController):
    name = "migration"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        migrator: MigrationCollaborator | None = None,
        retry_policy: RetryPolicy | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(session_factory, **kwargs)
        self._migrator = migrator or StoredObjectMigrator(
            session_factory,
            component=self.component,
            batch_size=self._settings.migration_batch_size,
            sealer=self._sealer,
        )
        self._retry_policy = retry_policy

    async def reconcile(self, session: AsyncSession, snapshot: EncryptionSnapshot) -> SyncResult:
        report = snapshot.report
        if not report.converged_on(snapshot.target):
            return self.deferred("not converged on the target configuration")
        # Pending configuration changes come first; migrating now could race a promotion.
        desired = compute(snapshot.keys, snapshot.policy, snapshot.target, report.observed)
        if desired != snapshot.target:
            return self.deferred("target configuration is not final")
        write = shared_write_key(snapshot.target)
        if write is None:
            return self.noop("no shared write key")
        key = snapshot.key_by_id().get(write.key_id)
        if key is None:
            return self.deferred(f"write key {write.key_id} has no key record")
        pending = [
            resource
            for resource, state in snapshot.target.resources
            if state.write_key == write and resource not in key.migrated_resources
        ]
        if not pending:
            return self.noop()
        policy = self._retry_policy or migration_retry_policy()
        for resource in pending:
            job = await start_migration_job(
                session, component=snapshot.component, key_id=key.key_id, resource=str(resource), now=self._clock()
            )
            try:
                result = await retry_async(lambda: self._migrator.migrate(resource, key), policy=policy)
            except Exception as exc:  # noqa: BLE001 - the key stays unannotated and the next pass re-issues
                await finish_migration_job(
                    session, job=job, succeeded=False, migrated_objects=0, error_message=str(exc), now=self._clock()
                )
                increment_counter("encryption_migrations_failed_total")
                raise MigrationError(f"migration of {resource} to key {key.key_id} failed: {exc}") from exc
            await finish_migration_job(
                session,
                job=job,
                succeeded=True,
                migrated_objects=result.migrated_objects,
                error_message=None,
                now=self._clock(),
            )
            key = await record_key_migration(
                session, component=snapshot.component, key=key, resource=resource, now=self._clock()
            )
            increment_counter("encryption_migrations_completed_total")
        return self.applied(f"migrated {len(pending)} resources to key {key.key_id}")
