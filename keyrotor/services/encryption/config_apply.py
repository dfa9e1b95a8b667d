from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from keyrotor.persistence.repos.encryption_config import apply_target_configuration
from keyrotor.services.encryption.config_computer import compute_transition
from keyrotor.services.encryption.controller import EncryptionController, SyncResult
from keyrotor.services.encryption.snapshot import EncryptionSnapshot
from keyrotor.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


class ConfigApplyController(EncryptionController):
    name = "config_apply"

    async def reconcile(self, session: AsyncSession, snapshot: EncryptionSnapshot) -> SyncResult:
        report = snapshot.report
        set_gauge("encryption_running_replicas", report.running_replicas)
        # Move forward only from a configuration every replica has loaded.
        if not report.converged_on(snapshot.target):
            detail = "; ".join(report.blockers) or "replicas have not observed the target configuration"
            return self.deferred(f"not converged: {detail}")
        transition = compute_transition(snapshot.keys, snapshot.policy, snapshot.target, report.observed)
        if not transition.changed:
            return self.noop()
        version = await apply_target_configuration(
            session,
            component=snapshot.component,
            configuration=transition.configuration,
            expected_version=snapshot.target_version,
            now=snapshot.now,
        )
        increment_counter("encryption_config_applied_total")
        set_gauge("encryption_target_version", version)
        logger.info(
            "encryption_config_applied component=%s rule=%s version=%s",
            snapshot.component,
            transition.rule,
            version,
        )
        return self.applied(f"{transition.rule} (version {version})")
