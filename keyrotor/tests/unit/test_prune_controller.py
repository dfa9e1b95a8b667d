from __future__ import annotations

from datetime import datetime, timezone

import pytest

from keyrotor.domain.state import MODE_AESCBC, GroupResource, KeyState, ResourcePolicy
from keyrotor.persistence.repos.encryption_config import apply_target_configuration, record_observed_configuration
from keyrotor.persistence.repos.keys import create_key, list_keys, record_key_migration
from keyrotor.persistence.repos.replicas import record_replica_status, remove_replica
from keyrotor.services.encryption.prune import PruneController, prunable_key_ids
from keyrotor.tests.utils.replicas import COMPONENT, FakeClock, aescbc, uniform_config


NOW = datetime(2026, 1, 5, tzinfo=timezone.utc)
SECRETS = GroupResource("", "secrets")
CONFIGMAPS = GroupResource("", "configmaps")
POLICY = ResourcePolicy(resources=(SECRETS,))


def _key(key_id: int, *migrated: GroupResource) -> KeyState:
    return KeyState(
        key_id=key_id,
        mode=MODE_AESCBC,
        secret=b"k" * 32,
        created_at=NOW,
        migrated_at=NOW if migrated else None,
        migrated_resources=frozenset(migrated),
    )


def test_prunable_keys_beyond_retention() -> None:
    keys = [_key(key_id, SECRETS) for key_id in range(1, 13)]
    assert prunable_key_ids(keys, retention=10) == frozenset({1, 2})
    assert prunable_key_ids(keys[:10], retention=10) == frozenset()


def test_key_needed_for_any_resource_is_kept() -> None:
    keys = [_key(1, SECRETS, CONFIGMAPS)] + [_key(key_id, SECRETS) for key_id in range(2, 5)]
    # Excess for secrets but still the newest key migrated for configmaps.
    assert prunable_key_ids(keys, retention=2) == frozenset({2})


def test_unmigrated_keys_are_never_prunable() -> None:
    keys = [_key(1)] + [_key(key_id, SECRETS) for key_id in range(2, 5)]
    assert prunable_key_ids(keys, retention=1) == frozenset({2, 3})


async def _migrated_keys(session_factory, clock: FakeClock, count: int) -> None:
    async with session_factory() as session:
        for _ in range(count):
            key = await create_key(session, component=COMPONENT, mode=MODE_AESCBC, reason="rotation-interval-elapsed", now=clock())
            await record_key_migration(session, component=COMPONENT, key=key, resource=SECRETS, now=clock())
        await apply_target_configuration(
            session,
            component=COMPONENT,
            configuration=uniform_config((SECRETS,), aescbc(count)),
            expected_version=0,
            now=clock(),
        )


@pytest.mark.asyncio
async def test_prune_deletes_oldest_keys_beyond_retention(session_factory) -> None:
    clock = FakeClock()
    await _migrated_keys(session_factory, clock, 12)
    controller = PruneController(session_factory, policy=POLICY, clock=clock)

    result = await controller.sync()
    assert result.applied
    async with session_factory() as session:
        remaining = [key.key_id for key in await list_keys(session, component=COMPONENT)]
    assert remaining == list(range(3, 13))
    assert (await controller.sync()).status == "noop"


@pytest.mark.asyncio
async def test_prune_keeps_everything_within_retention(session_factory) -> None:
    clock = FakeClock()
    await _migrated_keys(session_factory, clock, 3)
    assert (await PruneController(session_factory, policy=POLICY, clock=clock).sync()).status == "noop"
    async with session_factory() as session:
        assert len(await list_keys(session, component=COMPONENT)) == 3


@pytest.mark.asyncio
async def test_referenced_key_stays_marked(session_factory) -> None:
    clock = FakeClock()
    await _migrated_keys(session_factory, clock, 12)
    async with session_factory() as session:
        # A replica revision that still reads with key 1.
        await record_observed_configuration(
            session,
            component=COMPONENT,
            revision="rev-old",
            configuration=uniform_config((SECRETS,), aescbc(11), [aescbc(1)]),
            now=clock(),
        )
        await record_replica_status(
            session, component=COMPONENT, replica_id="replica-a", running=True, revision="rev-old", now=clock()
        )
    controller = PruneController(session_factory, policy=POLICY, clock=clock)

    result = await controller.sync()
    assert result.applied
    async with session_factory() as session:
        keys = await list_keys(session, component=COMPONENT)
    assert [key.key_id for key in keys] == list(range(1, 2)) + list(range(3, 13))
    assert keys[0].marked_for_deletion

    # Still referenced on the next pass: nothing is deleted.
    result = await controller.sync()
    assert result.status == "deferred"

    # Once no replica reports that revision, its configuration no longer pins key 1.
    async with session_factory() as session:
        await remove_replica(session, component=COMPONENT, replica_id="replica-a")
    assert (await controller.sync()).applied
    async with session_factory() as session:
        assert [key.key_id for key in await list_keys(session, component=COMPONENT)] == list(range(3, 13))
