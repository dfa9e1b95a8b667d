from __future__ import annotations

from datetime import datetime, timezone

import pytest

from keyrotor.core.errors import UnbackedKeyError
from keyrotor.domain.state import (
    EMPTY_CONFIGURATION,
    IDENTITY_FALLBACK,
    MODE_AESCBC,
    MODE_IDENTITY,
    GroupResource,
    GroupResourceState,
    KeyReference,
    KeyState,
    ResourcePolicy,
    TargetConfiguration,
)
from keyrotor.services.encryption.config_computer import (
    RULE_ADD_RESOURCES,
    RULE_DROP_RETIRED_KEYS,
    RULE_PROMOTE_WRITE_KEY,
    RULE_SYNC_READ_KEYS,
    compute,
    compute_transition,
    dropped_key_ids,
    live_keys,
)
from keyrotor.tests.utils.replicas import aescbc, uniform_config


NOW = datetime(2026, 1, 5, tzinfo=timezone.utc)
SECRETS = GroupResource("", "secrets")
CONFIGMAPS = GroupResource("", "configmaps")
ROUTES = GroupResource("route.openshift.io", "routes")
RESOURCES = (CONFIGMAPS, SECRETS)
POLICY = ResourcePolicy(resources=RESOURCES)


def _key(
    key_id: int,
    *,
    mode: str = MODE_AESCBC,
    migrated: tuple[GroupResource, ...] = (),
    marked: bool = False,
) -> KeyState:
    return KeyState(
        key_id=key_id,
        mode=mode,
        secret=bytes([key_id]) * 32 if mode == MODE_AESCBC else None,
        created_at=NOW,
        migrated_at=NOW if migrated else None,
        migrated_resources=frozenset(migrated),
        deletion_requested_at=NOW if marked else None,
    )


def _settle(keys: list[KeyState], policy: ResourcePolicy, config: TargetConfiguration) -> TargetConfiguration:
    # Apply compute as converged replicas would, until nothing changes.
    for _ in range(20):
        desired = compute(keys, policy, config, config)
        if desired == config:
            return config
        config = desired
    raise AssertionError("compute did not reach a fixed point")


def test_no_keys_returns_previous_unchanged() -> None:
    assert compute([], POLICY, EMPTY_CONFIGURATION) == EMPTY_CONFIGURATION
    previous = uniform_config(RESOURCES, aescbc(3))
    assert compute([], POLICY, previous, previous) == previous


def test_first_key_adds_resources_with_identity_write() -> None:
    transition = compute_transition([_key(1)], POLICY, EMPTY_CONFIGURATION)
    assert transition.rule == RULE_ADD_RESOURCES
    assert transition.configuration == uniform_config(RESOURCES, IDENTITY_FALLBACK, [aescbc(1)])


def test_promotion_waits_for_observed_configuration() -> None:
    previous = uniform_config(RESOURCES, IDENTITY_FALLBACK, [aescbc(1)])
    assert compute([_key(1)], POLICY, previous) == previous
    # Replicas still on the empty configuration cannot read key 1 yet.
    stale_observed = uniform_config(RESOURCES, IDENTITY_FALLBACK)
    assert compute([_key(1)], POLICY, previous, stale_observed) == previous

    transition = compute_transition([_key(1)], POLICY, previous, previous)
    assert transition.rule == RULE_PROMOTE_WRITE_KEY
    assert transition.configuration == uniform_config(RESOURCES, aescbc(1), [IDENTITY_FALLBACK])


def test_identity_fallback_dropped_after_migration() -> None:
    previous = uniform_config(RESOURCES, aescbc(1), [IDENTITY_FALLBACK])
    # Not migrated yet: the fallback must stay readable.
    assert compute([_key(1, migrated=(SECRETS,))], POLICY, previous, previous) == previous

    transition = compute_transition([_key(1, migrated=RESOURCES)], POLICY, previous, previous)
    assert transition.rule == RULE_DROP_RETIRED_KEYS
    assert transition.configuration == uniform_config(RESOURCES, aescbc(1))


def test_rotation_keeps_old_key_readable_until_new_key_migrated() -> None:
    keys = [_key(1, migrated=RESOURCES), _key(2)]
    previous = uniform_config(RESOURCES, aescbc(1))

    step = compute_transition(keys, POLICY, previous, previous)
    assert step.rule == RULE_SYNC_READ_KEYS
    assert step.configuration == uniform_config(RESOURCES, aescbc(1), [aescbc(2)])

    step = compute_transition(keys, POLICY, step.configuration, step.configuration)
    assert step.rule == RULE_PROMOTE_WRITE_KEY
    assert step.configuration == uniform_config(RESOURCES, aescbc(2), [aescbc(1)])

    # Partially migrated: key 1 is still needed.
    partial = [_key(1, migrated=RESOURCES), _key(2, migrated=(SECRETS,))]
    assert compute(partial, POLICY, step.configuration, step.configuration) == step.configuration

    migrated = [_key(1, migrated=RESOURCES), _key(2, migrated=RESOURCES)]
    assert compute(migrated, POLICY, step.configuration, step.configuration) == uniform_config(
        RESOURCES, aescbc(2)
    )


def test_sync_read_keys_never_removes_a_provider() -> None:
    previous = TargetConfiguration.from_mapping(
        {
            SECRETS: GroupResourceState.build(aescbc(2), [aescbc(1)]),
            CONFIGMAPS: GroupResourceState.build(aescbc(2), []),
        }
    )
    transition = compute_transition([_key(1), _key(2)], POLICY, previous)
    assert transition.rule == RULE_SYNC_READ_KEYS
    for resource, state in previous.resources:
        assert state.provider_set <= transition.configuration.get(resource).provider_set
    assert transition.configuration.get(SECRETS).provider_set == transition.configuration.get(CONFIGMAPS).provider_set


def test_new_resource_joins_with_identity_write_and_shared_reads() -> None:
    keys = [_key(1, migrated=RESOURCES)]
    policy = ResourcePolicy(resources=(CONFIGMAPS, ROUTES, SECRETS))
    previous = uniform_config(RESOURCES, aescbc(1))

    added = compute_transition(keys, policy, previous, previous)
    assert added.rule == RULE_ADD_RESOURCES
    routes = added.configuration.get(ROUTES)
    assert routes.write_key == IDENTITY_FALLBACK
    assert routes.read_keys == (aescbc(1),)
    assert added.configuration.get(SECRETS).read_keys == (IDENTITY_FALLBACK,)
    provider_sets = {state.provider_set for _, state in added.configuration.resources}
    assert len(provider_sets) == 1

    promoted = compute(keys, policy, added.configuration, added.configuration)
    assert promoted == uniform_config((CONFIGMAPS, ROUTES, SECRETS), aescbc(1), [IDENTITY_FALLBACK])


def test_single_write_key_once_settled() -> None:
    keys = [_key(1, migrated=RESOURCES), _key(2), _key(3)]
    settled = _settle(keys, POLICY, uniform_config(RESOURCES, aescbc(1)))
    assert settled.write_keys() == frozenset({aescbc(3)})
    assert compute(keys, POLICY, settled, settled) == settled


def test_compute_is_deterministic() -> None:
    keys = [_key(1, migrated=RESOURCES), _key(2)]
    previous = uniform_config(RESOURCES, aescbc(1))
    assert compute(keys, POLICY, previous, previous) == compute(list(keys), POLICY, previous, previous)


def test_unbacked_read_key_raises() -> None:
    previous = uniform_config(RESOURCES, aescbc(1), [aescbc(3)])
    with pytest.raises(UnbackedKeyError) as excinfo:
        compute([_key(1)], POLICY, previous)
    assert excinfo.value.key_ids == [3]


def test_marked_and_retired_keys_are_not_added_back() -> None:
    keys = [_key(1, migrated=RESOURCES), _key(2, migrated=RESOURCES), _key(3)]
    previous = uniform_config(RESOURCES, aescbc(2))
    assert [key.key_id for key in live_keys(keys, POLICY, previous)] == [2, 3]
    assert compute(keys, POLICY, previous) == uniform_config(RESOURCES, aescbc(2), [aescbc(3)])

    marked = [_key(1, marked=True), _key(2, migrated=RESOURCES)]
    assert compute(marked, POLICY, previous, previous) == previous


def test_identity_mode_key_replaces_encryption() -> None:
    keys = [_key(1, migrated=RESOURCES), _key(2, mode=MODE_IDENTITY)]
    settled = _settle(keys, POLICY, uniform_config(RESOURCES, aescbc(1)))
    identity_key = KeyReference(key_id=2, mode=MODE_IDENTITY)
    assert settled == uniform_config(RESOURCES, identity_key, [aescbc(1)])


def test_growing_the_policy_does_not_bring_back_dropped_keys() -> None:
    keys = [_key(1, migrated=RESOURCES), _key(2, migrated=RESOURCES)]
    policy = ResourcePolicy(resources=(CONFIGMAPS, ROUTES, SECRETS))
    previous = uniform_config(RESOURCES, aescbc(2))
    assert dropped_key_ids(keys, previous) == frozenset({1})

    added = compute_transition(keys, policy, previous, previous)
    assert added.rule == RULE_ADD_RESOURCES
    assert added.configuration.get(ROUTES) == GroupResourceState.build(IDENTITY_FALLBACK, [aescbc(2)])
    assert added.configuration.get(SECRETS) == GroupResourceState.build(aescbc(2), [IDENTITY_FALLBACK])

    # The new-resources key joins, gets promoted and migrated; key 1 stays out throughout.
    grown = keys + [_key(3)]
    config = added.configuration
    for _ in range(10):
        assert 1 not in config.referenced_key_ids()
        desired = compute(grown, policy, config, config)
        if desired == config:
            break
        config = desired
    assert config == uniform_config((CONFIGMAPS, ROUTES, SECRETS), aescbc(3), [aescbc(2), IDENTITY_FALLBACK])

    all_resources = (CONFIGMAPS, ROUTES, SECRETS)
    migrated = [_key(1, migrated=RESOURCES), _key(2, migrated=RESOURCES), _key(3, migrated=all_resources)]
    assert _settle(migrated, policy, config) == uniform_config(all_resources, aescbc(3))
