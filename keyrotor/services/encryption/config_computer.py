"""Desired encryption configuration from a snapshot of keys and configurations.

``compute`` is pure: it never touches shared state and returns an equal result
for equal inputs. Each call moves the configuration at most one step forward:

1. add policy resources that are not encrypted yet (identity write key, shared reads)
2. widen every resource's read keys to the union of live keys and current providers
3. promote the newest key every replica can already read to the write key
4. drop read keys that a fully migrated write key made obsolete

Read keys are only ever removed by step 4, and only once the shared write key
has been migrated for every encrypted resource. A removed key never comes back,
not even when new resources join the encrypted set.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from keyrotor.core.errors import UnbackedKeyError
from keyrotor.domain.state import (
    IDENTITY_FALLBACK,
    GroupResource,
    GroupResourceState,
    KeyReference,
    KeyState,
    ResourcePolicy,
    TargetConfiguration,
)


RULE_ADD_RESOURCES = "add-resources"
RULE_SYNC_READ_KEYS = "sync-read-keys"
RULE_PROMOTE_WRITE_KEY = "promote-write-key"
RULE_DROP_RETIRED_KEYS = "drop-retired-keys"


@dataclass(frozen=True)
class ConfigTransition:
    configuration: TargetConfiguration
    # None when the previous configuration is already the desired one.
    rule: str | None = None

    @property
    def changed(self) -> bool:
        return self.rule is not None


def encrypted_resources(policy: Iterable[GroupResource], previous: TargetConfiguration) -> frozenset[GroupResource]:
    # Resources never leave the encrypted set once configured.
    return frozenset(previous) | frozenset(policy)


def shared_write_key(previous: TargetConfiguration) -> KeyReference | None:
    writes = previous.write_keys()
    if len(writes) != 1:
        return None
    (write,) = writes
    return None if write.is_identity_fallback else write


def shared_read_set(previous: TargetConfiguration) -> frozenset[KeyReference]:
    return frozenset(ref for _, state in previous.resources for ref in state.providers)


def retired_key_ids(
    keys: Sequence[KeyState],
    policy: Iterable[GroupResource],
    previous: TargetConfiguration,
) -> frozenset[int]:
    # Keys older than the newest key that finished migrating every encrypted resource.
    resources = encrypted_resources(policy, previous)
    migrated = [key.key_id for key in keys if key.is_migrated_for(resources)]
    if not migrated:
        return frozenset()
    newest = max(migrated)
    return frozenset(key.key_id for key in keys if key.key_id < newest)


def dropped_key_ids(keys: Sequence[KeyState], previous: TargetConfiguration) -> frozenset[int]:
    # Keys older than the newest configured key that no resource reads any more were dropped for good.
    referenced = previous.referenced_key_ids()
    if not referenced:
        return frozenset()
    newest = max(referenced)
    return frozenset(key.key_id for key in keys if key.key_id < newest and key.key_id not in referenced)


def live_keys(
    keys: Sequence[KeyState],
    policy: Iterable[GroupResource],
    previous: TargetConfiguration,
) -> list[KeyState]:
    excluded = retired_key_ids(keys, policy, previous) | dropped_key_ids(keys, previous)
    return [key for key in keys if key.key_id not in excluded and not key.marked_for_deletion]


def _check_backed(keys: Sequence[KeyState], previous: TargetConfiguration) -> None:
    known = {key.key_id for key in keys}
    missing = [key_id for key_id in previous.referenced_key_ids() if key_id not in known]
    if missing:
        raise UnbackedKeyError(missing)


def _with_reads(
    resources: Iterable[GroupResource],
    previous: TargetConfiguration,
    readable: frozenset[KeyReference],
) -> TargetConfiguration:
    mapping: dict[GroupResource, GroupResourceState] = {}
    for resource in resources:
        state = previous.get(resource)
        write = state.write_key if state is not None else IDENTITY_FALLBACK
        mapping[resource] = GroupResourceState.build(write, readable | {write})
    return TargetConfiguration.from_mapping(mapping)


def _promotion_candidate(live: Sequence[KeyState], resources: frozenset[GroupResource], observed: TargetConfiguration) -> KeyState | None:
    # Newest key that the converged replicas can already decrypt for every resource.
    if any(resource not in observed for resource in resources):
        return None
    for key in sorted(live, key=lambda item: item.key_id, reverse=True):
        reference = key.reference
        if all(reference in observed.get(resource).provider_set for resource in resources):
            return key
    return None


def compute_transition(
    keys: Sequence[KeyState],
    policy: ResourcePolicy | Iterable[GroupResource],
    previous: TargetConfiguration,
    observed: TargetConfiguration | None = None,
) -> ConfigTransition:
    if not keys:
        return ConfigTransition(previous)
    _check_backed(keys, previous)
    policy_resources = tuple(policy)
    resources = encrypted_resources(policy_resources, previous)
    live = live_keys(keys, policy_resources, previous)
    live_refs = frozenset(key.reference for key in live)
    union = shared_read_set(previous) | live_refs

    missing = [resource for resource in policy_resources if resource not in previous]
    if missing:
        # New resources start writing in plaintext and read everything the others read.
        return ConfigTransition(
            _with_reads(resources, previous, union | {IDENTITY_FALLBACK}),
            RULE_ADD_RESOURCES,
        )

    if any(state.provider_set != union for _, state in previous.resources):
        return ConfigTransition(_with_reads(resources, previous, union), RULE_SYNC_READ_KEYS)

    if observed is not None:
        candidate = _promotion_candidate(live, resources, observed)
        ranks = [state.write_key.rank for _, state in previous.resources]
        # Never demote: the candidate must be at least as new as every current write key.
        if candidate is not None and ranks and min(ranks) < candidate.key_id and max(ranks) <= candidate.key_id:
            write = candidate.reference
            # The demoted write key stays readable until migration retires it.
            promoted = {
                resource: GroupResourceState.build(write, state.providers)
                for resource, state in previous.resources
            }
            return ConfigTransition(TargetConfiguration.from_mapping(promoted), RULE_PROMOTE_WRITE_KEY)

    retired = retired_key_ids(keys, policy_resources, previous)
    write = shared_write_key(previous)
    if write is not None and write.key_id not in retired and _write_migrated(keys, write, resources):
        pruned: dict[GroupResource, GroupResourceState] = {}
        for resource, state in previous.resources:
            reads = [
                ref
                for ref in state.read_keys
                if not ref.is_identity_fallback and ref.key_id not in retired
            ]
            pruned[resource] = GroupResourceState.build(state.write_key, reads)
        trimmed = TargetConfiguration.from_mapping(pruned)
        if trimmed != previous:
            return ConfigTransition(trimmed, RULE_DROP_RETIRED_KEYS)

    return ConfigTransition(previous)


def _write_migrated(keys: Sequence[KeyState], write: KeyReference, resources: frozenset[GroupResource]) -> bool:
    for key in keys:
        if key.key_id == write.key_id:
            return key.is_migrated_for(resources)
    return False


def compute(
    keys: Sequence[KeyState],
    policy: ResourcePolicy | Iterable[GroupResource],
    previous: TargetConfiguration,
    observed: TargetConfiguration | None = None,
) -> TargetConfiguration:
    return compute_transition(keys, policy, previous, observed).configuration
