from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Iterator, Mapping

from keyrotor.core.errors import UnknownModeError


MODE_IDENTITY = "identity"
MODE_AESCBC = "aescbc"
SUPPORTED_MODES = (MODE_IDENTITY, MODE_AESCBC)


def normalize_mode(value: str | None) -> str:
    # An unset user-facing mode means no encryption.
    if value is None or not value.strip():
        return MODE_IDENTITY
    normalized = value.strip().lower()
    if normalized not in SUPPORTED_MODES:
        raise UnknownModeError(f"unsupported encryption mode: {value}")
    return normalized


def key_name(component: str, key_id: int) -> str:
    # Stable per-component naming for key records.
    return f"encryption-key-{component}-{key_id}"


@dataclass(frozen=True, order=True)
class GroupResource:
    group: str
    resource: str

    @classmethod
    def parse(cls, value: str) -> GroupResource:
        # "secrets" lives in the core group; "routes.route.openshift.io" splits on the first dot.
        resource, _, group = value.strip().partition(".")
        if not resource:
            raise ValueError(f"invalid resource identifier: {value!r}")
        return cls(group=group, resource=resource)

    def __str__(self) -> str:
        return f"{self.resource}.{self.group}" if self.group else self.resource


@dataclass(frozen=True)
class KeyReference:
    """One provider entry of a configuration: a key id plus its encryption function.

    The identity fallback has no key id; it reads data that was never encrypted.
    """

    key_id: int | None
    mode: str

    @property
    def is_identity_fallback(self) -> bool:
        return self.key_id is None

    @property
    def rank(self) -> int:
        # The fallback orders below every real key.
        return -1 if self.key_id is None else self.key_id

    def to_dict(self) -> dict[str, Any]:
        return {"key_id": self.key_id, "mode": self.mode}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> KeyReference:
        raw_id = payload.get("key_id")
        return cls(key_id=int(raw_id) if raw_id is not None else None, mode=normalize_mode(payload.get("mode")))

    def __str__(self) -> str:
        return self.mode if self.key_id is None else f"{self.mode}:{self.key_id}"


IDENTITY_FALLBACK = KeyReference(key_id=None, mode=MODE_IDENTITY)


def sort_references(refs: Iterable[KeyReference]) -> tuple[KeyReference, ...]:
    # Newest key first, identity fallback last.
    return tuple(sorted(set(refs), key=lambda ref: ref.rank, reverse=True))


@dataclass(frozen=True)
class KeyState:
    key_id: int
    mode: str
    secret: bytes | None = field(repr=False)
    created_at: datetime
    migrated_at: datetime | None = None
    migrated_resources: frozenset[GroupResource] = frozenset()
    reason: str | None = None
    deletion_requested_at: datetime | None = None
    # Optimistic concurrency token; every conditional write bumps it.
    version: int = 1

    @property
    def reference(self) -> KeyReference:
        return KeyReference(key_id=self.key_id, mode=self.mode)

    @property
    def marked_for_deletion(self) -> bool:
        return self.deletion_requested_at is not None

    def is_migrated_for(self, resources: Iterable[GroupResource]) -> bool:
        if self.migrated_at is None:
            return False
        return all(resource in self.migrated_resources for resource in resources)


@dataclass(frozen=True)
class GroupResourceState:
    write_key: KeyReference
    # Additional read keys; never repeats the write key.
    read_keys: tuple[KeyReference, ...] = ()

    @classmethod
    def build(cls, write_key: KeyReference, readable: Iterable[KeyReference]) -> GroupResourceState:
        reads = tuple(ref for ref in sort_references(readable) if ref != write_key)
        return cls(write_key=write_key, read_keys=reads)

    @property
    def providers(self) -> tuple[KeyReference, ...]:
        return (self.write_key, *self.read_keys)

    @property
    def provider_set(self) -> frozenset[KeyReference]:
        return frozenset(self.providers)


@dataclass(frozen=True)
class TargetConfiguration:
    """Per-resource provider lists, kept sorted so equal configurations compare equal."""

    resources: tuple[tuple[GroupResource, GroupResourceState], ...] = ()

    @classmethod
    def from_mapping(cls, mapping: Mapping[GroupResource, GroupResourceState]) -> TargetConfiguration:
        return cls(resources=tuple(sorted(mapping.items(), key=lambda item: item[0])))

    def as_mapping(self) -> dict[GroupResource, GroupResourceState]:
        return dict(self.resources)

    def get(self, resource: GroupResource) -> GroupResourceState | None:
        for candidate, state in self.resources:
            if candidate == resource:
                return state
        return None

    def __contains__(self, resource: object) -> bool:
        return any(candidate == resource for candidate, _ in self.resources)

    def __iter__(self) -> Iterator[GroupResource]:
        return iter(resource for resource, _ in self.resources)

    def __len__(self) -> int:
        return len(self.resources)

    @property
    def is_empty(self) -> bool:
        return not self.resources

    def write_keys(self) -> frozenset[KeyReference]:
        return frozenset(state.write_key for _, state in self.resources)

    def referenced_key_ids(self) -> frozenset[int]:
        return frozenset(
            ref.key_id
            for _, state in self.resources
            for ref in state.providers
            if ref.key_id is not None
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "resources": [
                {
                    "group": resource.group,
                    "resource": resource.resource,
                    "write": state.write_key.to_dict(),
                    "read": [ref.to_dict() for ref in state.read_keys],
                }
                for resource, state in self.resources
            ]
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> TargetConfiguration:
        if not payload:
            return EMPTY_CONFIGURATION
        mapping: dict[GroupResource, GroupResourceState] = {}
        for item in payload.get("resources") or []:
            resource = GroupResource(group=str(item.get("group") or ""), resource=str(item["resource"]))
            mapping[resource] = GroupResourceState(
                write_key=KeyReference.from_dict(item["write"]),
                read_keys=tuple(KeyReference.from_dict(ref) for ref in item.get("read") or []),
            )
        return cls.from_mapping(mapping)


EMPTY_CONFIGURATION = TargetConfiguration()


@dataclass(frozen=True)
class ReplicaState:
    replica_id: str
    running: bool
    revision: str | None
    last_heartbeat_at: datetime | None = None


@dataclass(frozen=True)
class ResourcePolicy:
    resources: tuple[GroupResource, ...]

    @classmethod
    def from_names(cls, names: Iterable[str]) -> ResourcePolicy:
        return cls(resources=tuple(sorted({GroupResource.parse(name) for name in names})))

    def __iter__(self) -> Iterator[GroupResource]:
        return iter(self.resources)
