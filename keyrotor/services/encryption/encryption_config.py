"""Render target configurations as ``apiserver.config.k8s.io/v1`` EncryptionConfiguration.

Resources with identical provider lists share one entry. ``aescbc`` keys are
named by their key id. Identity-mode keys and the identity fallback both render
as ``identity: {}`` since neither carries key material; parsing maps every
``identity`` provider back to the fallback.
"""

from __future__ import annotations

import binascii
from typing import Any, Mapping

from keyrotor.core.errors import KeyMaterialError
from keyrotor.domain.state import (
    IDENTITY_FALLBACK,
    MODE_AESCBC,
    GroupResource,
    GroupResourceState,
    KeyReference,
    KeyState,
    TargetConfiguration,
)
from keyrotor.services.crypto.utils import b64decode_str, b64encode_bytes


API_VERSION = "apiserver.config.k8s.io/v1"
KIND = "EncryptionConfiguration"


def _render_provider(reference: KeyReference, keys: Mapping[int, KeyState]) -> dict[str, Any]:
    if reference.mode != MODE_AESCBC:
        return {"identity": {}}
    key = keys.get(reference.key_id)
    if key is None or key.secret is None:
        raise KeyMaterialError(f"no key material for aescbc key {reference.key_id}")
    return {"aescbc": {"keys": [{"name": str(reference.key_id), "secret": b64encode_bytes(key.secret)}]}}


def _render_providers(state: GroupResourceState, keys: Mapping[int, KeyState]) -> list[dict[str, Any]]:
    rendered: list[dict[str, Any]] = []
    for reference in state.providers:
        provider = _render_provider(reference, keys)
        if provider not in rendered:
            rendered.append(provider)
    return rendered


def to_encryption_config(configuration: TargetConfiguration, keys: Mapping[int, KeyState]) -> dict[str, Any]:
    groups: dict[tuple[str, ...], tuple[list[dict[str, Any]], list[str]]] = {}
    for resource, state in configuration.resources:
        providers = _render_providers(state, keys)
        signature = tuple(repr(provider) for provider in providers)
        if signature not in groups:
            groups[signature] = (providers, [])
        groups[signature][1].append(str(resource))
    return {
        "kind": KIND,
        "apiVersion": API_VERSION,
        "resources": [
            {"resources": names, "providers": providers} for providers, names in groups.values()
        ],
    }


def _parse_provider(provider: Mapping[str, Any], secrets: dict[int, bytes]) -> list[KeyReference]:
    if "identity" in provider:
        return [IDENTITY_FALLBACK]
    if "aescbc" in provider:
        references: list[KeyReference] = []
        for item in (provider["aescbc"] or {}).get("keys") or []:
            try:
                key_id = int(item["name"])
                secrets[key_id] = b64decode_str(item["secret"])
            except (KeyError, ValueError, binascii.Error) as exc:
                raise ValueError(f"malformed aescbc key entry: {item!r}") from exc
            references.append(KeyReference(key_id=key_id, mode=MODE_AESCBC))
        return references
    raise ValueError(f"unsupported provider: {sorted(provider)}")


def from_encryption_config(payload: Mapping[str, Any]) -> tuple[TargetConfiguration, dict[int, bytes]]:
    if payload.get("kind") != KIND:
        raise ValueError(f"expected kind {KIND}, got {payload.get('kind')!r}")
    secrets: dict[int, bytes] = {}
    mapping: dict[GroupResource, GroupResourceState] = {}
    for entry in payload.get("resources") or []:
        references: list[KeyReference] = []
        for provider in entry.get("providers") or []:
            references.extend(_parse_provider(provider, secrets))
        if not references:
            raise ValueError(f"resources {entry.get('resources')} list no providers")
        write, *reads = references
        for name in entry.get("resources") or []:
            mapping[GroupResource.parse(name)] = GroupResourceState.build(write, reads)
    return TargetConfiguration.from_mapping(mapping), secrets
