from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from keyrotor.core.config import get_settings
from keyrotor.core.errors import ConflictError, KeyInUseError, KeyMaterialError, KeyrotorError
from keyrotor.domain.models import EncryptionKeyRecord
from keyrotor.domain.state import MODE_AESCBC, MODE_IDENTITY, GroupResource
from keyrotor.persistence.repos.encryption_config import (
    apply_target_configuration,
    get_encryption_mode,
    get_target_configuration,
    set_encryption_mode,
)
from keyrotor.persistence.repos.keys import (
    create_key,
    delete_key,
    get_key,
    list_key_metadata,
    list_keys,
    mark_key_for_deletion,
    record_key_migration,
    verify_key_unreferenced,
)
from keyrotor.services.encryption.encryption_config import from_encryption_config
from keyrotor.services.encryption.storage import load_encryption_config
from keyrotor.tests.utils.replicas import COMPONENT, aescbc, uniform_config


NOW = datetime(2026, 1, 5, tzinfo=timezone.utc)
SECRETS = GroupResource("", "secrets")


@pytest.mark.asyncio
async def test_create_key_seals_material_and_names_record(session_factory) -> None:
    async with session_factory() as session:
        key = await create_key(session, component=COMPONENT, mode=MODE_AESCBC, reason="encryption-enabled", now=NOW)
        assert key.key_id == 1
        assert key.secret is not None and len(key.secret) == 32

        row = (await session.execute(select(EncryptionKeyRecord))).scalar_one()
        assert row.name == "encryption-key-apiserver-1"
        assert row.secret_ciphertext is not None
        assert key.secret not in row.secret_ciphertext.encode("utf-8")

        listed = await list_keys(session, component=COMPONENT)
        assert [item.secret for item in listed] == [key.secret]
        assert listed[0].reason == "encryption-enabled"


@pytest.mark.asyncio
async def test_identity_keys_carry_no_secret(session_factory) -> None:
    async with session_factory() as session:
        key = await create_key(session, component=COMPONENT, mode=MODE_IDENTITY, reason="mode-changed", now=NOW)
        assert key.secret is None
        stored = await get_key(session, component=COMPONENT, key_id=key.key_id)
        assert stored is not None and stored.secret is None


@pytest.mark.asyncio
async def test_key_ids_are_never_reused_after_delete(session_factory) -> None:
    async with session_factory() as session:
        await create_key(session, component=COMPONENT, mode=MODE_AESCBC, reason="encryption-enabled", now=NOW)
        second = await create_key(session, component=COMPONENT, mode=MODE_AESCBC, reason="rotation-interval-elapsed", now=NOW)
        marked = await mark_key_for_deletion(session, component=COMPONENT, key=second, now=NOW)
        await delete_key(session, component=COMPONENT, key=marked, references=[])
        third = await create_key(session, component=COMPONENT, mode=MODE_AESCBC, reason="rotation-interval-elapsed", now=NOW)
        assert third.key_id == 3
        assert [key.key_id for key in await list_keys(session, component=COMPONENT)] == [1, 3]


@pytest.mark.asyncio
async def test_record_migration_is_conditional_on_version(session_factory) -> None:
    async with session_factory() as session:
        key = await create_key(session, component=COMPONENT, mode=MODE_AESCBC, reason="encryption-enabled", now=NOW)
        migrated = await record_key_migration(session, component=COMPONENT, key=key, resource=SECRETS, now=NOW)
        assert migrated.migrated_resources == frozenset({SECRETS})
        assert migrated.version == key.version + 1

        with pytest.raises(ConflictError):
            await record_key_migration(session, component=COMPONENT, key=key, resource=SECRETS, now=NOW)

        stored = await get_key(session, component=COMPONENT, key_id=key.key_id)
        assert stored.migrated_at is not None
        assert stored.migrated_resources == frozenset({SECRETS})


@pytest.mark.asyncio
async def test_delete_requires_mark_and_no_references(session_factory) -> None:
    async with session_factory() as session:
        key = await create_key(session, component=COMPONENT, mode=MODE_AESCBC, reason="encryption-enabled", now=NOW)
        with pytest.raises(KeyrotorError):
            await delete_key(session, component=COMPONENT, key=key, references=[])

        marked = await mark_key_for_deletion(session, component=COMPONENT, key=key, now=NOW)
        referenced = [("target configuration", uniform_config((SECRETS,), aescbc(2), [aescbc(1)]))]
        with pytest.raises(KeyInUseError) as excinfo:
            await delete_key(session, component=COMPONENT, key=marked, references=referenced)
        assert excinfo.value.where == "target configuration"
        assert await get_key(session, component=COMPONENT, key_id=1) is not None


def test_verify_key_unreferenced_checks_every_configuration() -> None:
    verify_key_unreferenced(1, [("target configuration", uniform_config((SECRETS,), aescbc(2)))])
    with pytest.raises(KeyInUseError):
        verify_key_unreferenced(
            1,
            [
                ("target configuration", uniform_config((SECRETS,), aescbc(2))),
                ("observed configuration of revision rev-1", uniform_config((SECRETS,), aescbc(1))),
            ],
        )


@pytest.mark.asyncio
async def test_target_configuration_conditional_apply(session_factory) -> None:
    config = uniform_config((SECRETS,), aescbc(1))
    async with session_factory() as session:
        assert (await get_target_configuration(session, component=COMPONENT))[1] == 0
        version = await apply_target_configuration(
            session, component=COMPONENT, configuration=config, expected_version=0, now=NOW
        )
        assert version == 1
    # A second writer that also computed from "no target yet" loses.
    async with session_factory() as session:
        with pytest.raises(ConflictError):
            await apply_target_configuration(
                session, component=COMPONENT, configuration=config, expected_version=0, now=NOW
            )
    async with session_factory() as session:
        with pytest.raises(ConflictError):
            await apply_target_configuration(
                session, component=COMPONENT, configuration=config, expected_version=7, now=NOW
            )
        assert await get_target_configuration(session, component=COMPONENT) == (config, 1)


@pytest.mark.asyncio
async def test_encryption_mode_defaults_to_identity(session_factory) -> None:
    async with session_factory() as session:
        assert await get_encryption_mode(session, component=COMPONENT) == MODE_IDENTITY
        assert await set_encryption_mode(session, component=COMPONENT, mode=" AESCBC ", now=NOW) == MODE_AESCBC
        assert await get_encryption_mode(session, component=COMPONENT) == MODE_AESCBC
        assert await set_encryption_mode(session, component=COMPONENT, mode=None, now=NOW) == MODE_IDENTITY


@pytest.mark.asyncio
async def test_metadata_listing_survives_a_wrong_master_key(session_factory, monkeypatch) -> None:
    async with session_factory() as session:
        await create_key(session, component=COMPONENT, mode=MODE_AESCBC, reason="encryption-enabled", now=NOW)

    monkeypatch.setenv("KEYSTORE_MASTER_KEY", "22" * 32)
    get_settings.cache_clear()
    async with session_factory() as session:
        with pytest.raises(KeyMaterialError):
            await list_keys(session, component=COMPONENT)
        keys = await list_key_metadata(session, component=COMPONENT)
    assert [(key.key_id, key.reason, key.secret) for key in keys] == [(1, "encryption-enabled", None)]


@pytest.mark.asyncio
async def test_rendered_encryption_config_matches_target(session_factory) -> None:
    async with session_factory() as session:
        key = await create_key(session, component=COMPONENT, mode=MODE_AESCBC, reason="encryption-enabled", now=NOW)
        target = uniform_config((SECRETS,), aescbc(1))
        await apply_target_configuration(
            session, component=COMPONENT, configuration=target, expected_version=0, now=NOW
        )
        document = await load_encryption_config(session, component=COMPONENT)

    assert document["kind"] == "EncryptionConfiguration"
    assert document["resources"][0]["resources"] == ["secrets"]
    parsed, secrets = from_encryption_config(document)
    assert parsed == target
    assert secrets == {1: key.secret}
