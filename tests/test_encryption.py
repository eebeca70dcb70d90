"""
Tests for field encryption, key versions and the encrypted data store.
"""

import dataclasses

import pytest
from sqlalchemy import select

from sentinel.config import Settings
from sentinel.dependencies import build_services
from sentinel.models.encrypted_data import EncryptedDataRecord
from sentinel.services.encryption_service import (
    EncryptedDataStore,
    EncryptedField,
    EncryptionManager,
    decode_key,
    generate_master_key,
)
from sentinel.utils.error_handling import ConfigurationError, SecurityIntegrityError


def _flip_first_byte(data: bytes) -> bytes:
    return bytes([data[0] ^ 0x01]) + data[1:]


class TestEncryptDecrypt:
    """Authenticated encryption round trips and tamper detection"""

    def test_round_trip(self, encryption):
        field = encryption.encrypt("payroll export token")
        assert field.key_version == "v1"
        assert encryption.decrypt(field) == "payroll export token"

    def test_nonces_are_unique(self, encryption):
        first = encryption.encrypt("same")
        second = encryption.encrypt("same")
        assert first.nonce != second.nonce
        assert first.ciphertext != second.ciphertext

    def test_tampered_ciphertext_is_rejected(self, encryption):
        field = encryption.encrypt("value")
        tampered = dataclasses.replace(field, ciphertext=_flip_first_byte(field.ciphertext))
        with pytest.raises(SecurityIntegrityError):
            encryption.decrypt(tampered)

    def test_tampered_tag_is_rejected(self, encryption):
        field = encryption.encrypt("value")
        tampered = dataclasses.replace(field, tag=_flip_first_byte(field.tag))
        with pytest.raises(SecurityIntegrityError):
            encryption.decrypt(tampered)

    def test_context_is_bound(self, encryption):
        field = encryption.encrypt("value", context="owner-a/token")
        with pytest.raises(SecurityIntegrityError):
            encryption.decrypt(field, context="owner-b/token")

    def test_unknown_key_version_is_rejected(self, encryption):
        field = dataclasses.replace(encryption.encrypt("value"), key_version="v9")
        with pytest.raises(SecurityIntegrityError):
            encryption.decrypt(field)

    def test_storage_format_round_trip(self, encryption):
        stored = encryption.encrypt("value").to_storage()
        assert stored.startswith("v1:")
        assert encryption.decrypt(EncryptedField.from_storage(stored)) == "value"

    def test_malformed_storage_is_rejected(self):
        with pytest.raises(SecurityIntegrityError):
            EncryptedField.from_storage("v1:only-three:parts")


class TestKeyVersions:
    """Previous key versions keep decrypting after rotation"""

    def test_rotate_to_active_version(self):
        old_key = decode_key(generate_master_key())
        old = EncryptionManager({"v1": old_key}, "v1")
        field = old.encrypt("secret", context="ctx")

        current = EncryptionManager({"v1": old_key, "v2": decode_key(generate_master_key())}, "v2")
        assert current.decrypt(field, context="ctx") == "secret"

        rotated = current.rotate(field, context="ctx")
        assert rotated.key_version == "v2"
        assert current.decrypt(rotated, context="ctx") == "secret"

    def test_rotate_is_noop_for_active_version(self, encryption):
        field = encryption.encrypt("x")
        assert encryption.rotate(field) is field


class TestHelpers:
    """Token, password, config and field helpers share the core pair"""

    def test_token_and_password_helpers(self, encryption):
        assert encryption.decrypt_token(encryption.encrypt_token("tok")) == "tok"
        assert encryption.decrypt_password(encryption.encrypt_password("pw")) == "pw"

    def test_helpers_do_not_cross_decrypt(self, encryption):
        with pytest.raises(SecurityIntegrityError):
            encryption.decrypt_password(encryption.encrypt_token("tok"))

    def test_config_round_trip(self, encryption):
        config = {"base_url": "https://tickets.example.com", "retries": 3}
        assert encryption.decrypt_config(encryption.encrypt_config(config)) == config

    def test_encrypt_fields_only_touches_listed_strings(self, encryption):
        data = {"access_token": "abc", "password": "pw", "name": "integration", "secret_key": None}
        encrypted = encryption.encrypt_fields(data)
        assert encrypted["name"] == "integration"
        assert encrypted["secret_key"] is None
        assert encrypted["access_token"] != "abc"
        assert data["access_token"] == "abc"
        assert encryption.decrypt_fields(encrypted) == data


class TestConfiguration:
    """Misconfiguration is detected at startup"""

    def test_validate_config_passes_for_good_key(self, encryption):
        encryption.validate_config()

    def test_missing_active_key(self):
        manager = EncryptionManager({"v1": decode_key(generate_master_key())}, "v2")
        with pytest.raises(ConfigurationError):
            manager.validate_config()

    def test_empty_master_key(self):
        with pytest.raises(ConfigurationError):
            decode_key("")

    def test_wrong_length_key(self):
        with pytest.raises(ConfigurationError):
            decode_key("c2hvcnQ=")

    def test_from_settings_with_previous_keys(self):
        previous = generate_master_key()
        settings = Settings(
            master_encryption_key=generate_master_key(),
            encryption_key_version="v2",
            previous_encryption_keys=f"v1:{previous}",
        )
        manager = EncryptionManager.from_settings(settings)
        assert set(manager.key_versions) == {"v1", "v2"}
        assert manager.active_version == "v2"

    def test_build_services_fails_fast_without_key(self, session_factory):
        with pytest.raises(ConfigurationError):
            build_services(session_factory, Settings(master_encryption_key=""))


class TestEncryptedDataStore:
    """Encrypted values at rest"""

    @pytest.mark.asyncio
    async def test_put_get_delete(self, session_factory, encryption):
        store = EncryptedDataStore(session_factory, encryption)
        await store.put("integration:jira", "api_token", "plain-token-value")

        assert await store.get("integration:jira", "api_token") == "plain-token-value"

        async with session_factory() as db:
            record = (await db.execute(select(EncryptedDataRecord))).scalar_one()
        assert "plain-token-value" not in record.ciphertext
        assert record.key_version == "v1"

        assert await store.delete("integration:jira", "api_token") is True
        assert await store.get("integration:jira", "api_token") is None
        assert await store.delete("integration:jira", "api_token") is False

    @pytest.mark.asyncio
    async def test_put_overwrites_existing_value(self, session_factory, encryption):
        store = EncryptedDataStore(session_factory, encryption)
        await store.put("owner", "secret_key", "first")
        await store.put("owner", "secret_key", "second")
        assert await store.get("owner", "secret_key") == "second"

    @pytest.mark.asyncio
    async def test_swapped_owner_fails_integrity_check(self, session_factory, encryption):
        store = EncryptedDataStore(session_factory, encryption)
        await store.put("owner-a", "api_token", "a-token")

        async with session_factory() as db:
            record = (await db.execute(select(EncryptedDataRecord))).scalar_one()
            record.owner = "owner-b"
            await db.commit()

        with pytest.raises(SecurityIntegrityError):
            await store.get("owner-b", "api_token")
