"""
WorkLog Sentinel - Encryption Service

AES-256-GCM field-level encryption bound to a key version.

- Unique 12-byte nonce per operation
- Key version (and an optional context label) authenticated as AAD
- Decryption fails closed with SecurityIntegrityError; no partial plaintext
- Previous key versions stay readable for rotation
"""

import base64
import binascii
import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from sentinel.models.encrypted_data import EncryptedDataRecord
from sentinel.utils.error_handling import ConfigurationError, SecurityIntegrityError

logger = logging.getLogger(__name__)


KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16

DEFAULT_ENCRYPTED_FIELDS = (
    "api_token",
    "password",
    "secret_key",
    "private_key",
    "access_token",
    "refresh_token",
    "encryption_key",
    "sensitive_data",
    "personal_info",
    "financial_data",
)


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data.encode("ascii"))


def generate_master_key() -> str:
    """Generate a new urlsafe base64 encoded 256-bit master key."""
    return _b64encode(secrets.token_bytes(KEY_BYTES))


def decode_key(encoded: str) -> bytes:
    """Decode a configured key, raising ConfigurationError if malformed."""
    if not encoded:
        raise ConfigurationError("Master encryption key is not configured")
    try:
        key = _b64decode(encoded)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError("Master encryption key is not valid base64") from e
    if len(key) != KEY_BYTES:
        raise ConfigurationError(f"Master encryption key must be {KEY_BYTES} bytes, got {len(key)}")
    return key


@dataclass(frozen=True)
class EncryptedField:
    """Ciphertext with its nonce, tag and key version."""

    ciphertext: bytes
    nonce: bytes
    tag: bytes
    key_version: str

    def to_storage(self) -> str:
        """Compact form: {version}:{nonce}:{ciphertext}:{tag}"""
        return ":".join([
            self.key_version,
            _b64encode(self.nonce),
            _b64encode(self.ciphertext),
            _b64encode(self.tag),
        ])

    @classmethod
    def from_storage(cls, value: str) -> "EncryptedField":
        parts = value.split(":")
        if len(parts) != 4:
            raise SecurityIntegrityError("Malformed encrypted value")
        try:
            return cls(
                key_version=parts[0],
                nonce=_b64decode(parts[1]),
                ciphertext=_b64decode(parts[2]),
                tag=_b64decode(parts[3]),
            )
        except (binascii.Error, ValueError) as e:
            raise SecurityIntegrityError("Malformed encrypted value", original_error=e) from e


class EncryptionManager:
    """
    Authenticated encryption for sensitive fields.

    Every helper (tokens, passwords, config blobs, field maps) goes through
    encrypt()/decrypt().
    """

    def __init__(self, keys: Dict[str, bytes], active_version: str):
        self._keys = dict(keys)
        self.active_version = active_version

    @classmethod
    def from_settings(cls, settings) -> "EncryptionManager":
        """Build the keyring from settings. Raises ConfigurationError."""
        keys = {
            version: decode_key(encoded)
            for version, encoded in settings.previous_encryption_keys_map.items()
        }
        keys[settings.encryption_key_version] = decode_key(settings.master_encryption_key)
        return cls(keys, settings.encryption_key_version)

    @property
    def key_versions(self) -> Iterable[str]:
        return tuple(self._keys)

    def validate_config(self) -> None:
        """
        Verify the active key exists, is well formed and round-trips.

        Raises:
            ConfigurationError: If encryption cannot be used safely
        """
        key = self._keys.get(self.active_version)
        if key is None:
            raise ConfigurationError(f"No key configured for active version '{self.active_version}'")
        if len(key) != KEY_BYTES:
            raise ConfigurationError(f"Key for version '{self.active_version}' must be {KEY_BYTES} bytes")

        sample = secrets.token_hex(16)
        try:
            roundtrip = self.decrypt(self.encrypt(sample, context="self-test"), context="self-test")
        except SecurityIntegrityError as e:
            raise ConfigurationError("Encryption self-test failed") from e
        if roundtrip != sample:
            raise ConfigurationError("Encryption self-test returned wrong plaintext")
        logger.info(f"Encryption configuration validated (active key version {self.active_version})")

    # ------------------------------------------------------------------
    # Core pair
    # ------------------------------------------------------------------

    @staticmethod
    def _aad(key_version: str, context: str) -> bytes:
        return f"{key_version}|{context}".encode("utf-8")

    def encrypt(self, plaintext: str, key_version: Optional[str] = None, context: str = "") -> EncryptedField:
        version = key_version or self.active_version
        key = self._keys.get(version)
        if key is None:
            raise SecurityIntegrityError(f"Unknown key version '{version}'")

        nonce = secrets.token_bytes(NONCE_BYTES)
        encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
        encryptor.authenticate_additional_data(self._aad(version, context))
        ciphertext = encryptor.update(plaintext.encode("utf-8")) + encryptor.finalize()
        return EncryptedField(
            ciphertext=ciphertext,
            nonce=nonce,
            tag=encryptor.tag,
            key_version=version,
        )

    def decrypt(self, field: EncryptedField, context: str = "") -> str:
        key = self._keys.get(field.key_version)
        if key is None:
            raise SecurityIntegrityError("Unknown key version")
        if len(field.nonce) != NONCE_BYTES or len(field.tag) != TAG_BYTES:
            raise SecurityIntegrityError("Malformed nonce or tag")

        try:
            decryptor = Cipher(algorithms.AES(key), modes.GCM(field.nonce, field.tag)).decryptor()
            decryptor.authenticate_additional_data(self._aad(field.key_version, context))
            plaintext = decryptor.update(field.ciphertext) + decryptor.finalize()
        except (InvalidTag, ValueError) as e:
            logger.warning(f"Decryption failed for key version {field.key_version}")
            raise SecurityIntegrityError("Decryption failed", original_error=e) from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SecurityIntegrityError("Decrypted value is not valid text", original_error=e) from e

    def rotate(self, field: EncryptedField, context: str = "") -> EncryptedField:
        """Re-encrypt a value under the active key version."""
        if field.key_version == self.active_version:
            return field
        return self.encrypt(self.decrypt(field, context=context), context=context)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def encrypt_token(self, token: str) -> str:
        return self.encrypt(token, context="token").to_storage()

    def decrypt_token(self, value: str) -> str:
        return self.decrypt(EncryptedField.from_storage(value), context="token")

    def encrypt_password(self, password: str) -> str:
        """For third-party credentials that must be replayed; user passwords are hashed instead."""
        return self.encrypt(password, context="password").to_storage()

    def decrypt_password(self, value: str) -> str:
        return self.decrypt(EncryptedField.from_storage(value), context="password")

    def encrypt_config(self, config: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(config, sort_keys=True), context="config").to_storage()

    def decrypt_config(self, value: str) -> Dict[str, Any]:
        return json.loads(self.decrypt(EncryptedField.from_storage(value), context="config"))

    def encrypt_fields(self, data: Dict[str, Any], fields: Iterable[str] = DEFAULT_ENCRYPTED_FIELDS) -> Dict[str, Any]:
        """Encrypt the listed string fields of a dict, returning a copy."""
        result = dict(data)
        for name in fields:
            value = result.get(name)
            if isinstance(value, str):
                result[name] = self.encrypt(value, context=f"field:{name}").to_storage()
        return result

    def decrypt_fields(self, data: Dict[str, Any], fields: Iterable[str] = DEFAULT_ENCRYPTED_FIELDS) -> Dict[str, Any]:
        result = dict(data)
        for name in fields:
            value = result.get(name)
            if isinstance(value, str):
                result[name] = self.decrypt(EncryptedField.from_storage(value), context=f"field:{name}")
        return result


class EncryptedDataStore:
    """Persists encrypted values in the encrypted_data table."""

    def __init__(self, session_factory: async_sessionmaker, encryption: EncryptionManager):
        self._session_factory = session_factory
        self._encryption = encryption

    @staticmethod
    def _context(owner: str, field_name: str) -> str:
        return f"{owner}/{field_name}"

    async def put(self, owner: str, field_name: str, value: str) -> EncryptedDataRecord:
        field = self._encryption.encrypt(value, context=self._context(owner, field_name))
        async with self._session_factory() as db:
            result = await db.execute(
                select(EncryptedDataRecord).where(
                    EncryptedDataRecord.owner == owner,
                    EncryptedDataRecord.field_name == field_name,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = EncryptedDataRecord(owner=owner, field_name=field_name)
                db.add(record)
            record.key_version = field.key_version
            record.nonce = _b64encode(field.nonce)
            record.ciphertext = _b64encode(field.ciphertext)
            record.tag = _b64encode(field.tag)
            await db.commit()
            return record

    async def get(self, owner: str, field_name: str) -> Optional[str]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(EncryptedDataRecord).where(
                    EncryptedDataRecord.owner == owner,
                    EncryptedDataRecord.field_name == field_name,
                )
            )
            record = result.scalar_one_or_none()
        if record is None:
            return None
        try:
            field = EncryptedField(
                key_version=record.key_version,
                nonce=_b64decode(record.nonce),
                ciphertext=_b64decode(record.ciphertext),
                tag=_b64decode(record.tag),
            )
        except (binascii.Error, ValueError) as e:
            raise SecurityIntegrityError("Stored encrypted value is malformed", original_error=e) from e
        return self._encryption.decrypt(field, context=self._context(owner, field_name))

    async def delete(self, owner: str, field_name: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                delete(EncryptedDataRecord).where(
                    EncryptedDataRecord.owner == owner,
                    EncryptedDataRecord.field_name == field_name,
                )
            )
            await db.commit()
            return result.rowcount > 0
