"""KeyVault: password-derived master key and sealed private keys.

Key hierarchy:
- A random 256-bit master key seals every private key (AES-256-GCM,
  fresh 96-bit nonce per seal).
- The master key is stored wrapped under an Argon2id key derived from the
  operator's password and a per-installation salt. The GCM tag of the
  wrapped key is the check value: a wrong password fails to unwrap and
  never reaches the per-record blobs.

Unlock state lives in ``VaultSession`` objects. The API holds one session
for the process; backup import opens a second, short-lived session for the
bundle's own master key so the two never interfere.

Blob formats:
- sealed private key: nonce (12 bytes) || ciphertext || tag (16 bytes)
- wrapped master key: same layout, different associated data
"""

import asyncio
import base64
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from certvault.config import get_settings
from certvault.core.errors import (
    Conflict,
    DecryptFailed,
    KeyRequired,
    NotFound,
    PartialRotationError,
    ValidationError,
    VaultLocked,
    WrongPassword,
)
from certvault.core.logging import get_logger, log_operation
from certvault.database import commit_or_rollback
from certvault.models import DEFAULT_LABEL, CertificateRecord, SecurityKey, SecurityKeyMethod

logger = get_logger(__name__)

MASTER_KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12
SALT_SIZE = 16
TAG_SIZE = 16

PRIVATE_KEY_AAD = b"certvault-private-key"
MASTER_KEY_AAD = b"certvault-master-key"


@dataclass
class Argon2Params:
    """Argon2id cost parameters recorded next to the wrapped key."""
    memory_kib: int = 65536  # 64 MiB
    iterations: int = 3
    parallelism: int = 4
    key_len: int = MASTER_KEY_SIZE

    @classmethod
    def from_settings(cls) -> "Argon2Params":
        settings = get_settings()
        return cls(
            memory_kib=settings.argon2_memory_kib,
            iterations=settings.argon2_iterations,
            parallelism=settings.argon2_parallelism,
        )


@dataclass
class VaultMaterial:
    """Everything needed to unlock a vault given the right password."""
    wrapped_master_key: bytes
    salt: bytes
    params: Argon2Params

    def metadata(self) -> dict:
        return {
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "argon2_memory": self.params.memory_kib,
            "argon2_iterations": self.params.iterations,
            "argon2_parallelism": self.params.parallelism,
            "key_len": self.params.key_len,
        }

    def to_dict(self) -> dict:
        data = self.metadata()
        data["wrapped_master_key"] = base64.b64encode(self.wrapped_master_key).decode("ascii")
        return data

    @classmethod
    def from_metadata(cls, wrapped_master_key: bytes, metadata: dict) -> "VaultMaterial":
        try:
            return cls(
                wrapped_master_key=wrapped_master_key,
                salt=base64.b64decode(metadata["salt"]),
                params=Argon2Params(
                    memory_kib=int(metadata["argon2_memory"]),
                    iterations=int(metadata["argon2_iterations"]),
                    parallelism=int(metadata["argon2_parallelism"]),
                    key_len=int(metadata.get("key_len", MASTER_KEY_SIZE)),
                ),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid vault metadata: {e}", field="vault")

    @classmethod
    def from_dict(cls, data: dict) -> "VaultMaterial":
        try:
            wrapped = base64.b64decode(data["wrapped_master_key"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid vault metadata: {e}", field="vault")
        return cls.from_metadata(wrapped, data)

    @classmethod
    def from_record(cls, record: SecurityKey) -> "VaultMaterial":
        return cls.from_metadata(record.wrapped_master_key, record.metadata_)


@dataclass
class KeyValidationResult:
    """Outcome of unlocking: which sealed keys could not be opened."""
    valid: bool
    failed_hostnames: list[str] = field(default_factory=list)


@dataclass
class VaultStatus:
    """Vault state as shown to the operator."""
    initialized: bool
    unlocked: bool
    failed_hostnames: list[str]


# ==================== Primitives ====================

def derive_wrapping_key(password: str, salt: bytes, params: Argon2Params) -> bytes:
    """Derive the key-wrapping key with Argon2id."""
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=params.iterations,
        memory_cost=params.memory_kib,
        parallelism=params.parallelism,
        hash_len=params.key_len,
        type=Type.ID,
    )


def _aead_encrypt(key: bytes, plaintext: bytes, aad: bytes) -> bytes:
    nonce = secrets.token_bytes(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, aad)


def _aead_decrypt(key: bytes, blob: bytes, aad: bytes) -> bytes:
    """Decrypt nonce || ciphertext; raises InvalidTag on any mismatch."""
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise InvalidTag()
    return AESGCM(key).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], aad)


def wrap_master_key(master_key: bytes, password: str, params: Argon2Params | None = None) -> VaultMaterial:
    """Wrap a master key under a fresh salt and the given password."""
    params = params or Argon2Params.from_settings()
    salt = secrets.token_bytes(SALT_SIZE)
    wrapping_key = derive_wrapping_key(password, salt, params)
    return VaultMaterial(
        wrapped_master_key=_aead_encrypt(wrapping_key, master_key, MASTER_KEY_AAD),
        salt=salt,
        params=params,
    )


def unwrap_master_key(material: VaultMaterial, password: str) -> bytes:
    """Recover the master key; the GCM tag doubles as the password check."""
    wrapping_key = derive_wrapping_key(password, material.salt, material.params)
    try:
        return _aead_decrypt(wrapping_key, material.wrapped_master_key, MASTER_KEY_AAD)
    except InvalidTag:
        raise WrongPassword("Incorrect encryption key")


class VaultSession:
    """Unlock state for one vault.

    Holds the master key (and the password, for self-contained backup
    export) between ``unlock`` and ``lock``. ``lock`` serialises operations
    that must not interleave with a rotation.
    """

    def __init__(self, name: str = "primary"):
        self.name = name
        self.lock = asyncio.Lock()
        self.failed_hostnames: list[str] = []
        self.key_id: int | None = None
        self._master_key: bytes | None = None
        self._password: str | None = None

    @property
    def is_unlocked(self) -> bool:
        return self._master_key is not None

    @property
    def password(self) -> str:
        if self._password is None:
            raise KeyRequired("Encryption key required: vault is locked")
        return self._password

    def unlock_with(self, material: VaultMaterial, password: str) -> None:
        """Unwrap ``material``; on WrongPassword the session is left untouched."""
        master_key = unwrap_master_key(material, password)
        self.install(master_key, password)

    def install(self, master_key: bytes, password: str) -> None:
        if len(master_key) != MASTER_KEY_SIZE:
            raise ValueError("Master key must be 32 bytes")
        self._master_key = bytes(master_key)
        self._password = password
        self.failed_hostnames = []

    def transfer_to(self, target: "VaultSession") -> None:
        """Hand this session's key and password to ``target``."""
        target.install(self._require_key(), self.password)
        target.key_id = None

    def wrap(self, password: str) -> VaultMaterial:
        """Wrap this session's master key under another password."""
        return wrap_master_key(self._require_key(), password)

    def close(self) -> None:
        """Discard the master key immediately."""
        self._master_key = None
        self._password = None
        self.failed_hostnames = []
        self.key_id = None

    def seal(self, plaintext: bytes) -> bytes:
        """Encrypt private key bytes under the master key."""
        return _aead_encrypt(self._require_key(), plaintext, PRIVATE_KEY_AAD)

    def open(self, blob: bytes, hostname: str | None = None) -> bytes:
        """Decrypt a sealed blob.

        Raises:
            VaultLocked: the session holds no master key
            DecryptFailed: the blob does not authenticate under this key
        """
        key = self._require_key()
        try:
            return _aead_decrypt(key, blob, PRIVATE_KEY_AAD)
        except InvalidTag:
            target = f" for {hostname}" if hostname else ""
            raise DecryptFailed(
                f"Failed to decrypt private key{target}",
                hostnames=[hostname] if hostname else [],
            )

    def can_open(self, blob: bytes) -> bool:
        try:
            self.open(blob)
            return True
        except DecryptFailed:
            return False

    def _require_key(self) -> bytes:
        if self._master_key is None:
            raise VaultLocked("Encryption key required: vault is locked")
        return self._master_key

    def __repr__(self) -> str:
        state = "unlocked" if self.is_unlocked else "locked"
        return f"<VaultSession {self.name} {state}>"


class KeyVault:
    """Persists the wrapped master key and drives session transitions."""

    def validate_password(self, password: str, field: str = "password") -> None:
        """Apply the password policy for new or changed passwords."""
        if not password:
            raise ValidationError("Encryption key cannot be empty", field=field)
        minimum = get_settings().min_password_length
        if len(password) < minimum:
            raise ValidationError(
                f"Encryption key must be at least {minimum} characters",
                field=field,
            )

    async def get_material(self, db: AsyncSession) -> VaultMaterial | None:
        """Material of the oldest password entry."""
        records = await self.list_keys(db)
        return VaultMaterial.from_record(records[0]) if records else None

    async def is_initialized(self, db: AsyncSession) -> bool:
        return bool(await self.list_keys(db))

    async def list_keys(self, db: AsyncSession) -> list[SecurityKey]:
        """Enrolled password entries, oldest first."""
        result = await db.execute(
            select(SecurityKey)
            .where(SecurityKey.method == SecurityKeyMethod.PASSWORD.value)
            .order_by(SecurityKey.id)
        )
        return list(result.scalars().all())

    async def enroll_password(
        self,
        db: AsyncSession,
        session: VaultSession,
        password: str,
        label: str | None = None,
    ) -> SecurityKey:
        """Add another password that unlocks the same master key.

        Requires an unlocked session; existing sealed keys are untouched.
        """
        async with session.lock:
            if not session.is_unlocked:
                raise KeyRequired("Encryption key required to enroll a password")
            if not await self.is_initialized(db):
                raise KeyRequired("Vault has not been initialized")
            self.validate_password(password)

            material = session.wrap(password)
            record = SecurityKey(
                method=SecurityKeyMethod.PASSWORD.value,
                label=(label or "").strip() or DEFAULT_LABEL,
                wrapped_master_key=material.wrapped_master_key,
                metadata_=material.metadata(),
            )
            db.add(record)
            await commit_or_rollback(db, "enroll password")

        logger.info("Password enrolled", key_id=record.id, label=record.label)
        return record

    async def remove_key(self, db: AsyncSession, key_id: int) -> None:
        """Delete one password entry; the last one cannot be removed."""
        record = await db.get(SecurityKey, key_id)
        if record is None:
            raise NotFound(f"Security key not found: {key_id}", field="key_id")
        if record.method == SecurityKeyMethod.PASSWORD.value and len(await self.list_keys(db)) <= 1:
            raise Conflict("Cannot remove the last password unlock method", field="key_id")

        await db.delete(record)
        await commit_or_rollback(db, "remove security key")
        logger.info("Security key removed", key_id=key_id, method=record.method)

    async def status(self, db: AsyncSession, session: VaultSession) -> VaultStatus:
        return VaultStatus(
            initialized=await self.is_initialized(db),
            unlocked=session.is_unlocked,
            failed_hostnames=list(session.failed_hostnames),
        )

    @log_operation("vault_unlock")
    async def unlock(self, db: AsyncSession, session: VaultSession, password: str) -> KeyValidationResult:
        """Unlock ``session``, initialising the vault on first use.

        A wrong password raises WrongPassword and leaves the session locked.
        A correct password unlocks even when some sealed keys fail to open;
        those hostnames are reported and stay inaccessible.
        """
        async with session.lock:
            return await self._unlock(db, session, password)

    async def _unlock(self, db: AsyncSession, session: VaultSession, password: str) -> KeyValidationResult:
        if not password:
            raise ValidationError("Encryption key cannot be empty", field="password")

        records = await self.list_keys(db)
        if not records:
            self.validate_password(password)
            master_key = secrets.token_bytes(MASTER_KEY_SIZE)
            material = wrap_master_key(master_key, password)
            record = SecurityKey(
                method=SecurityKeyMethod.PASSWORD.value,
                wrapped_master_key=material.wrapped_master_key,
                metadata_=material.metadata(),
                last_used_at=datetime.now(timezone.utc),
            )
            db.add(record)
            await commit_or_rollback(db, "store master key")
            session.install(master_key, password)
            session.key_id = record.id
            logger.info("Vault initialized", session=session.name)
            return KeyValidationResult(valid=True)

        record = self._unlock_any(session, records, password)
        if record is None:
            logger.warning("Vault unlock rejected", session=session.name, entries=len(records))
            raise WrongPassword("Incorrect encryption key")
        session.key_id = record.id

        failed = await self.find_undecryptable(db, session)
        session.failed_hostnames = failed
        record.last_used_at = datetime.now(timezone.utc)
        await commit_or_rollback(db, "record vault use")

        if failed:
            logger.warning(
                "Vault unlocked with undecryptable keys",
                session=session.name,
                failed_count=len(failed),
                hostnames=",".join(failed),
            )
        else:
            logger.info("Vault unlocked", session=session.name)
        return KeyValidationResult(valid=not failed, failed_hostnames=failed)

    def lock(self, session: VaultSession) -> None:
        session.close()
        logger.info("Vault locked", session=session.name)

    async def find_undecryptable(self, db: AsyncSession, session: VaultSession) -> list[str]:
        """Trial-open every sealed blob; return hostnames with any failure."""
        result = await db.execute(select(CertificateRecord).order_by(CertificateRecord.hostname))
        failed = []
        for record in result.scalars().all():
            for blob in (record.encrypted_private_key, record.pending_encrypted_private_key):
                if blob and not session.can_open(blob):
                    failed.append(record.hostname)
                    break
        return failed

    @log_operation("vault_rotate")
    async def rotate(self, db: AsyncSession, session: VaultSession, new_password: str) -> None:
        """Re-seal every private key under a new master key.

        All blobs are decrypted first; any failure aborts with
        PartialRotationError before anything is written. The new wrapped
        key and every re-sealed blob are committed together, and the
        session switches keys only after that commit succeeds.
        """
        async with session.lock:
            if not session.is_unlocked:
                raise KeyRequired("Encryption key required: vault is locked")
            self.validate_password(new_password, field="new_password")

            key_records = await self.list_keys(db)
            if not key_records:
                raise KeyRequired("Vault has not been initialized")

            result = await db.execute(select(CertificateRecord).order_by(CertificateRecord.hostname))
            records = result.scalars().all()

            plaintexts: dict[tuple[str, str], bytes] = {}
            failed: list[str] = []
            for record in records:
                for column in ("encrypted_private_key", "pending_encrypted_private_key"):
                    blob = getattr(record, column)
                    if not blob:
                        continue
                    try:
                        plaintexts[(record.hostname, column)] = session.open(blob, record.hostname)
                    except DecryptFailed:
                        if record.hostname not in failed:
                            failed.append(record.hostname)

            if failed:
                logger.error(
                    "Key rotation aborted",
                    failed_count=len(failed),
                    hostnames=",".join(failed),
                )
                raise PartialRotationError(
                    f"Rotation aborted: {len(failed)} key(s) could not be decrypted",
                    hostnames=failed,
                )

            new_master_key = secrets.token_bytes(MASTER_KEY_SIZE)
            staging = VaultSession("rotation")
            staging.install(new_master_key, new_password)
            try:
                by_hostname = {record.hostname: record for record in records}
                for (hostname, column), plaintext in plaintexts.items():
                    setattr(by_hostname[hostname], column, staging.seal(plaintext))

                # The new password replaces every enrolled password
                key_record, *retired = key_records
                material = wrap_master_key(new_master_key, new_password)
                key_record.label = DEFAULT_LABEL
                key_record.wrapped_master_key = material.wrapped_master_key
                key_record.metadata_ = material.metadata()
                for record in retired:
                    await db.delete(record)
                await commit_or_rollback(db, "rotate encryption key")
            finally:
                staging.close()

            session.install(new_master_key, new_password)
            session.key_id = key_record.id
            logger.info(
                "Encryption key rotated",
                resealed=len(plaintexts),
                retired_entries=len(retired),
            )

    # ==================== Helper Methods ====================

    def _unlock_any(self, session: VaultSession, records: list[SecurityKey], password: str) -> SecurityKey | None:
        """Try each password entry in turn; return the one that unwrapped."""
        for record in records:
            try:
                material = VaultMaterial.from_record(record)
            except ValidationError as e:
                logger.error("Unreadable security key metadata", key_id=record.id, error=e.message)
                continue
            try:
                session.unlock_with(material, password)
            except WrongPassword:
                continue
            return record
        return None


# Singleton instance
key_vault = KeyVault()
