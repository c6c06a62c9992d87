"""Backup/Restore Engine.

Bundles are JSON documents (version "1.0") holding the CA configuration,
every certificate record with its sealed blobs, and a ``vault`` block with
the wrapped master key of the exporting installation. The plaintext master
key is never exported; the password itself only when explicitly requested.

Restore and subset import open the bundle's blobs through a temporary
``VaultSession`` unlocked from the bundle's own vault block, so the live
session is never used to read foreign ciphertext.
"""

import base64
import binascii
import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from certvault.config import get_settings
from certvault.core.certificate_engine import certificate_engine
from certvault.core.config_service import CONFIG_FIELDS, config_service
from certvault.core.errors import (
    CertVaultError,
    DecryptFailed,
    InvalidFormat,
    KeyRequired,
    NotFound,
    ValidationError,
)
from certvault.core.history import history_service
from certvault.core.logging import get_logger, log_operation
from certvault.core.vault import VaultMaterial, VaultSession, key_vault
from certvault.database import commit_or_rollback
from certvault.models import CertificateRecord, HistoryEventType, SecurityKey, SecurityKeyMethod
from certvault.schemas.backup import (
    BackupCertificate,
    BackupConfig,
    BackupData,
    BackupValidationResult,
    BackupVault,
    CertImportResult,
    LocalBackupInfo,
)
from certvault.schemas.config import SetupRequest

logger = get_logger(__name__)

BACKUP_VERSION = "1.0"
SUPPORTED_VERSIONS = ("1.0",)

MAX_AUTO_BACKUPS = 5
LOCAL_BACKUP_PREFIX = "certvault-backup"
LOCAL_BACKUP_TIMESTAMP = "%Y%m%dT%H%M%S%f"
LOCAL_BACKUP_RE = re.compile(rf"^{LOCAL_BACKUP_PREFIX}\.(auto|manual)\.(\d{{8}}T\d{{12}})\.json$")

KEY_COLUMNS = ("encrypted_private_key", "pending_encrypted_private_key")


class BackupService:
    """Exports, validates, restores and merges backup bundles."""

    @log_operation("backup_export")
    async def export(
        self,
        db: AsyncSession,
        session: VaultSession,
        include_raw_key: bool = False,
    ) -> BackupData:
        """Snapshot configuration and every record.

        Sealed blobs are copied as stored. With ``include_raw_key`` the
        password is embedded, which needs an unlocked session.
        """
        encryption_key = session.password if include_raw_key else None

        config = await config_service.get(db)
        if session.is_unlocked:
            material = session.wrap(session.password)
        else:
            material = await key_vault.get_material(db)
        result = await db.execute(select(CertificateRecord).order_by(CertificateRecord.hostname))
        records = result.scalars().all()

        bundle = BackupData(
            version=BACKUP_VERSION,
            exported_at=int(datetime.now(timezone.utc).timestamp()),
            encryption_key=encryption_key,
            vault=BackupVault(**material.to_dict()) if material else None,
            config=BackupConfig(**{name: getattr(config, name) for name in CONFIG_FIELDS}) if config else None,
            certificates=[self._export_record(record) for record in records],
        )
        logger.info(
            "Backup exported",
            certificates=len(records),
            includes_password=include_raw_key,
        )
        return bundle

    def validate(self, bundle: dict | BackupData, check_contents: bool = True) -> BackupValidationResult:
        """Check a bundle without importing anything.

        With ``check_contents`` every certificate, request and chain PEM is
        parsed and the configuration goes through the setup validation, so
        a bundle that passes can be restored into a usable installation.
        """
        if isinstance(bundle, dict):
            try:
                bundle = BackupData.model_validate(bundle)
            except PydanticValidationError as e:
                return BackupValidationResult(
                    valid=False,
                    errors=[self._format_pydantic_error(err) for err in e.errors()],
                )

        errors = []
        if bundle.version not in SUPPORTED_VERSIONS:
            errors.append(f"Unsupported backup version: {bundle.version}")

        seen = set()
        has_encrypted_keys = False
        for index, cert in enumerate(bundle.certificates):
            label = cert.hostname or f"certificates[{index}]"
            if not cert.hostname.strip():
                errors.append(f"certificates[{index}]: hostname is empty")
            elif cert.hostname in seen:
                errors.append(f"{label}: duplicate hostname")
            seen.add(cert.hostname)

            if not cert.certificate_pem and not cert.pending_csr_pem:
                errors.append(f"{label}: neither certificate nor pending CSR")
            if bool(cert.pending_csr_pem) != bool(cert.pending_encrypted_private_key):
                errors.append(f"{label}: pending CSR and pending key must be present together")

            for column in KEY_COLUMNS:
                value = getattr(cert, column)
                if not value:
                    continue
                has_encrypted_keys = True
                try:
                    _b64decode(value)
                except ValueError:
                    errors.append(f"{label}: {column} is not valid base64")

            if check_contents:
                errors.extend(f"{label}: {error}" for error in self._content_errors(cert))

        if check_contents and bundle.config is not None:
            try:
                config_service.validate(SetupRequest(**bundle.config.model_dump()))
            except CertVaultError as e:
                errors.append(f"config: {e.message}")

        if has_encrypted_keys and bundle.vault is None:
            errors.append("Backup contains encrypted keys but no vault block")
        if bundle.vault is not None:
            try:
                VaultMaterial.from_dict(bundle.vault.model_dump())
            except ValidationError as e:
                errors.append(e.message)

        return BackupValidationResult(
            valid=not errors,
            version=bundle.version,
            certificate_count=len(bundle.certificates),
            has_encrypted_keys=has_encrypted_keys,
            has_encryption_key=bool(bundle.encryption_key),
            exported_at=bundle.exported_at,
            errors=errors,
        )

    def validate_file(self, path: str | Path) -> BackupValidationResult:
        try:
            data = self._read_json(path)
        except InvalidFormat as e:
            return BackupValidationResult(valid=False, errors=[e.message])
        return self.validate(data)

    def load_file(self, path: str | Path) -> BackupData:
        return self._parse(self._read_json(path))

    @log_operation("backup_restore")
    async def restore(self, db: AsyncSession, session: VaultSession, bundle: dict | BackupData) -> int:
        """Replace configuration and every record with the bundle's contents.

        Every blob is trial-opened before anything is written. A bundle that
        embeds its password brings its own vault record and unlocks
        ``session`` with it; otherwise the blobs are re-sealed under the
        unlocked ``session``. Returns the number of restored records.
        """
        bundle = self._parse(bundle)
        has_blobs = any(getattr(cert, column) for cert in bundle.certificates for column in KEY_COLUMNS)

        async with session.lock:
            live_initialized = await key_vault.is_initialized(db)
            adopt_vault = bundle.vault is not None and (bool(bundle.encryption_key) or not live_initialized)

            source = None
            if has_blobs or (adopt_vault and bundle.encryption_key):
                if bundle.encryption_key:
                    password = bundle.encryption_key
                elif session.is_unlocked:
                    password = session.password
                else:
                    raise KeyRequired("Encryption key required to restore a backup with private keys")
                source = self._open_bundle_session(bundle, password)

            try:
                if source is not None:
                    self._preflight(bundle, source)
                    if not adopt_vault and not session.is_unlocked:
                        raise KeyRequired("Encryption key required to re-seal restored keys")

                await self._auto_backup(db, session)

                await db.execute(delete(CertificateRecord))
                existing_config = await config_service.get(db)
                if bundle.config is not None:
                    config_service.stage_replacement(db, existing_config, bundle.config.model_dump())

                if adopt_vault:
                    material = VaultMaterial.from_dict(bundle.vault.model_dump())
                    await db.execute(delete(SecurityKey))
                    db.add(SecurityKey(
                        method=SecurityKeyMethod.PASSWORD.value,
                        wrapped_master_key=material.wrapped_master_key,
                        metadata_=material.metadata(),
                    ))

                for cert in bundle.certificates:
                    if adopt_vault or source is None:
                        record = self._import_record(cert)
                    else:
                        record = self._import_record(cert, source=source, target=session)
                    db.add(record)
                    history_service.record(
                        db,
                        cert.hostname,
                        HistoryEventType.CERTIFICATE_RESTORED,
                        self._restored_message(record, "restored"),
                    )

                await commit_or_rollback(db, "restore backup")

                if adopt_vault:
                    if source is not None:
                        source.transfer_to(session)
                    else:
                        session.close()
            finally:
                if source is not None:
                    source.close()

        logger.info(
            "Backup restored",
            certificates=len(bundle.certificates),
            adopted_vault=adopt_vault,
        )
        return len(bundle.certificates)

    @log_operation("backup_import_subset")
    async def import_subset(
        self,
        db: AsyncSession,
        session: VaultSession,
        bundle: dict | BackupData,
        password: str,
        hostnames: list[str] | None = None,
    ) -> CertImportResult:
        """Merge selected records from a bundle sealed under ``password``.

        Existing hostnames are skipped and reported as conflicts. A record
        whose PEM data does not parse or whose blobs fail to open under the
        bundle's key is reported as failed; the remaining records are still
        imported.
        """
        bundle = self._parse(bundle, check_contents=False)
        if bundle.vault is None:
            raise ValidationError("Backup has no vault block", field="vault")
        if not session.is_unlocked:
            raise KeyRequired("Encryption key required to import certificates")

        source = self._open_bundle_session(bundle, password)
        result = CertImportResult()
        try:
            async with session.lock:
                available = {cert.hostname: cert for cert in bundle.certificates}
                selected = list(available) if hostnames is None else list(dict.fromkeys(hostnames))

                for hostname in selected:
                    cert = available.get(hostname)
                    if cert is None:
                        result.failed.append(hostname)
                        continue
                    if await db.get(CertificateRecord, hostname) is not None:
                        result.skipped += 1
                        result.conflicts.append(hostname)
                        continue
                    try:
                        content_errors = self._content_errors(cert)
                        if content_errors:
                            raise InvalidFormat("; ".join(content_errors), field="bundle")
                        record = self._import_record(cert, source=source, target=session)
                    except (CertVaultError, ValueError) as e:
                        logger.warning("Backup record not imported", hostname=hostname, error=str(e))
                        result.failed.append(hostname)
                        continue

                    db.add(record)
                    history_service.record(
                        db,
                        hostname,
                        HistoryEventType.CERTIFICATE_IMPORTED,
                        self._restored_message(record, "imported"),
                    )
                    result.imported += 1

                await commit_or_rollback(db, "import certificates from backup")
        finally:
            source.close()

        logger.info(
            "Certificates imported from backup",
            imported=result.imported,
            skipped=result.skipped,
            failed=len(result.failed),
        )
        return result

    # ==================== Local Backups ====================

    async def create_local_backup(self, db: AsyncSession, session: VaultSession, kind: str = "manual") -> LocalBackupInfo:
        """Write a bundle (without the password) into the backup directory."""
        if kind not in ("auto", "manual"):
            raise ValidationError("Backup type must be auto or manual", field="type")
        directory = self._backup_dir()
        directory.mkdir(parents=True, exist_ok=True)

        bundle = await self.export(db, session, include_raw_key=False)
        now = datetime.now(timezone.utc)
        path = directory / f"{LOCAL_BACKUP_PREFIX}.{kind}.{now.strftime(LOCAL_BACKUP_TIMESTAMP)}.json"
        path.write_text(bundle.model_dump_json(indent=2), encoding="utf-8")
        os.chmod(path, 0o600)
        logger.info("Local backup created", filename=path.name, type=kind)

        if kind == "auto":
            self._rotate_auto_backups(directory)
        return self._describe_local(path)

    def list_local_backups(self, directory: str | Path | None = None) -> list[LocalBackupInfo]:
        """Newest first; defaults to the configured backup directory."""
        directory = Path(directory) if directory else self._backup_dir()
        if not directory.is_dir():
            return []
        infos = [
            self._describe_local(path)
            for path in directory.iterdir()
            if LOCAL_BACKUP_RE.match(path.name)
        ]
        return sorted(infos, key=lambda info: (info.timestamp, info.filename), reverse=True)

    def delete_local_backup(self, filename: str) -> None:
        path = self._local_path(filename)
        path.unlink()
        logger.info("Local backup deleted", filename=filename)

    async def restore_local_backup(self, db: AsyncSession, session: VaultSession, filename: str) -> int:
        return await self.restore(db, session, self.load_file(self._local_path(filename)))

    # ==================== Helper Methods ====================

    def _parse(self, bundle: dict | BackupData, check_contents: bool = True) -> BackupData:
        result = self.validate(bundle, check_contents=check_contents)
        if not result.valid:
            raise ValidationError(
                "Invalid backup: " + "; ".join(result.errors),
                field="bundle",
            )
        if isinstance(bundle, BackupData):
            return bundle
        return BackupData.model_validate(bundle)

    def _read_json(self, path: str | Path) -> dict:
        path = Path(path)
        if not path.is_file():
            raise NotFound(f"Backup file not found: {path}", field="path")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidFormat(f"Backup file is not valid JSON: {e}", field="path")
        if not isinstance(data, dict):
            raise InvalidFormat("Backup file must contain a JSON object", field="path")
        return data

    def _open_bundle_session(self, bundle: BackupData, password: str) -> VaultSession:
        if bundle.vault is None:
            raise ValidationError("Backup has no vault block", field="vault")
        source = VaultSession("backup")
        source.unlock_with(VaultMaterial.from_dict(bundle.vault.model_dump()), password)
        return source

    def _content_errors(self, cert: BackupCertificate) -> list[str]:
        errors = []
        loaders = (
            ("certificate_pem", certificate_engine.load_certificate),
            ("pending_csr_pem", self._load_signed_csr),
            ("chain_pem", self._load_chain),
        )
        for column, loader in loaders:
            value = getattr(cert, column)
            if not value:
                continue
            try:
                loader(value)
            except InvalidFormat as e:
                errors.append(f"{column} is invalid: {e.message}")
        return errors

    def _load_signed_csr(self, csr_pem: str) -> None:
        if not certificate_engine.parse_csr(csr_pem).is_signature_valid:
            raise InvalidFormat("CSR signature does not verify", field="pending_csr_pem")

    def _load_chain(self, chain_pem: str) -> None:
        if not certificate_engine.load_certificates(chain_pem):
            raise InvalidFormat("No certificate found in chain", field="chain_pem")

    def _preflight(self, bundle: BackupData, source: VaultSession) -> None:
        """Every blob must open before anything is written."""
        failed = []
        for cert in bundle.certificates:
            for column in KEY_COLUMNS:
                value = getattr(cert, column)
                if value and not source.can_open(_b64decode(value)):
                    failed.append(cert.hostname)
                    break
        if failed:
            raise DecryptFailed(
                f"{len(failed)} key(s) in the backup could not be decrypted",
                hostnames=failed,
            )

    def _export_record(self, record: CertificateRecord) -> BackupCertificate:
        return BackupCertificate(
            hostname=record.hostname,
            certificate_pem=record.certificate_pem,
            encrypted_private_key=_b64encode(record.encrypted_private_key),
            chain_pem=record.chain_pem,
            pending_csr_pem=record.pending_csr_pem,
            pending_encrypted_private_key=_b64encode(record.pending_encrypted_private_key),
            created_at=int(record.created_at.timestamp()),
            expires_at=int(record.expires_at.timestamp()) if record.expires_at else None,
            note=record.note,
            pending_note=record.pending_note,
            read_only=record.read_only,
        )

    def _import_record(
        self,
        cert: BackupCertificate,
        source: VaultSession | None = None,
        target: VaultSession | None = None,
    ) -> CertificateRecord:
        """Build a row from a bundle entry, re-sealing blobs when sessions are given."""
        blobs = {}
        for column in KEY_COLUMNS:
            value = getattr(cert, column)
            blob = _b64decode(value) if value else None
            if blob and source is not None and target is not None:
                blob = target.seal(source.open(blob, cert.hostname))
            blobs[column] = blob

        expires_at = None
        if cert.expires_at is not None:
            expires_at = datetime.fromtimestamp(cert.expires_at, tz=timezone.utc)
        elif cert.certificate_pem:
            expires_at = certificate_engine.parse_certificate(cert.certificate_pem).not_after

        return CertificateRecord(
            hostname=cert.hostname,
            certificate_pem=cert.certificate_pem or None,
            encrypted_private_key=blobs["encrypted_private_key"],
            chain_pem=cert.chain_pem or None,
            expires_at=expires_at,
            pending_csr_pem=cert.pending_csr_pem or None,
            pending_encrypted_private_key=blobs["pending_encrypted_private_key"],
            note=cert.note or None,
            pending_note=cert.pending_note or None,
            read_only=cert.read_only,
            created_at=datetime.fromtimestamp(cert.created_at, tz=timezone.utc),
        )

    def _restored_message(self, record: CertificateRecord, verb: str) -> str:
        if record.certificate_pem and record.expires_at:
            return f"Certificate {verb} from backup (expires {record.expires_at:%Y-%m-%d})"
        if record.certificate_pem:
            return f"Certificate {verb} from backup"
        return f"Pending CSR {verb} from backup"

    async def _auto_backup(self, db: AsyncSession, session: VaultSession) -> None:
        settings = get_settings()
        if not settings.backup_dir or not settings.auto_backup_before_restore:
            return
        if await db.scalar(select(CertificateRecord.hostname).limit(1)) is None:
            return
        try:
            await self.create_local_backup(db, session, kind="auto")
        except (OSError, CertVaultError) as e:
            logger.error("Automatic backup before restore failed", error=str(e))
            raise

    def _backup_dir(self) -> Path:
        backup_dir = get_settings().backup_dir
        if not backup_dir:
            raise ValidationError("Local backups are disabled; set BACKUP_DIR", field="backup_dir")
        return Path(backup_dir)

    def _local_path(self, filename: str) -> Path:
        if not LOCAL_BACKUP_RE.match(filename or ""):
            raise ValidationError(f"Invalid backup filename: {filename}", field="filename")
        path = self._backup_dir() / filename
        if not path.is_file():
            raise NotFound(f"Backup not found: {filename}", field="filename")
        return path

    def _describe_local(self, path: Path) -> LocalBackupInfo:
        match = LOCAL_BACKUP_RE.match(path.name)
        timestamp = datetime.strptime(match.group(2), LOCAL_BACKUP_TIMESTAMP).replace(tzinfo=timezone.utc)
        certificate_count = 0
        ca_name = None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            certificate_count = len(data.get("certificates") or [])
            ca_name = (data.get("config") or {}).get("ca_name")
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Unreadable local backup", filename=path.name, error=str(e))

        return LocalBackupInfo(
            filename=path.name,
            type=match.group(1),
            timestamp=int(timestamp.timestamp()),
            size=path.stat().st_size,
            certificate_count=certificate_count,
            ca_name=ca_name,
        )

    def _rotate_auto_backups(self, directory: Path) -> None:
        autos = sorted(
            path for path in directory.iterdir()
            if (match := LOCAL_BACKUP_RE.match(path.name)) and match.group(1) == "auto"
        )
        for path in autos[:-MAX_AUTO_BACKUPS]:
            path.unlink()
            logger.info("Old automatic backup removed", filename=path.name)

    def _format_pydantic_error(self, error: dict) -> str:
        location = ".".join(str(part) for part in error.get("loc", ()))
        return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


def _b64encode(blob: bytes | None) -> str | None:
    return base64.b64encode(blob).decode("ascii") if blob else None


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64: {e}")


# Singleton instance
backup_service = BackupService()
