"""Certificate State Engine.

A hostname's record is lifted into a ``Certificate`` value holding an
optional ``Issued`` (active) part and an optional ``Requested`` (pending)
part. Constructing a Certificate enforces the record invariants:
- at least one part is present
- a pending request always carries both its CSR and its sealed key

Status is never stored. ``compute_status`` is the single definition used
by listing, filtering and the detail view.

State transitions:
    (none) --csr--> Pending --upload--> Active --renewal csr--> Active+Pending
    Active+Pending --upload--> Active (new material)
    Active+Pending --cancel_renewal--> Active
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from certvault.config import get_settings
from certvault.core.certificate_engine import certificate_engine
from certvault.core.errors import (
    KeyMismatch,
    NotFound,
    ReadOnly,
    StorageError,
    ValidationError,
)
from certvault.core.history import history_service
from certvault.core.logging import get_logger
from certvault.core.vault import VaultSession
from certvault.database import commit_or_rollback
from certvault.models import CertificateRecord, HistoryEventType
from certvault.schemas.certificate import (
    CertificateDetail,
    CertificateFilter,
    CertificateListItem,
    CertificateStatus,
    SortField,
    SortOrder,
    StatusFilter,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Issued:
    """Active, signed material."""
    certificate_pem: str
    encrypted_private_key: bytes | None
    expires_at: datetime | None
    chain_pem: str | None = None


@dataclass(frozen=True)
class Requested:
    """An outstanding request: CSR and its sealed key, always together."""
    csr_pem: str
    encrypted_private_key: bytes
    note: str | None = None

    def __post_init__(self):
        if not self.csr_pem or not self.encrypted_private_key:
            raise ValueError("A pending request needs both a CSR and a sealed key")


@dataclass(frozen=True)
class Certificate:
    """One hostname's lifecycle state."""
    hostname: str
    active: Issued | None
    pending: Requested | None
    created_at: datetime
    note: str | None = None
    read_only: bool = False

    def __post_init__(self):
        if self.active is None and self.pending is None:
            raise ValueError(f"Certificate {self.hostname} has neither active nor pending material")

    @property
    def is_renewing(self) -> bool:
        return self.active is not None and self.pending is not None

    @property
    def expires_at(self) -> datetime | None:
        return self.active.expires_at if self.active else None

    def status(self, now: datetime, window: timedelta) -> CertificateStatus:
        return compute_status(self.active is not None, self.expires_at, now, window)

    @classmethod
    def from_record(cls, record: CertificateRecord) -> "Certificate":
        has_csr = bool(record.pending_csr_pem)
        has_pending_key = bool(record.pending_encrypted_private_key)
        if has_csr != has_pending_key:
            raise StorageError(
                f"Corrupt record for {record.hostname}: pending CSR and key must be stored together",
                hostnames=[record.hostname],
            )

        active = None
        if record.certificate_pem:
            active = Issued(
                certificate_pem=record.certificate_pem,
                encrypted_private_key=record.encrypted_private_key or None,
                expires_at=record.expires_at,
                chain_pem=record.chain_pem,
            )
        pending = None
        if has_csr:
            pending = Requested(
                csr_pem=record.pending_csr_pem,
                encrypted_private_key=record.pending_encrypted_private_key,
                note=record.pending_note,
            )

        try:
            return cls(
                hostname=record.hostname,
                active=active,
                pending=pending,
                created_at=record.created_at,
                note=record.note,
                read_only=record.read_only,
            )
        except ValueError as e:
            raise StorageError(str(e), hostnames=[record.hostname])

    def apply_to(self, record: CertificateRecord) -> CertificateRecord:
        """Flatten this value back onto its row."""
        record.hostname = self.hostname
        record.certificate_pem = self.active.certificate_pem if self.active else None
        record.encrypted_private_key = self.active.encrypted_private_key if self.active else None
        record.expires_at = self.active.expires_at if self.active else None
        record.chain_pem = self.active.chain_pem if self.active else None
        record.pending_csr_pem = self.pending.csr_pem if self.pending else None
        record.pending_encrypted_private_key = self.pending.encrypted_private_key if self.pending else None
        record.pending_note = self.pending.note if self.pending else None
        record.note = self.note
        record.read_only = self.read_only
        if self.created_at is not None:
            record.created_at = self.created_at
        return record


def compute_status(
    has_certificate: bool,
    expires_at: datetime | None,
    now: datetime,
    window: timedelta,
) -> CertificateStatus:
    """Derive status from certificate presence, expiry and the expiring window."""
    if not has_certificate:
        return CertificateStatus.PENDING
    if expires_at is None:
        return CertificateStatus.ACTIVE
    if now > expires_at:
        return CertificateStatus.EXPIRED
    if expires_at - now <= window:
        return CertificateStatus.EXPIRING
    return CertificateStatus.ACTIVE


def days_until_expiration(expires_at: datetime | None, now: datetime) -> int | None:
    """Whole days left, floored at zero."""
    if expires_at is None:
        return None
    days = math.floor((expires_at - now).total_seconds() / 86400)
    return max(days, 0)


def expiring_window() -> timedelta:
    return timedelta(days=get_settings().expiring_window_days)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CertificateStateEngine:
    """Owns per-hostname records and their transitions."""

    async def load(self, db: AsyncSession, hostname: str) -> tuple[CertificateRecord, Certificate]:
        record = await db.get(CertificateRecord, hostname)
        if record is None:
            raise NotFound(f"Certificate not found: {hostname}", field="hostname")
        return record, Certificate.from_record(record)

    async def exists(self, db: AsyncSession, hostname: str) -> bool:
        return await db.get(CertificateRecord, hostname) is not None

    async def upload(
        self,
        db: AsyncSession,
        session: VaultSession,
        hostname: str,
        certificate_pem: str,
    ) -> Certificate:
        """Promote the pending request to active using a signed certificate.

        The certificate must carry the pending CSR's public key and the
        pending sealed key must open to the matching private key. On any
        failure the pending fields are left untouched.
        """
        async with session.lock:
            record, current = await self.load(db, hostname)
            if current.read_only:
                raise ReadOnly(f"Certificate {hostname} is read-only")
            if current.pending is None:
                raise ValidationError(f"No pending CSR for {hostname}", field="hostname")

            cert = certificate_engine.load_certificate(certificate_pem)
            csr = certificate_engine.load_csr(current.pending.csr_pem)
            if not certificate_engine.public_keys_match(csr.public_key(), cert.public_key()):
                raise KeyMismatch(
                    "Certificate public key does not match the pending CSR",
                    field="certificate_pem",
                )

            key_pem = session.open(current.pending.encrypted_private_key, hostname)
            private_key = certificate_engine.load_private_key(key_pem)
            if not certificate_engine.public_keys_match(private_key, cert.public_key()):
                raise KeyMismatch(
                    "Certificate public key does not match the pending private key",
                    field="certificate_pem",
                )

            info = certificate_engine.describe_certificate(cert)
            updated = replace(
                current,
                active=Issued(
                    certificate_pem=info.pem,
                    encrypted_private_key=current.pending.encrypted_private_key,
                    expires_at=info.not_after,
                ),
                pending=None,
                note=current.pending.note or current.note,
            )
            updated.apply_to(record)
            history_service.record(
                db,
                hostname,
                HistoryEventType.CERTIFICATE_UPLOADED,
                f"Certificate uploaded (expires {info.not_after:%Y-%m-%d})",
            )
            await commit_or_rollback(db, "store uploaded certificate")

        logger.info("Certificate uploaded", hostname=hostname, expires_at=info.not_after.isoformat())
        return updated

    async def cancel_renewal(self, db: AsyncSession, hostname: str) -> Certificate:
        """Drop the pending request; the active certificate is untouched."""
        record, current = await self.load(db, hostname)
        if current.read_only:
            raise ReadOnly(f"Certificate {hostname} is read-only")
        if current.pending is None:
            raise ValidationError(f"No pending CSR for {hostname}", field="hostname")
        if current.active is None:
            raise ValidationError(
                f"{hostname} has no active certificate; delete it instead",
                field="hostname",
            )

        updated = replace(current, pending=None)
        updated.apply_to(record)
        history_service.record(db, hostname, HistoryEventType.RENEWAL_CANCELLED, "Pending CSR cancelled")
        await commit_or_rollback(db, "clear pending CSR")

        logger.info("Pending CSR cleared", hostname=hostname)
        return updated

    async def delete(self, db: AsyncSession, hostname: str) -> None:
        record, current = await self.load(db, hostname)
        if current.read_only:
            raise ReadOnly(f"Certificate {hostname} is read-only")

        await db.delete(record)
        history_service.record(db, hostname, HistoryEventType.CERTIFICATE_DELETED, "Certificate deleted")
        await commit_or_rollback(db, "delete certificate")
        logger.info("Certificate deleted", hostname=hostname)

    async def set_read_only(self, db: AsyncSession, hostname: str, read_only: bool) -> Certificate:
        record, current = await self.load(db, hostname)
        updated = replace(current, read_only=read_only)
        updated.apply_to(record)
        if read_only:
            history_service.record(db, hostname, HistoryEventType.READONLY_ENABLED, "Read-only mode enabled")
        else:
            history_service.record(db, hostname, HistoryEventType.READONLY_DISABLED, "Read-only mode disabled")
        await commit_or_rollback(db, "update read-only flag")
        return updated

    async def set_note(self, db: AsyncSession, hostname: str, note: str | None) -> Certificate:
        record, current = await self.load(db, hostname)
        updated = replace(current, note=note or None)
        updated.apply_to(record)
        await commit_or_rollback(db, "update note")
        return updated

    async def set_pending_note(self, db: AsyncSession, hostname: str, note: str | None) -> Certificate:
        record, current = await self.load(db, hostname)
        if current.pending is None:
            raise ValidationError(f"No pending CSR for {hostname}", field="hostname")
        updated = replace(current, pending=replace(current.pending, note=note or None))
        updated.apply_to(record)
        await commit_or_rollback(db, "update pending note")
        return updated

    async def list_certificates(
        self,
        db: AsyncSession,
        certificate_filter: CertificateFilter | None = None,
        now: datetime | None = None,
    ) -> list[CertificateListItem]:
        """Filtered, sorted listing with status computed at read time."""
        certificate_filter = certificate_filter or CertificateFilter()
        now = now or utcnow()
        window = expiring_window()

        result = await db.execute(select(CertificateRecord))
        items = []
        for record in result.scalars().all():
            certificate = Certificate.from_record(record)
            status = certificate.status(now, window)
            if certificate_filter.status != StatusFilter.ALL and status.value != certificate_filter.status.value:
                continue
            items.append(self._list_item(certificate, status, now))

        descending = certificate_filter.sort_order == SortOrder.DESC
        if certificate_filter.sort_by == SortField.HOSTNAME:
            items.sort(key=lambda item: item.hostname, reverse=descending)
        elif certificate_filter.sort_by == SortField.EXPIRING:
            # Records without an expiry always sort last
            with_expiry = [item for item in items if item.expires_at is not None]
            without_expiry = [item for item in items if item.expires_at is None]
            with_expiry.sort(key=lambda item: item.expires_at, reverse=descending)
            items = with_expiry + without_expiry
        else:
            items.sort(key=lambda item: (item.created_at, item.hostname), reverse=descending)
        return items

    async def get(self, db: AsyncSession, hostname: str, now: datetime | None = None) -> CertificateDetail:
        """Detail view with subject fields parsed from the stored PEMs."""
        _, certificate = await self.load(db, hostname)
        now = now or utcnow()
        status = certificate.status(now, expiring_window())

        detail = CertificateDetail(
            hostname=certificate.hostname,
            status=status,
            certificate_pem=certificate.active.certificate_pem if certificate.active else None,
            pending_csr_pem=certificate.pending.csr_pem if certificate.pending else None,
            chain_pem=certificate.active.chain_pem if certificate.active else None,
            created_at=certificate.created_at,
            expires_at=certificate.expires_at,
            days_until_expiration=days_until_expiration(certificate.expires_at, now),
            note=certificate.note,
            pending_note=certificate.pending.note if certificate.pending else None,
            read_only=certificate.read_only,
            is_renewing=certificate.is_renewing,
        )

        if certificate.active:
            info = certificate_engine.parse_certificate(certificate.active.certificate_pem)
            self._fill_subject(detail, "", info.subject, info.sans, info.key_size)
        if certificate.pending:
            csr_info = certificate_engine.parse_csr(certificate.pending.csr_pem)
            if certificate.active:
                self._fill_subject(detail, "pending_", csr_info.subject, csr_info.sans, csr_info.key_size)
            else:
                self._fill_subject(detail, "", csr_info.subject, csr_info.sans, csr_info.key_size)
        return detail

    async def get_private_key_pem(self, db: AsyncSession, session: VaultSession, hostname: str) -> str:
        """Decrypt the active private key for export."""
        async with session.lock:
            _, certificate = await self.load(db, hostname)
            if certificate.active is None or not certificate.active.encrypted_private_key:
                raise NotFound(f"No private key for {hostname}", field="hostname")
            key_pem = session.open(certificate.active.encrypted_private_key, hostname)
        logger.info("Private key exported", hostname=hostname)
        return key_pem.decode("ascii")

    async def get_pending_private_key_pem(self, db: AsyncSession, session: VaultSession, hostname: str) -> str:
        """Decrypt the pending private key for export."""
        async with session.lock:
            _, certificate = await self.load(db, hostname)
            if certificate.pending is None:
                raise NotFound(f"No pending private key for {hostname}", field="hostname")
            key_pem = session.open(certificate.pending.encrypted_private_key, hostname)
        logger.info("Pending private key exported", hostname=hostname)
        return key_pem.decode("ascii")

    async def get_csr_pem(self, db: AsyncSession, hostname: str) -> str:
        _, certificate = await self.load(db, hostname)
        if certificate.pending is None:
            raise NotFound(f"No pending CSR for {hostname}", field="hostname")
        return certificate.pending.csr_pem

    async def get_certificate_pem(self, db: AsyncSession, hostname: str) -> str:
        _, certificate = await self.load(db, hostname)
        if certificate.active is None:
            raise NotFound(f"No certificate for {hostname}", field="hostname")
        return certificate.active.certificate_pem

    # ==================== Helper Methods ====================

    def _list_item(self, certificate: Certificate, status: CertificateStatus, now: datetime) -> CertificateListItem:
        sans: list[str] = []
        key_size = None
        if certificate.active:
            info = certificate_engine.parse_certificate(certificate.active.certificate_pem)
            sans, key_size = info.sans, info.key_size
        elif certificate.pending:
            csr_info = certificate_engine.parse_csr(certificate.pending.csr_pem)
            sans, key_size = csr_info.sans, csr_info.key_size

        return CertificateListItem(
            hostname=certificate.hostname,
            status=status,
            sans=sans,
            key_size=key_size,
            created_at=certificate.created_at,
            expires_at=certificate.expires_at,
            days_until_expiration=days_until_expiration(certificate.expires_at, now),
            read_only=certificate.read_only,
            has_pending_csr=certificate.pending is not None,
        )

    def _fill_subject(self, detail: CertificateDetail, prefix: str, subject, sans, key_size) -> None:
        setattr(detail, f"{prefix}sans", list(sans))
        setattr(detail, f"{prefix}organization", subject.organization)
        setattr(detail, f"{prefix}organizational_unit", subject.organizational_unit)
        setattr(detail, f"{prefix}city", subject.locality)
        setattr(detail, f"{prefix}state", subject.state)
        setattr(detail, f"{prefix}country", subject.country)
        setattr(detail, f"{prefix}key_size", key_size)


# Singleton instance
certificate_state_engine = CertificateStateEngine()
