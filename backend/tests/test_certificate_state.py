"""Tests for the certificate state engine."""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from certvault.core.certificate_engine import certificate_engine
from certvault.core.certificate_state import (
    Certificate,
    Issued,
    Requested,
    certificate_state_engine,
    compute_status,
    days_until_expiration,
)
from certvault.core.csr_generator import csr_generator
from certvault.core.errors import (
    InvalidFormat,
    KeyMismatch,
    KeyRequired,
    NotFound,
    ReadOnly,
    StorageError,
    ValidationError,
)
from certvault.core.history import history_service
from certvault.core.vault import VaultSession
from certvault.models import CertificateRecord
from certvault.schemas.certificate import (
    CertificateFilter,
    CertificateStatus,
    CSRRequest,
    SortField,
    SortOrder,
    StatusFilter,
)

WINDOW = timedelta(days=30)
NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


async def request_csr(db, session, hostname: str) -> str:
    response = await csr_generator.generate(db, session, CSRRequest(hostname=hostname, key_size=2048))
    return response.csr_pem


async def issue(db, session, ca, hostname: str, **sign_kwargs) -> str:
    """Generate a CSR, sign it with the test CA and upload it."""
    csr_pem = await request_csr(db, session, hostname)
    cert_pem = ca.sign_csr(csr_pem, **sign_kwargs)
    await certificate_state_engine.upload(db, session, hostname, cert_pem)
    return cert_pem


class TestComputeStatus:
    """Status is a pure function of presence, expiry, now and window."""

    def test_pending_without_certificate(self):
        assert compute_status(False, None, NOW, WINDOW) == CertificateStatus.PENDING
        assert compute_status(False, NOW - timedelta(days=5), NOW, WINDOW) == CertificateStatus.PENDING

    def test_active_without_expiry(self):
        assert compute_status(True, None, NOW, WINDOW) == CertificateStatus.ACTIVE

    def test_boundaries(self):
        assert compute_status(True, NOW + timedelta(days=31), NOW, WINDOW) == CertificateStatus.ACTIVE
        assert compute_status(True, NOW + WINDOW, NOW, WINDOW) == CertificateStatus.EXPIRING
        assert compute_status(True, NOW, NOW, WINDOW) == CertificateStatus.EXPIRING
        assert compute_status(True, NOW - timedelta(seconds=1), NOW, WINDOW) == CertificateStatus.EXPIRED

    def test_deterministic(self):
        expires = NOW + timedelta(days=10)
        results = {compute_status(True, expires, NOW, WINDOW) for _ in range(10)}
        assert results == {CertificateStatus.EXPIRING}

    def test_days_until_expiration(self):
        assert days_until_expiration(None, NOW) is None
        assert days_until_expiration(NOW + timedelta(days=10, hours=5), NOW) == 10
        assert days_until_expiration(NOW - timedelta(days=3), NOW) == 0


class TestCertificateValue:
    """The tagged active/pending value enforces record invariants."""

    def test_requires_active_or_pending(self):
        with pytest.raises(ValueError):
            Certificate(hostname="x.test.local", active=None, pending=None, created_at=NOW)

    def test_pending_needs_both_parts(self):
        with pytest.raises(ValueError):
            Requested(csr_pem="csr", encrypted_private_key=b"")
        with pytest.raises(ValueError):
            Requested(csr_pem="", encrypted_private_key=b"blob")

    def test_is_renewing(self):
        cert = Certificate(
            hostname="x.test.local",
            active=Issued(certificate_pem="cert", encrypted_private_key=b"k", expires_at=NOW),
            pending=Requested(csr_pem="csr", encrypted_private_key=b"k2"),
            created_at=NOW,
        )
        assert cert.is_renewing
        assert cert.status(NOW + timedelta(days=1), WINDOW) == CertificateStatus.EXPIRED

    def test_inconsistent_row_is_storage_error(self):
        record = CertificateRecord(
            hostname="broken.test.local",
            pending_csr_pem="csr",
            pending_encrypted_private_key=None,
            created_at=NOW,
            read_only=False,
        )
        with pytest.raises(StorageError):
            Certificate.from_record(record)


class TestUpload:
    """Tests for uploading a signed certificate."""

    @pytest.mark.asyncio
    async def test_pending_to_active(self, db_session, vault_session, ca_config, root_ca):
        """CSR -> pending, signed upload -> active with the pending fields cleared."""
        csr_pem = await request_csr(db_session, vault_session, "myserver.test.local")
        detail = await certificate_state_engine.get(db_session, "myserver.test.local")
        assert detail.status == CertificateStatus.PENDING

        await certificate_state_engine.upload(
            db_session, vault_session, "myserver.test.local", root_ca.sign_csr(csr_pem)
        )

        detail = await certificate_state_engine.get(db_session, "myserver.test.local")
        assert detail.status == CertificateStatus.ACTIVE
        assert detail.pending_csr_pem is None
        assert detail.certificate_pem is not None
        assert detail.expires_at is not None

        entries = await history_service.list_entries(db_session, "myserver.test.local")
        assert entries[0].event_type == "certificate_uploaded"
        assert entries[0].message.startswith("Certificate uploaded (expires ")

    @pytest.mark.asyncio
    async def test_key_mismatch_leaves_pending(self, db_session, vault_session, ca_config, root_ca):
        csr_pem = await request_csr(db_session, vault_session, "web.test.local")
        record = await db_session.get(CertificateRecord, "web.test.local")
        pending_key = record.pending_encrypted_private_key

        csr = certificate_engine.load_csr(csr_pem)
        stranger = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        wrong_cert = root_ca.sign_public_key(csr.subject, stranger.public_key())

        with pytest.raises(KeyMismatch):
            await certificate_state_engine.upload(db_session, vault_session, "web.test.local", wrong_cert)

        await db_session.refresh(record)
        assert record.pending_csr_pem == csr_pem
        assert record.pending_encrypted_private_key == pending_key
        assert record.certificate_pem is None

    @pytest.mark.asyncio
    async def test_invalid_pem(self, db_session, vault_session, ca_config):
        await request_csr(db_session, vault_session, "web.test.local")

        with pytest.raises(InvalidFormat):
            await certificate_state_engine.upload(db_session, vault_session, "web.test.local", "not a cert")

    @pytest.mark.asyncio
    async def test_requires_pending(self, db_session, vault_session, ca_config, root_ca):
        cert_pem = await issue(db_session, vault_session, root_ca, "web.test.local")

        with pytest.raises(ValidationError):
            await certificate_state_engine.upload(db_session, vault_session, "web.test.local", cert_pem)

    @pytest.mark.asyncio
    async def test_unknown_hostname(self, db_session, vault_session, root_ca):
        with pytest.raises(NotFound):
            await certificate_state_engine.upload(db_session, vault_session, "ghost.test.local", root_ca.cert_pem)

    @pytest.mark.asyncio
    async def test_read_only_blocks_upload(self, db_session, vault_session, ca_config, root_ca):
        csr_pem = await request_csr(db_session, vault_session, "web.test.local")
        await certificate_state_engine.set_read_only(db_session, "web.test.local", True)

        with pytest.raises(ReadOnly):
            await certificate_state_engine.upload(
                db_session, vault_session, "web.test.local", root_ca.sign_csr(csr_pem)
            )

    @pytest.mark.asyncio
    async def test_renewal_upload_replaces_active(self, db_session, vault_session, ca_config, root_ca):
        first_pem = await issue(db_session, vault_session, root_ca, "web.test.local")
        renewal = await csr_generator.generate(
            db_session,
            vault_session,
            CSRRequest(hostname="web.test.local", key_size=2048, is_renewal=True, note="renewed"),
        )

        await certificate_state_engine.upload(
            db_session, vault_session, "web.test.local", root_ca.sign_csr(renewal.csr_pem, days=730)
        )

        detail = await certificate_state_engine.get(db_session, "web.test.local")
        assert detail.certificate_pem != first_pem
        assert detail.is_renewing is False
        assert detail.note == "renewed"
        key_pem = await certificate_state_engine.get_private_key_pem(db_session, vault_session, "web.test.local")
        private_key = certificate_engine.load_private_key(key_pem)
        cert = certificate_engine.load_certificate(detail.certificate_pem)
        assert certificate_engine.public_keys_match(private_key, cert.public_key())


class TestCancelRenewal:
    """Tests for cancelling a pending renewal."""

    @pytest.mark.asyncio
    async def test_active_fields_untouched(self, db_session, vault_session, ca_config, root_ca):
        await issue(db_session, vault_session, root_ca, "web.test.local")
        await csr_generator.generate(
            db_session,
            vault_session,
            CSRRequest(hostname="web.test.local", key_size=2048, is_renewal=True),
        )
        record = await db_session.get(CertificateRecord, "web.test.local")
        cert_pem, key_blob = record.certificate_pem, record.encrypted_private_key

        await certificate_state_engine.cancel_renewal(db_session, "web.test.local")

        await db_session.refresh(record)
        assert record.certificate_pem == cert_pem
        assert record.encrypted_private_key == key_blob
        assert record.pending_csr_pem is None
        assert record.pending_encrypted_private_key is None

        entries = await history_service.list_entries(db_session, "web.test.local")
        assert entries[0].event_type == "renewal_cancelled"

    @pytest.mark.asyncio
    async def test_without_pending(self, db_session, vault_session, ca_config, root_ca):
        await issue(db_session, vault_session, root_ca, "web.test.local")

        with pytest.raises(ValidationError):
            await certificate_state_engine.cancel_renewal(db_session, "web.test.local")

    @pytest.mark.asyncio
    async def test_pending_only_record(self, db_session, vault_session, ca_config):
        await request_csr(db_session, vault_session, "web.test.local")

        with pytest.raises(ValidationError):
            await certificate_state_engine.cancel_renewal(db_session, "web.test.local")

    @pytest.mark.asyncio
    async def test_read_only(self, db_session, vault_session, ca_config, root_ca):
        await issue(db_session, vault_session, root_ca, "web.test.local")
        await csr_generator.generate(
            db_session,
            vault_session,
            CSRRequest(hostname="web.test.local", key_size=2048, is_renewal=True),
        )
        await certificate_state_engine.set_read_only(db_session, "web.test.local", True)

        with pytest.raises(ReadOnly):
            await certificate_state_engine.cancel_renewal(db_session, "web.test.local")


class TestDeleteAndMetadata:
    """Tests for delete, read-only and notes."""

    @pytest.mark.asyncio
    async def test_delete_keeps_history(self, db_session, vault_session, ca_config):
        await request_csr(db_session, vault_session, "web.test.local")

        await certificate_state_engine.delete(db_session, "web.test.local")

        assert await db_session.get(CertificateRecord, "web.test.local") is None
        entries = await history_service.list_entries(db_session, "web.test.local")
        assert [e.event_type for e in entries] == ["certificate_deleted", "csr_generated"]

    @pytest.mark.asyncio
    async def test_delete_read_only(self, db_session, vault_session, ca_config):
        await request_csr(db_session, vault_session, "web.test.local")
        await certificate_state_engine.set_read_only(db_session, "web.test.local", True)

        with pytest.raises(ReadOnly):
            await certificate_state_engine.delete(db_session, "web.test.local")

    @pytest.mark.asyncio
    async def test_read_only_toggle_always_allowed(self, db_session, vault_session, ca_config):
        await request_csr(db_session, vault_session, "web.test.local")

        await certificate_state_engine.set_read_only(db_session, "web.test.local", True)
        await certificate_state_engine.set_read_only(db_session, "web.test.local", False)

        entries = await history_service.list_entries(db_session, "web.test.local")
        assert [e.event_type for e in entries[:2]] == ["readonly_disabled", "readonly_enabled"]

    @pytest.mark.asyncio
    async def test_notes_allowed_when_read_only(self, db_session, vault_session, ca_config):
        await request_csr(db_session, vault_session, "web.test.local")
        await certificate_state_engine.set_read_only(db_session, "web.test.local", True)

        await certificate_state_engine.set_note(db_session, "web.test.local", "primary web")
        await certificate_state_engine.set_pending_note(db_session, "web.test.local", "awaiting signature")

        detail = await certificate_state_engine.get(db_session, "web.test.local")
        assert detail.note == "primary web"
        assert detail.pending_note == "awaiting signature"

    @pytest.mark.asyncio
    async def test_pending_note_without_pending(self, db_session, vault_session, ca_config, root_ca):
        await issue(db_session, vault_session, root_ca, "web.test.local")

        with pytest.raises(ValidationError):
            await certificate_state_engine.set_pending_note(db_session, "web.test.local", "x")


class TestListing:
    """Tests for filtered and sorted listing."""

    @pytest.mark.asyncio
    async def test_status_filter(self, db_session, vault_session, ca_config, root_ca):
        await request_csr(db_session, vault_session, "pending.test.local")
        await issue(db_session, vault_session, root_ca, "active.test.local", days=365)
        await issue(db_session, vault_session, root_ca, "expiring.test.local", days=10)
        await issue(
            db_session, vault_session, root_ca, "expired.test.local",
            not_after=datetime.now(timezone.utc) - timedelta(days=2),
        )

        async def hostnames(status: StatusFilter) -> list[str]:
            items = await certificate_state_engine.list_certificates(
                db_session, CertificateFilter(status=status, sort_by=SortField.HOSTNAME, sort_order=SortOrder.ASC)
            )
            return [item.hostname for item in items]

        assert await hostnames(StatusFilter.ALL) == [
            "active.test.local",
            "expired.test.local",
            "expiring.test.local",
            "pending.test.local",
        ]
        assert await hostnames(StatusFilter.PENDING) == ["pending.test.local"]
        assert await hostnames(StatusFilter.ACTIVE) == ["active.test.local"]
        assert await hostnames(StatusFilter.EXPIRING) == ["expiring.test.local"]
        assert await hostnames(StatusFilter.EXPIRED) == ["expired.test.local"]

    @pytest.mark.asyncio
    async def test_sort_by_expiry(self, db_session, vault_session, ca_config, root_ca):
        await request_csr(db_session, vault_session, "pending.test.local")
        await issue(db_session, vault_session, root_ca, "late.test.local", days=300)
        await issue(db_session, vault_session, root_ca, "soon.test.local", days=60)

        items = await certificate_state_engine.list_certificates(
            db_session, CertificateFilter(sort_by=SortField.EXPIRING, sort_order=SortOrder.ASC)
        )

        assert [item.hostname for item in items] == ["soon.test.local", "late.test.local", "pending.test.local"]
        assert items[0].days_until_expiration in (59, 60)
        assert items[2].has_pending_csr is True

    @pytest.mark.asyncio
    async def test_default_sort_newest_first(self, db_session, vault_session, ca_config):
        await request_csr(db_session, vault_session, "first.test.local")
        await request_csr(db_session, vault_session, "second.test.local")

        items = await certificate_state_engine.list_certificates(db_session)

        assert [item.hostname for item in items] == ["second.test.local", "first.test.local"]


class TestKeyExport:
    """Tests for private key downloads."""

    @pytest.mark.asyncio
    async def test_pending_key_export(self, db_session, vault_session, ca_config):
        csr_pem = await request_csr(db_session, vault_session, "web.test.local")

        key_pem = await certificate_state_engine.get_pending_private_key_pem(
            db_session, vault_session, "web.test.local"
        )

        private_key = certificate_engine.load_private_key(key_pem)
        csr = certificate_engine.load_csr(csr_pem)
        assert certificate_engine.public_keys_match(private_key, csr.public_key())

    @pytest.mark.asyncio
    async def test_export_requires_unlocked(self, db_session, vault_session, ca_config, root_ca):
        await issue(db_session, vault_session, root_ca, "web.test.local")

        with pytest.raises(KeyRequired):
            await certificate_state_engine.get_private_key_pem(db_session, VaultSession(), "web.test.local")

    @pytest.mark.asyncio
    async def test_pem_downloads(self, db_session, vault_session, ca_config, root_ca):
        csr_pem = await request_csr(db_session, vault_session, "web.test.local")
        assert await certificate_state_engine.get_csr_pem(db_session, "web.test.local") == csr_pem

        with pytest.raises(NotFound):
            await certificate_state_engine.get_certificate_pem(db_session, "web.test.local")
