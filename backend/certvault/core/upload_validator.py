"""Upload/Import Validator.

``preview`` dry-runs an upload and reports whether the certificate fits
the pending request. ``import_direct`` brings in a certificate issued
elsewhere together with its private key, creating an active record with
no pending phase.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from certvault.core.certificate_engine import certificate_engine
from certvault.core.certificate_state import Certificate, Issued, utcnow
from certvault.core.config_service import config_service
from certvault.core.errors import (
    Conflict,
    DecryptFailed,
    InvalidFormat,
    KeyMismatch,
    KeyRequired,
    NotFound,
    ValidationError,
)
from certvault.core.history import history_service
from certvault.core.logging import get_logger, log_operation
from certvault.core.vault import VaultSession
from certvault.database import commit_or_rollback
from certvault.models import CertificateRecord, HistoryEventType
from certvault.schemas.certificate import CertificateUploadPreview, ImportRequest

logger = get_logger(__name__)


class UploadValidator:
    """Validates externally signed material before it reaches a record."""

    async def preview(
        self,
        db: AsyncSession,
        session: VaultSession,
        hostname: str,
        certificate_pem: str,
    ) -> CertificateUploadPreview:
        """Describe what ``upload`` would commit, without writing.

        ``csr_match`` is true when the certificate carries the pending CSR's
        public key and common name. ``key_match`` is true when the pending
        sealed key opens and matches the certificate; it is false whenever
        the vault is locked.
        """
        record = await db.get(CertificateRecord, hostname)
        if record is None:
            raise NotFound(f"Certificate not found: {hostname}", field="hostname")
        current = Certificate.from_record(record)
        if current.pending is None:
            raise ValidationError(f"No pending CSR for {hostname}", field="hostname")

        cert = certificate_engine.load_certificate(certificate_pem)
        csr = certificate_engine.load_csr(current.pending.csr_pem)
        info = certificate_engine.describe_certificate(cert)
        csr_subject = certificate_engine.extract_name(csr.subject)

        csr_match = (
            certificate_engine.public_keys_match(csr.public_key(), cert.public_key())
            and csr_subject.common_name == info.subject.common_name
        )

        key_match = False
        if session.is_unlocked:
            try:
                key_pem = session.open(current.pending.encrypted_private_key, hostname)
                private_key = certificate_engine.load_private_key(key_pem)
                key_match = certificate_engine.public_keys_match(private_key, cert.public_key())
            except (DecryptFailed, InvalidFormat) as e:
                logger.warning("Pending key not usable for preview", hostname=hostname, error=e.message)

        logger.info("Upload previewed", hostname=hostname, csr_match=csr_match, key_match=key_match)
        return CertificateUploadPreview(
            hostname=hostname,
            subject_cn=info.subject.common_name,
            issuer_cn=info.issuer.common_name,
            issuer_o=info.issuer.organization,
            not_before=info.not_before,
            not_after=info.not_after,
            sans=info.sans,
            key_size=info.key_size,
            csr_match=csr_match,
            key_match=key_match,
        )

    @log_operation("import_certificate")
    async def import_direct(
        self,
        db: AsyncSession,
        session: VaultSession,
        request: ImportRequest,
    ) -> Certificate:
        """Create an active record from a certificate and its private key.

        The hostname is the certificate's common name.

        Raises:
            InvalidFormat: certificate, key or chain does not parse
            KeyMismatch: the key is not the certificate's key
            ValidationError: no common name, or suffix rule violated
            Conflict: the hostname already exists
            KeyRequired: the vault is locked
        """
        cert = certificate_engine.load_certificate(request.certificate_pem)
        private_key = certificate_engine.load_private_key(request.private_key_pem)
        if not certificate_engine.public_keys_match(private_key, cert.public_key()):
            raise KeyMismatch("Private key does not match certificate", field="private_key_pem")

        info = certificate_engine.describe_certificate(cert)
        hostname = info.subject.common_name.strip()
        if not hostname:
            raise ValidationError("Certificate has no common name", field="certificate_pem")

        if not request.skip_suffix_validation:
            config = await config_service.require(db)
            if not hostname.endswith(config.hostname_suffix):
                raise ValidationError(
                    f"Hostname must end with {config.hostname_suffix}",
                    field="certificate_pem",
                )

        chain_pem = None
        if request.cert_chain_pem and request.cert_chain_pem.strip():
            chain = certificate_engine.load_certificates(request.cert_chain_pem)
            if not chain:
                raise InvalidFormat("Certificate chain contains no certificates", field="cert_chain_pem")
            chain_pem = request.cert_chain_pem.strip() + "\n"

        if not session.is_unlocked:
            raise KeyRequired("Encryption key required to import a certificate")

        async with session.lock:
            if await db.get(CertificateRecord, hostname) is not None:
                raise Conflict(f"Certificate already exists for hostname: {hostname}", field="hostname")

            sealed_key = session.seal(certificate_engine.private_key_to_pem(private_key))
            certificate = Certificate(
                hostname=hostname,
                active=Issued(
                    certificate_pem=info.pem,
                    encrypted_private_key=sealed_key,
                    expires_at=info.not_after,
                    chain_pem=chain_pem,
                ),
                pending=None,
                created_at=utcnow(),
                note=request.note or None,
            )
            db.add(certificate.apply_to(CertificateRecord()))
            history_service.record(
                db,
                hostname,
                HistoryEventType.CERTIFICATE_IMPORTED,
                f"Certificate imported (expires {info.not_after:%Y-%m-%d})",
            )
            await commit_or_rollback(db, "import certificate")

        logger.info("Certificate imported", hostname=hostname, has_chain=chain_pem is not None)
        return certificate


# Singleton instance
upload_validator = UploadValidator()
