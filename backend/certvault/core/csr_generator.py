"""CSR Generator.

Creates an RSA key pair and a PKCS#10 request for a hostname, seals the
private key immediately and stores the request either as a new pending
record or as the pending half of a renewal.
"""

import ipaddress
from dataclasses import replace

from sqlalchemy.ext.asyncio import AsyncSession

from certvault.core.certificate_engine import (
    ALLOWED_KEY_SIZES,
    SANEntry,
    SubjectInfo,
    certificate_engine,
)
from certvault.core.certificate_state import Certificate, Requested
from certvault.core.config_service import COUNTRY_CODE_RE, MAX_FIELD_LENGTH, config_service
from certvault.core.errors import Conflict, KeyRequired, NotFound, ReadOnly, ValidationError
from certvault.core.history import history_service
from certvault.core.logging import get_logger, log_operation
from certvault.core.vault import VaultSession
from certvault.database import commit_or_rollback
from certvault.models import CAConfig, CertificateRecord, HistoryEventType
from certvault.schemas.certificate import CSRRequest, CSRResponse, SANType

logger = get_logger(__name__)

DEFAULT_KEY_SIZE = 4096
MAX_COMMON_NAME_LENGTH = 64
MAX_DNS_NAME_LENGTH = 253


class CSRGenerator:
    """Generates requests and their sealed keys."""

    @log_operation("generate_csr")
    async def generate(self, db: AsyncSession, session: VaultSession, request: CSRRequest) -> CSRResponse:
        """Generate a CSR for ``request.hostname``.

        Raises:
            ValidationError: bad hostname, suffix, SAN, subject field or key size
            KeyRequired: the vault is locked
            Conflict: a record already exists and this is not a renewal
            NotFound: renewal requested for an unknown hostname
            ReadOnly: renewal requested on a read-only record
        """
        hostname = (request.hostname or "").strip()
        config = await self.validate_hostname(db, hostname, request.skip_suffix_validation)
        sans = self.build_sans(hostname, request)
        self.validate_subject(request)
        key_size = request.key_size or (config.default_key_size if config else DEFAULT_KEY_SIZE)
        if key_size not in ALLOWED_KEY_SIZES:
            raise ValidationError("Key size must be 2048, 3072 or 4096", field="key_size")

        if not session.is_unlocked:
            raise KeyRequired("Encryption key required to generate a CSR")

        async with session.lock:
            record = await db.get(CertificateRecord, hostname)
            if request.is_renewal:
                if record is None:
                    raise NotFound(f"Certificate not found: {hostname}", field="hostname")
                if record.read_only:
                    raise ReadOnly(f"Certificate {hostname} is read-only")
            elif record is not None:
                raise Conflict(f"Certificate already exists for hostname: {hostname}", field="hostname")

            result = certificate_engine.generate_csr(
                subject=self.build_subject(hostname, request, config),
                key_size=key_size,
                sans=sans,
            )
            sealed_key = session.seal(result.private_key_pem)
            note = request.note or None

            if request.is_renewal:
                current = Certificate.from_record(record)
                updated = replace(
                    current,
                    pending=Requested(csr_pem=result.csr_pem, encrypted_private_key=sealed_key, note=note),
                )
                updated.apply_to(record)
                event_type = HistoryEventType.CSR_REGENERATED
                message = f"CSR regenerated for renewal ({key_size}-bit key, {len(sans)} SANs)"
            else:
                db.add(CertificateRecord(
                    hostname=hostname,
                    pending_csr_pem=result.csr_pem,
                    pending_encrypted_private_key=sealed_key,
                    note=note,
                    read_only=False,
                ))
                event_type = HistoryEventType.CSR_GENERATED
                message = f"CSR generated ({key_size}-bit key, {len(sans)} SANs)"

            history_service.record(db, hostname, event_type, message)
            await commit_or_rollback(db, "store CSR")

        logger.info(
            "CSR generated",
            hostname=hostname,
            key_size=key_size,
            san_count=len(sans),
            is_renewal=request.is_renewal,
        )
        return CSRResponse(
            hostname=hostname,
            csr_pem=result.csr_pem,
            message="CSR generated successfully",
        )

    async def validate_hostname(
        self,
        db: AsyncSession,
        hostname: str,
        skip_suffix_validation: bool = False,
    ) -> CAConfig | None:
        """Check the hostname and return the CA configuration (if any)."""
        if not hostname:
            raise ValidationError("Hostname cannot be empty", field="hostname")
        if len(hostname) > MAX_COMMON_NAME_LENGTH:
            raise ValidationError(
                f"Hostname must not exceed {MAX_COMMON_NAME_LENGTH} characters",
                field="hostname",
            )
        self.check_dns_name(hostname, "hostname")

        if skip_suffix_validation:
            return await config_service.get(db)

        config = await config_service.require(db)
        if not hostname.endswith(config.hostname_suffix):
            raise ValidationError(
                f"Hostname must end with {config.hostname_suffix}",
                field="hostname",
            )
        return config

    def build_sans(self, hostname: str, request: CSRRequest) -> list[SANEntry]:
        """Hostname first, then the requested SANs without duplicates."""
        sans = [SANEntry(SANType.DNS, hostname)]
        for item in request.sans:
            value = (item.value or "").strip()
            if not value:
                continue
            if item.type == SANType.IP:
                try:
                    value = str(ipaddress.ip_address(value))
                except ValueError:
                    raise ValidationError(f"Invalid IP address in SANs: {value}", field="sans")
            else:
                self.check_dns_name(value, "sans")
            entry = SANEntry(item.type, value)
            if entry not in sans:
                sans.append(entry)
        return sans

    def check_dns_name(self, value: str, field: str) -> None:
        """DNS names must be ASCII (IDNs in their xn-- A-label form)."""
        if not value.isascii():
            raise ValidationError(
                f"{value} is not an ASCII name; use the xn-- (A-label) form",
                field=field,
            )
        if len(value) > MAX_DNS_NAME_LENGTH:
            raise ValidationError(
                f"DNS name must not exceed {MAX_DNS_NAME_LENGTH} characters",
                field=field,
            )

    def validate_subject(self, request: CSRRequest) -> None:
        """Explicit subject fields; omitted ones come from the validated CA defaults."""
        if request.country and not COUNTRY_CODE_RE.match(request.country):
            raise ValidationError("country must be a 2-letter uppercase ISO code", field="country")
        for field in ("organization", "organizational_unit", "city", "state"):
            value = getattr(request, field)
            if value and len(value) > MAX_FIELD_LENGTH:
                raise ValidationError(
                    f"{field} must not exceed {MAX_FIELD_LENGTH} characters",
                    field=field,
                )

    def build_subject(self, hostname: str, request: CSRRequest, config: CAConfig | None) -> SubjectInfo:
        """Request fields, falling back to the CA defaults."""
        def pick(value: str | None, default_attr: str) -> str | None:
            if value:
                return value
            return getattr(config, default_attr) if config else None

        return SubjectInfo(
            common_name=hostname,
            organization=pick(request.organization, "default_organization"),
            organizational_unit=pick(request.organizational_unit, "default_organizational_unit"),
            locality=pick(request.city, "default_city"),
            state=pick(request.state, "default_state"),
            country=pick(request.country, "default_country"),
        )


# Singleton instance
csr_generator = CSRGenerator()
