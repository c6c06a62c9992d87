"""Chain Builder.

Walks from a leaf certificate towards its root using only certificates
already held locally: the chain stored with the record and the managed
CA certificate from the configuration. The result is best effort. An
unreachable issuer ends the walk without raising.
"""

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from sqlalchemy.ext.asyncio import AsyncSession

from certvault.core.certificate_engine import certificate_engine
from certvault.core.certificate_state import Certificate
from certvault.core.config_service import config_service
from certvault.core.errors import NotFound
from certvault.core.logging import get_logger
from certvault.models import CertificateRecord
from certvault.schemas.certificate import ChainCertificateInfo

logger = get_logger(__name__)

MAX_CHAIN_DEPTH = 10


class ChainBuilder:
    """Reconstructs and classifies leaf -> root paths."""

    async def build_chain(self, db: AsyncSession, hostname: str) -> list[ChainCertificateInfo]:
        """Ordered chain for ``hostname``; empty for pending-only records."""
        chain = await self._resolve(db, hostname)
        return self.describe(chain)

    async def chain_pem(self, db: AsyncSession, hostname: str) -> str:
        """Concatenated PEM of the resolved chain, leaf first."""
        chain = await self._resolve(db, hostname)
        if not chain:
            raise NotFound(f"No certificate for {hostname}", field="hostname")
        return "".join(
            cert.public_bytes(serialization.Encoding.PEM).decode("ascii") for cert in chain
        )

    def walk(self, leaf: x509.Certificate, candidates: list[x509.Certificate]) -> list[x509.Certificate]:
        """Follow issuer links from ``leaf`` through ``candidates``."""
        chain = [leaf]
        current = leaf
        while len(chain) < MAX_CHAIN_DEPTH:
            if current.issuer == current.subject:
                break
            issuer = next(
                (
                    candidate for candidate in candidates
                    if candidate not in chain and certificate_engine.is_issued_by(current, candidate)
                ),
                None,
            )
            if issuer is None:
                break
            chain.append(issuer)
            current = issuer
        return chain

    def describe(self, chain: list[x509.Certificate]) -> list[ChainCertificateInfo]:
        """Type each entry by depth: leaf, intermediate(s), then root if self-signed."""
        infos = []
        last = len(chain) - 1
        for depth, cert in enumerate(chain):
            info = certificate_engine.describe_certificate(cert)
            if depth == 0 and not (last == 0 and info.self_signed):
                cert_type = "leaf"
            elif depth == last and info.self_signed:
                cert_type = "root"
            else:
                cert_type = "intermediate"

            infos.append(ChainCertificateInfo(
                subject_cn=info.subject.common_name,
                subject_o=info.subject.organization,
                issuer_cn=info.issuer.common_name,
                issuer_o=info.issuer.organization,
                not_before_timestamp=int(info.not_before.timestamp()),
                not_after_timestamp=int(info.not_after.timestamp()),
                serial_number=format(info.serial_number, "X"),
                cert_type=cert_type,
                depth=depth,
                is_ca=info.is_ca,
                pem=info.pem,
            ))
        return infos

    # ==================== Helper Methods ====================

    async def _resolve(self, db: AsyncSession, hostname: str) -> list[x509.Certificate]:
        record = await db.get(CertificateRecord, hostname)
        if record is None:
            raise NotFound(f"Certificate not found: {hostname}", field="hostname")
        certificate = Certificate.from_record(record)
        if certificate.active is None:
            return []

        leaf = certificate_engine.load_certificate(certificate.active.certificate_pem)
        candidates = certificate_engine.load_certificates(certificate.active.chain_pem)
        config = await config_service.get(db)
        if config is not None and config.ca_certificate_pem:
            candidates.extend(certificate_engine.load_certificates(config.ca_certificate_pem))

        chain = self.walk(leaf, candidates)
        if chain[-1].issuer != chain[-1].subject:
            logger.debug("Chain incomplete", hostname=hostname, length=len(chain))
        return chain


# Singleton instance
chain_builder = ChainBuilder()
