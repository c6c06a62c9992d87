"""X.509 primitives shared by the lifecycle engines.

Provides:
- RSA key pair and PKCS#10 request generation with typed SANs
- Certificate, CSR and private key parsing (PEM, DER for certificates)
- Subject / SAN / key-size extraction
- Public key comparison between certificates, requests and private keys

Nothing here touches storage or the vault; callers seal private key
bytes before they leave the operation.
"""

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.x509.oid import NameOID, ExtensionOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec, ed25519, padding

from certvault.core.errors import InvalidFormat, ValidationError
from certvault.schemas.certificate import SANType

ALLOWED_KEY_SIZES = (2048, 3072, 4096)

_PEM_CERT_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----",
    re.DOTALL,
)


@dataclass(frozen=True)
class SANEntry:
    """A typed Subject Alternative Name."""
    type: SANType
    value: str

    def to_general_name(self) -> x509.GeneralName:
        if self.type == SANType.IP:
            return x509.IPAddress(ipaddress.ip_address(self.value))
        return x509.DNSName(self.value)


@dataclass
class SubjectInfo:
    """Subject/Issuer distinguished name."""
    common_name: str
    organization: str | None = None
    organizational_unit: str | None = None
    country: str | None = None
    state: str | None = None
    locality: str | None = None


@dataclass
class CSRResult:
    """Result of CSR generation. ``private_key_pem`` must be sealed by the caller."""
    csr_pem: str
    private_key_pem: bytes
    subject: SubjectInfo
    key_size: int
    sans: list[SANEntry]


@dataclass
class CertificateInfo:
    """Parsed certificate information."""
    subject: SubjectInfo
    issuer: SubjectInfo
    serial_number: int
    not_before: datetime
    not_after: datetime
    key_size: int | None
    is_ca: bool
    self_signed: bool
    sans: list[str] = field(default_factory=list)
    pem: str = ""


@dataclass
class CSRInfo:
    """Parsed CSR information."""
    subject: SubjectInfo
    key_size: int | None
    sans: list[str]
    is_signature_valid: bool


class CertificateEngine:
    """Handles certificate, request and key parsing and generation."""

    def generate_csr(
        self,
        subject: SubjectInfo,
        key_size: int = 4096,
        sans: list[SANEntry] | None = None,
    ) -> CSRResult:
        """Generate an RSA key pair and a SHA-256 signed PKCS#10 request.

        Args:
            subject: Subject distinguished name (CN is the hostname)
            key_size: RSA modulus size, one of 2048/3072/4096
            sans: Typed Subject Alternative Names

        Returns:
            CSRResult with the request PEM and the unsealed private key PEM
        """
        if key_size not in ALLOWED_KEY_SIZES:
            raise ValidationError(
                f"Key size must be one of {', '.join(str(s) for s in ALLOWED_KEY_SIZES)}",
                field="key_size",
            )

        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

        # x509 rejects over-long names, bad country codes and non-ASCII DNS names
        sans = list(sans or [])
        try:
            csr_builder = x509.CertificateSigningRequestBuilder().subject_name(
                self.build_name(subject)
            )
            if sans:
                csr_builder = csr_builder.add_extension(
                    x509.SubjectAlternativeName([san.to_general_name() for san in sans]),
                    critical=False,
                )
            csr = csr_builder.sign(private_key, hashes.SHA256())
        except ValueError as e:
            raise ValidationError(f"Invalid CSR subject: {e}", field="subject")

        private_key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

        return CSRResult(
            csr_pem=csr.public_bytes(serialization.Encoding.PEM).decode("ascii"),
            private_key_pem=private_key_pem,
            subject=subject,
            key_size=key_size,
            sans=sans,
        )

    def build_name(self, subject: SubjectInfo) -> x509.Name:
        """Build an X.509 name, skipping empty attributes."""
        name_attributes = [x509.NameAttribute(NameOID.COMMON_NAME, subject.common_name)]
        if subject.organization:
            name_attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, subject.organization))
        if subject.organizational_unit:
            name_attributes.append(x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, subject.organizational_unit))
        if subject.locality:
            name_attributes.append(x509.NameAttribute(NameOID.LOCALITY_NAME, subject.locality))
        if subject.state:
            name_attributes.append(x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, subject.state))
        if subject.country:
            name_attributes.append(x509.NameAttribute(NameOID.COUNTRY_NAME, subject.country))
        return x509.Name(name_attributes)

    def parse_certificate(self, cert_data: bytes | str) -> CertificateInfo:
        """Parse a certificate and extract information."""
        cert = self.load_certificate(cert_data)
        return self.describe_certificate(cert)

    def describe_certificate(self, cert: x509.Certificate) -> CertificateInfo:
        is_ca = False
        try:
            basic_constraints = cert.extensions.get_extension_for_oid(
                ExtensionOID.BASIC_CONSTRAINTS
            )
            is_ca = basic_constraints.value.ca
        except x509.ExtensionNotFound:
            pass

        return CertificateInfo(
            subject=self.extract_name(cert.subject),
            issuer=self.extract_name(cert.issuer),
            serial_number=cert.serial_number,
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            key_size=self.key_size(cert.public_key()),
            is_ca=is_ca,
            self_signed=cert.issuer == cert.subject,
            sans=self._extract_sans(cert.extensions),
            pem=cert.public_bytes(serialization.Encoding.PEM).decode("ascii"),
        )

    def parse_csr(self, csr_data: bytes | str) -> CSRInfo:
        """Parse a CSR and extract information."""
        csr = self.load_csr(csr_data)
        return CSRInfo(
            subject=self.extract_name(csr.subject),
            key_size=self.key_size(csr.public_key()),
            sans=self._extract_sans(csr.extensions),
            is_signature_valid=csr.is_signature_valid,
        )

    def load_certificate(self, cert_data: bytes | str) -> x509.Certificate:
        """Load a certificate from PEM or DER format."""
        if isinstance(cert_data, str):
            cert_data = cert_data.encode()

        try:
            if b"-----BEGIN" in cert_data:
                return x509.load_pem_x509_certificate(cert_data)
            return x509.load_der_x509_certificate(cert_data)
        except ValueError as e:
            raise InvalidFormat(f"Failed to parse certificate: {e}", field="certificate_pem")

    def load_certificates(self, pem_data: str | None) -> list[x509.Certificate]:
        """Load every certificate in a concatenated PEM bundle."""
        if not pem_data:
            return []
        return [self.load_certificate(block) for block in _PEM_CERT_RE.findall(pem_data)]

    def load_csr(self, csr_data: bytes | str) -> x509.CertificateSigningRequest:
        if isinstance(csr_data, str):
            csr_data = csr_data.encode()

        try:
            if b"-----BEGIN" in csr_data:
                return x509.load_pem_x509_csr(csr_data)
            return x509.load_der_x509_csr(csr_data)
        except ValueError as e:
            raise InvalidFormat(f"Failed to parse CSR: {e}", field="csr_pem")

    def load_private_key(self, key_data: bytes | str) -> Any:
        """Load an unencrypted PKCS#1, SEC1 or PKCS#8 PEM private key."""
        if isinstance(key_data, str):
            key_data = key_data.encode()

        try:
            private_key = serialization.load_pem_private_key(key_data, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise InvalidFormat(f"Failed to parse private key: {e}", field="private_key_pem")

        if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise InvalidFormat("Private key must be RSA or EC", field="private_key_pem")
        return private_key

    def private_key_to_pem(self, private_key: Any) -> bytes:
        return private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_keys_match(self, left: Any, right: Any) -> bool:
        """Compare two keys (public, or private standing for its public half) by SPKI encoding."""
        return self._spki(left) == self._spki(right)

    def is_issued_by(self, cert: x509.Certificate, issuer: x509.Certificate) -> bool:
        """Name linkage plus a signature check where the key type allows it."""
        if cert.issuer != issuer.subject:
            return False
        try:
            cert.verify_directly_issued_by(issuer)
            return True
        except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
            return self._verify_signature(cert, issuer)

    def extract_name(self, name: x509.Name) -> SubjectInfo:
        """Extract SubjectInfo from X.509 Name."""
        def get_attr(oid) -> str | None:
            try:
                return name.get_attributes_for_oid(oid)[0].value
            except (IndexError, ValueError):
                return None

        return SubjectInfo(
            common_name=get_attr(NameOID.COMMON_NAME) or "",
            organization=get_attr(NameOID.ORGANIZATION_NAME),
            organizational_unit=get_attr(NameOID.ORGANIZATIONAL_UNIT_NAME),
            country=get_attr(NameOID.COUNTRY_NAME),
            state=get_attr(NameOID.STATE_OR_PROVINCE_NAME),
            locality=get_attr(NameOID.LOCALITY_NAME),
        )

    def key_size(self, public_key: Any) -> int | None:
        if isinstance(public_key, (rsa.RSAPublicKey, ec.EllipticCurvePublicKey)):
            return public_key.key_size
        return None

    # ==================== Helper Methods ====================

    def _spki(self, key: Any) -> bytes:
        if isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey)):
            key = key.public_key()
        return key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def _extract_sans(self, extensions: x509.Extensions) -> list[str]:
        sans = []
        try:
            san_ext = extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        except x509.ExtensionNotFound:
            return sans
        for name in san_ext.value:
            if isinstance(name, x509.DNSName):
                sans.append(name.value)
            elif isinstance(name, x509.IPAddress):
                sans.append(str(name.value))
        return sans

    def _verify_signature(self, cert: x509.Certificate, issuer: x509.Certificate) -> bool:
        issuer_public_key = issuer.public_key()
        try:
            if isinstance(issuer_public_key, rsa.RSAPublicKey):
                issuer_public_key.verify(
                    cert.signature,
                    cert.tbs_certificate_bytes,
                    padding.PKCS1v15(),
                    cert.signature_hash_algorithm,
                )
            elif isinstance(issuer_public_key, ec.EllipticCurvePublicKey):
                issuer_public_key.verify(
                    cert.signature,
                    cert.tbs_certificate_bytes,
                    ec.ECDSA(cert.signature_hash_algorithm),
                )
            elif isinstance(issuer_public_key, ed25519.Ed25519PublicKey):
                issuer_public_key.verify(cert.signature, cert.tbs_certificate_bytes)
            else:
                return False
        except (InvalidSignature, TypeError, ValueError, UnsupportedAlgorithm):
            return False
        return True


# Singleton instance
certificate_engine = CertificateEngine()
