"""Certificate lifecycle schemas."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CertificateStatus(str, Enum):
    """Derived certificate status (never stored)."""
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRING = "expiring"
    EXPIRED = "expired"


class StatusFilter(str, Enum):
    """Status filter for listings."""
    ALL = "all"
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRING = "expiring"
    EXPIRED = "expired"


class SortField(str, Enum):
    CREATED = "created"
    EXPIRING = "expiring"
    HOSTNAME = "hostname"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class SANType(str, Enum):
    """Subject Alternative Name entry types."""
    DNS = "dns"
    IP = "ip"


class SANItem(BaseModel):
    """A typed Subject Alternative Name."""
    type: SANType = SANType.DNS
    value: str


class CSRRequest(BaseModel):
    """CSR generation request. Omitted subject fields fall back to CA defaults."""
    hostname: str
    sans: list[SANItem] = Field(default_factory=list)
    organization: str | None = None
    organizational_unit: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    key_size: int | None = Field(default=None, description="2048, 3072 or 4096")
    note: str | None = None
    is_renewal: bool = False
    skip_suffix_validation: bool = False


class CSRResponse(BaseModel):
    hostname: str
    csr_pem: str
    message: str


class ImportRequest(BaseModel):
    """Import of an externally issued certificate with its private key."""
    certificate_pem: str
    private_key_pem: str
    cert_chain_pem: str | None = None
    note: str | None = None
    skip_suffix_validation: bool = False


class UploadRequest(BaseModel):
    certificate_pem: str


class NoteUpdate(BaseModel):
    note: str | None = None


class ReadOnlyUpdate(BaseModel):
    read_only: bool


class CertificateFilter(BaseModel):
    status: StatusFilter = StatusFilter.ALL
    sort_by: SortField = SortField.CREATED
    sort_order: SortOrder = SortOrder.DESC


class CertificateListItem(BaseModel):
    hostname: str
    status: CertificateStatus
    sans: list[str] = Field(default_factory=list)
    key_size: int | None = None
    created_at: datetime
    expires_at: datetime | None = None
    days_until_expiration: int | None = None
    read_only: bool
    has_pending_csr: bool


class CertificateDetail(BaseModel):
    """Full view of one hostname.

    Subject fields describe the active certificate (or the CSR when the
    record is still pending); ``pending_*`` fields describe an outstanding
    renewal request.
    """
    hostname: str
    status: CertificateStatus
    certificate_pem: str | None = None
    pending_csr_pem: str | None = None
    chain_pem: str | None = None
    created_at: datetime
    expires_at: datetime | None = None
    days_until_expiration: int | None = None
    note: str | None = None
    pending_note: str | None = None
    read_only: bool
    is_renewing: bool = False

    sans: list[str] = Field(default_factory=list)
    organization: str | None = None
    organizational_unit: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    key_size: int | None = None

    pending_sans: list[str] = Field(default_factory=list)
    pending_organization: str | None = None
    pending_organizational_unit: str | None = None
    pending_city: str | None = None
    pending_state: str | None = None
    pending_country: str | None = None
    pending_key_size: int | None = None


class CertificateUploadPreview(BaseModel):
    """What an upload would commit, computed without writing."""
    hostname: str
    subject_cn: str
    issuer_cn: str
    issuer_o: str | None = None
    not_before: datetime
    not_after: datetime
    sans: list[str] = Field(default_factory=list)
    key_size: int | None = None
    csr_match: bool
    key_match: bool


class ChainCertificateInfo(BaseModel):
    subject_cn: str
    subject_o: str | None = None
    issuer_cn: str
    issuer_o: str | None = None
    not_before_timestamp: int
    not_after_timestamp: int
    serial_number: str
    cert_type: str  # leaf, intermediate, root
    depth: int
    is_ca: bool = False
    pem: str


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    hostname: str
    event_type: str
    message: str
    created_at: datetime
