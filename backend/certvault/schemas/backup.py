"""Backup bundle schemas."""

from pydantic import BaseModel, Field


class BackupCertificate(BaseModel):
    """One certificate record; sealed blobs are base64 and never decrypted on export."""
    hostname: str
    certificate_pem: str | None = None
    encrypted_private_key: str | None = None
    chain_pem: str | None = None
    pending_csr_pem: str | None = None
    pending_encrypted_private_key: str | None = None
    created_at: int
    expires_at: int | None = None
    note: str | None = None
    pending_note: str | None = None
    read_only: bool = False


class BackupConfig(BaseModel):
    owner_email: str
    ca_name: str
    hostname_suffix: str
    validity_period_days: int = 365
    default_organization: str
    default_organizational_unit: str | None = None
    default_city: str
    default_state: str
    default_country: str
    default_key_size: int = 4096
    ca_certificate_pem: str | None = None


class BackupVault(BaseModel):
    """Wrapped master key and KDF parameters of the exporting vault."""
    wrapped_master_key: str
    salt: str
    argon2_memory: int
    argon2_iterations: int
    argon2_parallelism: int
    key_len: int = 32


class BackupData(BaseModel):
    """Versioned snapshot of the whole CA."""
    version: str
    exported_at: int
    encryption_key: str | None = None
    vault: BackupVault | None = None
    config: BackupConfig | None = None
    certificates: list[BackupCertificate] = Field(default_factory=list)


class BackupValidationResult(BaseModel):
    valid: bool
    version: str | None = None
    certificate_count: int = 0
    has_encrypted_keys: bool = False
    has_encryption_key: bool = False
    exported_at: int | None = None
    errors: list[str] = Field(default_factory=list)


class RestoreRequest(BaseModel):
    bundle: dict


class ValidateBackupRequest(BaseModel):
    bundle: dict


class ImportSubsetRequest(BaseModel):
    """Merge selected hostnames from a bundle sealed under another password."""
    bundle: dict
    password: str
    hostnames: list[str] | None = None


class CertImportResult(BaseModel):
    imported: int = 0
    skipped: int = 0
    conflicts: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class LocalBackupInfo(BaseModel):
    filename: str
    type: str  # auto, manual
    timestamp: int
    size: int
    certificate_count: int
    ca_name: str | None = None
