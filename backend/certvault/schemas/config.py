"""CA configuration schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SetupRequest(BaseModel):
    """Initial CA configuration."""
    owner_email: str = Field(..., description="Contact address of the CA operator")
    ca_name: str = Field(..., description="Display name of the CA")
    hostname_suffix: str = Field(..., description="Suffix every hostname must end with, e.g. .lab.local")
    validity_period_days: int = Field(default=365, description="Requested validity of issued certificates")
    default_organization: str
    default_organizational_unit: str | None = None
    default_city: str
    default_state: str
    default_country: str = Field(..., description="ISO 3166 two-letter code")
    default_key_size: int = Field(default=4096, description="2048, 3072 or 4096")
    ca_certificate_pem: str | None = Field(default=None, description="Root CA certificate (PEM)")


class UpdateConfigRequest(SetupRequest):
    """Full replacement of the CA configuration."""
    pass


class ConfigResponse(BaseModel):
    """Stored CA configuration."""
    model_config = ConfigDict(from_attributes=True)

    owner_email: str
    ca_name: str
    hostname_suffix: str
    validity_period_days: int
    default_organization: str
    default_organizational_unit: str | None = None
    default_city: str
    default_state: str
    default_country: str
    default_key_size: int
    ca_certificate_pem: str | None = None
    is_configured: bool
    created_at: datetime
    last_modified: datetime


class SetupDefaults(BaseModel):
    """Pre-filled values for the setup form."""
    validity_period_days: int = 365
    default_key_size: int = 4096
    default_country: str = "FR"
