"""Vault schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class UnlockRequest(BaseModel):
    password: str = Field(..., description="Encryption key (at least 16 characters on first use)")


class ChangeKeyRequest(BaseModel):
    new_password: str = Field(..., description="New encryption key")


class KeyValidationResponse(BaseModel):
    """Result of providing the encryption key."""
    valid: bool
    failed_hostnames: list[str] = Field(default_factory=list)


class VaultStatusResponse(BaseModel):
    initialized: bool
    unlocked: bool
    failed_hostnames: list[str] = Field(default_factory=list)


class EnrollPasswordRequest(BaseModel):
    """Another password for the same master key."""
    password: str = Field(..., description="Additional encryption key (at least 16 characters)")
    label: str | None = Field(default=None, max_length=128, description="Display name, defaults to 'Password'")


class SecurityKeyResponse(BaseModel):
    """An enrolled unlock method; the wrapped key itself is never returned."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    method: str
    label: str
    created_at: datetime
    last_used_at: datetime | None = None
