"""Shared API dependencies and error mapping."""

from fastapi import HTTPException, status

from certvault.core.errors import (
    CertVaultError,
    Conflict,
    DecryptFailed,
    InvalidFormat,
    KeyMismatch,
    KeyRequired,
    NotFound,
    PartialRotationError,
    ReadOnly,
    StorageError,
    ValidationError,
    WrongPassword,
)
from certvault.core.logging import get_logger
from certvault.core.vault import VaultSession

logger = get_logger(__name__)

# Most specific first; VaultLocked resolves through KeyRequired
ERROR_STATUS_CODES: list[tuple[type[CertVaultError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (KeyRequired, status.HTTP_423_LOCKED),
    (WrongPassword, status.HTTP_401_UNAUTHORIZED),
    (DecryptFailed, 422),
    (Conflict, status.HTTP_409_CONFLICT),
    (KeyMismatch, 422),
    (InvalidFormat, status.HTTP_400_BAD_REQUEST),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (ReadOnly, status.HTTP_403_FORBIDDEN),
    (PartialRotationError, status.HTTP_409_CONFLICT),
    (StorageError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]

# The unlocked master key lives for the process
_vault_session = VaultSession()


def get_vault_session() -> VaultSession:
    """Dependency for the process-wide vault session."""
    return _vault_session


def reset_vault_session() -> VaultSession:
    """Lock and replace the process session (used on shutdown and in tests)."""
    global _vault_session
    _vault_session.close()
    _vault_session = VaultSession()
    return _vault_session


def http_error(error: CertVaultError) -> HTTPException:
    """Translate an engine error into an HTTPException with a structured body."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error("Request failed", code=error.code, error=error.message)
    return HTTPException(status_code=status_code, detail=error.to_dict())
