"""Vault API routes.

Unlock, lock, status, encryption key rotation and enrolled passwords
for the process session.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from certvault.api.common import get_vault_session, http_error
from certvault.core.errors import CertVaultError
from certvault.core.vault import VaultSession, key_vault
from certvault.database import get_db
from certvault.schemas.vault import (
    ChangeKeyRequest,
    EnrollPasswordRequest,
    KeyValidationResponse,
    SecurityKeyResponse,
    UnlockRequest,
    VaultStatusResponse,
)

router = APIRouter(prefix="/v1/vault", tags=["vault"])


@router.get("/status", response_model=VaultStatusResponse)
async def get_status(
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Report whether the vault is initialized and unlocked."""
    vault_status = await key_vault.status(db, session)
    return VaultStatusResponse(
        initialized=vault_status.initialized,
        unlocked=vault_status.unlocked,
        failed_hostnames=vault_status.failed_hostnames,
    )


@router.post("/unlock", response_model=KeyValidationResponse)
async def provide_encryption_key(
    data: UnlockRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Provide the encryption key.

    The first call initializes the vault. Later calls verify the key;
    hostnames whose sealed keys cannot be opened are listed but do not
    prevent the unlock.
    """
    try:
        result = await key_vault.unlock(db, session, data.password)
    except CertVaultError as e:
        raise http_error(e)
    return KeyValidationResponse(valid=result.valid, failed_hostnames=result.failed_hostnames)


@router.post("/lock", status_code=status.HTTP_204_NO_CONTENT)
async def lock(session: Annotated[VaultSession, Depends(get_vault_session)]):
    """Discard the master key from memory."""
    key_vault.lock(session)


@router.post("/rotate", status_code=status.HTTP_204_NO_CONTENT)
async def change_encryption_key(
    data: ChangeKeyRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Re-seal every private key under a new encryption key (all or nothing)."""
    try:
        await key_vault.rotate(db, session, data.new_password)
    except CertVaultError as e:
        raise http_error(e)


@router.get("/keys", response_model=list[SecurityKeyResponse])
async def list_security_keys(db: Annotated[AsyncSession, Depends(get_db)]):
    """List the passwords enrolled to unlock the vault."""
    return await key_vault.list_keys(db)


@router.post("/keys", response_model=SecurityKeyResponse, status_code=status.HTTP_201_CREATED)
async def enroll_password(
    data: EnrollPasswordRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Wrap the unlocked master key under another password."""
    try:
        return await key_vault.enroll_password(db, session, data.password, data.label)
    except CertVaultError as e:
        raise http_error(e)


@router.delete("/keys/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_security_key(
    key_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Remove an enrolled password. The last one cannot be removed."""
    try:
        await key_vault.remove_key(db, key_id)
    except CertVaultError as e:
        raise http_error(e)
