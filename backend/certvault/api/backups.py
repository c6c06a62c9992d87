"""Backup API routes.

Export, validation, full restore, selective import and local backup files.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from certvault.api.common import get_vault_session, http_error
from certvault.core.backup import backup_service
from certvault.core.errors import CertVaultError
from certvault.core.vault import VaultSession
from certvault.database import get_db
from certvault.schemas.backup import (
    BackupData,
    BackupValidationResult,
    CertImportResult,
    ImportSubsetRequest,
    LocalBackupInfo,
    RestoreRequest,
    ValidateBackupRequest,
)

router = APIRouter(prefix="/v1/backups", tags=["backups"])


@router.get("/export", response_model=BackupData, response_model_exclude_none=True)
async def export_backup(
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
    include_raw_key: Annotated[bool, Query(description="Embed the encryption key for self-contained transfer")] = False,
):
    try:
        return await backup_service.export(db, session, include_raw_key=include_raw_key)
    except CertVaultError as e:
        raise http_error(e)


@router.post("/validate", response_model=BackupValidationResult)
async def validate_backup(data: ValidateBackupRequest):
    """Structural check of a bundle; nothing is imported."""
    return backup_service.validate(data.bundle)


@router.post("/restore")
async def restore_backup(
    data: RestoreRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Replace configuration and all certificates with the bundle's contents."""
    try:
        restored = await backup_service.restore(db, session, data.bundle)
    except CertVaultError as e:
        raise http_error(e)
    return {"restored": restored}


@router.post("/import", response_model=CertImportResult)
async def import_from_backup(
    data: ImportSubsetRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Merge selected certificates from a bundle sealed under another password."""
    try:
        return await backup_service.import_subset(
            db, session, data.bundle, data.password, hostnames=data.hostnames
        )
    except CertVaultError as e:
        raise http_error(e)


# ============================================================================
# Local backups
# ============================================================================

@router.get("/local", response_model=list[LocalBackupInfo])
async def list_local_backups():
    try:
        return backup_service.list_local_backups()
    except CertVaultError as e:
        raise http_error(e)


@router.post("/local", response_model=LocalBackupInfo, status_code=status.HTTP_201_CREATED)
async def create_local_backup(
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    try:
        return await backup_service.create_local_backup(db, session)
    except CertVaultError as e:
        raise http_error(e)


@router.post("/local/{filename}/restore")
async def restore_local_backup(
    filename: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    try:
        restored = await backup_service.restore_local_backup(db, session, filename)
    except CertVaultError as e:
        raise http_error(e)
    return {"restored": restored}


@router.delete("/local/{filename}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_local_backup(filename: str):
    try:
        backup_service.delete_local_backup(filename)
    except CertVaultError as e:
        raise http_error(e)
