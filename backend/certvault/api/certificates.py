"""Certificate lifecycle API routes.

CSR generation, signed certificate upload, direct import, listing,
per-hostname metadata, chain inspection, history and PEM downloads.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from certvault.api.common import get_vault_session, http_error
from certvault.core.certificate_state import certificate_state_engine
from certvault.core.chain_builder import chain_builder
from certvault.core.csr_generator import csr_generator
from certvault.core.errors import CertVaultError
from certvault.core.history import history_service
from certvault.core.upload_validator import upload_validator
from certvault.core.vault import VaultSession
from certvault.database import get_db
from certvault.schemas.certificate import (
    CertificateDetail,
    CertificateFilter,
    CertificateListItem,
    CertificateUploadPreview,
    ChainCertificateInfo,
    CSRRequest,
    CSRResponse,
    HistoryEntryResponse,
    ImportRequest,
    NoteUpdate,
    ReadOnlyUpdate,
    SortField,
    SortOrder,
    StatusFilter,
    UploadRequest,
)

router = APIRouter(prefix="/v1/certificates", tags=["certificates"])

PEM_MEDIA_TYPE = "application/x-pem-file"


# ============================================================================
# Collection
# ============================================================================

@router.get("", response_model=list[CertificateListItem])
async def list_certificates(
    db: Annotated[AsyncSession, Depends(get_db)],
    status_filter: Annotated[StatusFilter, Query(alias="status")] = StatusFilter.ALL,
    sort_by: SortField = SortField.CREATED,
    sort_order: SortOrder = SortOrder.DESC,
):
    """List certificates with status computed at request time."""
    try:
        return await certificate_state_engine.list_certificates(
            db,
            CertificateFilter(status=status_filter, sort_by=sort_by, sort_order=sort_order),
        )
    except CertVaultError as e:
        raise http_error(e)


@router.post("/csr", response_model=CSRResponse, status_code=status.HTTP_201_CREATED)
async def generate_csr(
    data: CSRRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Generate a key pair and CSR; the private key is sealed immediately.

    Set ``is_renewal`` to add a pending request to an existing record
    without touching its active certificate.
    """
    try:
        return await csr_generator.generate(db, session, data)
    except CertVaultError as e:
        raise http_error(e)


@router.post("/import", response_model=CertificateDetail, status_code=status.HTTP_201_CREATED)
async def import_certificate(
    data: ImportRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Import a certificate issued elsewhere together with its private key."""
    try:
        certificate = await upload_validator.import_direct(db, session, data)
        return await certificate_state_engine.get(db, certificate.hostname)
    except CertVaultError as e:
        raise http_error(e)


# ============================================================================
# Single certificate
# ============================================================================

@router.get("/{hostname}", response_model=CertificateDetail)
async def get_certificate(
    hostname: str,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        return await certificate_state_engine.get(db, hostname)
    except CertVaultError as e:
        raise http_error(e)


@router.delete("/{hostname}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_certificate(
    hostname: str,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        await certificate_state_engine.delete(db, hostname)
    except CertVaultError as e:
        raise http_error(e)


@router.post("/{hostname}/upload", response_model=CertificateDetail)
async def upload_certificate(
    hostname: str,
    data: UploadRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Promote the pending request using the signed certificate."""
    try:
        await certificate_state_engine.upload(db, session, hostname, data.certificate_pem)
        return await certificate_state_engine.get(db, hostname)
    except CertVaultError as e:
        raise http_error(e)


@router.post("/{hostname}/upload/preview", response_model=CertificateUploadPreview)
async def preview_certificate_upload(
    hostname: str,
    data: UploadRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Check a signed certificate against the pending request without storing it."""
    try:
        return await upload_validator.preview(db, session, hostname, data.certificate_pem)
    except CertVaultError as e:
        raise http_error(e)


@router.delete("/{hostname}/pending", response_model=CertificateDetail)
async def clear_pending_csr(
    hostname: str,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Cancel a renewal; the active certificate is untouched."""
    try:
        await certificate_state_engine.cancel_renewal(db, hostname)
        return await certificate_state_engine.get(db, hostname)
    except CertVaultError as e:
        raise http_error(e)


@router.put("/{hostname}/read-only", response_model=CertificateDetail)
async def set_read_only(
    hostname: str,
    data: ReadOnlyUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        await certificate_state_engine.set_read_only(db, hostname, data.read_only)
        return await certificate_state_engine.get(db, hostname)
    except CertVaultError as e:
        raise http_error(e)


@router.put("/{hostname}/note", response_model=CertificateDetail)
async def update_note(
    hostname: str,
    data: NoteUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        await certificate_state_engine.set_note(db, hostname, data.note)
        return await certificate_state_engine.get(db, hostname)
    except CertVaultError as e:
        raise http_error(e)


@router.put("/{hostname}/pending-note", response_model=CertificateDetail)
async def update_pending_note(
    hostname: str,
    data: NoteUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        await certificate_state_engine.set_pending_note(db, hostname, data.note)
        return await certificate_state_engine.get(db, hostname)
    except CertVaultError as e:
        raise http_error(e)


@router.get("/{hostname}/chain", response_model=list[ChainCertificateInfo])
async def get_certificate_chain(
    hostname: str,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Leaf to root, as far as locally held certificates allow."""
    try:
        return await chain_builder.build_chain(db, hostname)
    except CertVaultError as e:
        raise http_error(e)


@router.get("/{hostname}/history", response_model=list[HistoryEntryResponse])
async def get_certificate_history(
    hostname: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    limit: Annotated[int | None, Query(description="Maximum entries, newest first")] = None,
):
    try:
        entries = await history_service.list_entries(db, hostname, limit)
    except CertVaultError as e:
        raise http_error(e)
    return [HistoryEntryResponse.model_validate(entry) for entry in entries]


# ============================================================================
# Downloads
# ============================================================================

@router.get("/{hostname}/csr.pem", response_class=PlainTextResponse)
async def download_csr(
    hostname: str,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        return PlainTextResponse(await certificate_state_engine.get_csr_pem(db, hostname), media_type=PEM_MEDIA_TYPE)
    except CertVaultError as e:
        raise http_error(e)


@router.get("/{hostname}/certificate.pem", response_class=PlainTextResponse)
async def download_certificate(
    hostname: str,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        return PlainTextResponse(
            await certificate_state_engine.get_certificate_pem(db, hostname),
            media_type=PEM_MEDIA_TYPE,
        )
    except CertVaultError as e:
        raise http_error(e)


@router.get("/{hostname}/chain.pem", response_class=PlainTextResponse)
async def download_chain(
    hostname: str,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        return PlainTextResponse(await chain_builder.chain_pem(db, hostname), media_type=PEM_MEDIA_TYPE)
    except CertVaultError as e:
        raise http_error(e)


@router.get("/{hostname}/private-key.pem", response_class=PlainTextResponse)
async def download_private_key(
    hostname: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Decrypted private key of the active certificate (vault must be unlocked)."""
    try:
        return PlainTextResponse(
            await certificate_state_engine.get_private_key_pem(db, session, hostname),
            media_type=PEM_MEDIA_TYPE,
        )
    except CertVaultError as e:
        raise http_error(e)


@router.get("/{hostname}/pending-private-key.pem", response_class=PlainTextResponse)
async def download_pending_private_key(
    hostname: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    try:
        return PlainTextResponse(
            await certificate_state_engine.get_pending_private_key_pem(db, session, hostname),
            media_type=PEM_MEDIA_TYPE,
        )
    except CertVaultError as e:
        raise http_error(e)
