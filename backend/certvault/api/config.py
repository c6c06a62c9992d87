"""CA configuration API routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from certvault.api.common import get_vault_session, http_error
from certvault.core.config_service import config_service
from certvault.core.errors import CertVaultError, NotFound
from certvault.core.vault import VaultSession
from certvault.database import get_db
from certvault.schemas.config import (
    ConfigResponse,
    SetupDefaults,
    SetupRequest,
    UpdateConfigRequest,
)

router = APIRouter(prefix="/v1/config", tags=["config"])


@router.get("", response_model=ConfigResponse)
async def get_config(db: Annotated[AsyncSession, Depends(get_db)]):
    config = await config_service.get(db)
    if config is None:
        raise http_error(NotFound("CA is not configured", field="config"))
    return ConfigResponse.model_validate(config)


@router.get("/defaults", response_model=SetupDefaults)
async def get_setup_defaults():
    """Suggested values for the setup form."""
    return config_service.defaults()


@router.get("/configured")
async def is_configured(db: Annotated[AsyncSession, Depends(get_db)]):
    return {"configured": await config_service.is_configured(db)}


@router.post("/setup", response_model=ConfigResponse, status_code=status.HTTP_201_CREATED)
async def setup(
    data: SetupRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        config = await config_service.setup(db, data)
    except CertVaultError as e:
        raise http_error(e)
    return ConfigResponse.model_validate(config)


@router.put("", response_model=ConfigResponse)
async def update_config(
    data: UpdateConfigRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        config = await config_service.update(db, data)
    except CertVaultError as e:
        raise http_error(e)
    return ConfigResponse.model_validate(config)


@router.post("/reset", status_code=status.HTTP_204_NO_CONTENT)
async def reset_database(
    db: Annotated[AsyncSession, Depends(get_db)],
    session: Annotated[VaultSession, Depends(get_vault_session)],
):
    """Delete every record, the history and the wrapped master key."""
    try:
        await config_service.reset_database(db, session)
    except CertVaultError as e:
        raise http_error(e)
