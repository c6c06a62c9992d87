"""API routes."""

from certvault.api.vault import router as vault_router
from certvault.api.certificates import router as certificates_router
from certvault.api.backups import router as backups_router
from certvault.api.config import router as config_router

__all__ = [
    "vault_router",
    "certificates_router",
    "backups_router",
    "config_router",
]
