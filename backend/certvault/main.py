"""CertVault - Main FastAPI Application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from certvault import __version__
from certvault.api import (
    backups_router,
    certificates_router,
    config_router,
    vault_router,
)
from certvault.api.common import reset_vault_session
from certvault.config import get_settings
from certvault.core.logging import RequestLoggingMiddleware, get_logger, setup_logging
from certvault.database import close_db, init_db

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging(json_output=settings.log_json, level=settings.log_level)
    await init_db()
    logger.info("CertVault started", environment=settings.environment)
    yield
    # Shutdown
    reset_vault_session()
    await close_db()


app = FastAPI(
    title="CertVault",
    description="Personal certificate authority manager with an encrypted key vault",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(vault_router)
app.include_router(config_router)
app.include_router(certificates_router)
app.include_router(backups_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "CertVault",
        "version": __version__,
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


def run():
    """Serve the API on the configured local address."""
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
