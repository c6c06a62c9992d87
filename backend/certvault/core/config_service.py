"""CA configuration service.

The CA configuration is a singleton row created once at setup and
replaced wholesale by updates. It supplies the hostname suffix rule and
the subject defaults used for new requests.
"""

import re

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from certvault.core.certificate_engine import ALLOWED_KEY_SIZES, certificate_engine
from certvault.core.errors import Conflict, ValidationError
from certvault.core.logging import get_logger
from certvault.core.vault import VaultSession
from certvault.database import commit_or_rollback
from certvault.models import (
    CAConfig,
    CONFIG_ROW_ID,
    CertificateRecord,
    HistoryEntry,
    SecurityKey,
)
from certvault.schemas.config import SetupDefaults, SetupRequest, UpdateConfigRequest

logger = get_logger(__name__)

COUNTRY_CODE_RE = re.compile(r"^[A-Z]{2}$")
HOSTNAME_SUFFIX_RE = re.compile(
    r"^\.([a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?\.)*[a-zA-Z]{2,}$"
)
EMAIL_RE = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")

MAX_FIELD_LENGTH = 255
MAX_VALIDITY_DAYS = 3650

CONFIG_FIELDS = (
    "owner_email",
    "ca_name",
    "hostname_suffix",
    "validity_period_days",
    "default_organization",
    "default_organizational_unit",
    "default_city",
    "default_state",
    "default_country",
    "default_key_size",
    "ca_certificate_pem",
)


class ConfigService:
    """Reads, validates and writes the CA configuration."""

    async def get(self, db: AsyncSession) -> CAConfig | None:
        result = await db.execute(select(CAConfig).where(CAConfig.id == CONFIG_ROW_ID))
        return result.scalar_one_or_none()

    async def require(self, db: AsyncSession) -> CAConfig:
        config = await self.get(db)
        if config is None or not config.is_configured:
            raise ValidationError("CA is not configured; complete setup first", field="config")
        return config

    async def is_configured(self, db: AsyncSession) -> bool:
        config = await self.get(db)
        return config is not None and config.is_configured

    def defaults(self) -> SetupDefaults:
        return SetupDefaults()

    def validate(self, request: SetupRequest) -> None:
        """Field-by-field validation; the first failure wins."""
        self._validate_email(request.owner_email)
        self._validate_required(request.ca_name, "ca_name")
        self.validate_hostname_suffix(request.hostname_suffix)

        if not 1 <= request.validity_period_days <= MAX_VALIDITY_DAYS:
            raise ValidationError(
                f"validity_period_days must be between 1 and {MAX_VALIDITY_DAYS}",
                field="validity_period_days",
            )

        self._validate_required(request.default_organization, "default_organization")
        if request.default_organizational_unit and len(request.default_organizational_unit) > MAX_FIELD_LENGTH:
            raise ValidationError(
                f"default_organizational_unit must not exceed {MAX_FIELD_LENGTH} characters",
                field="default_organizational_unit",
            )
        self._validate_required(request.default_city, "default_city")
        self._validate_required(request.default_state, "default_state")

        if not COUNTRY_CODE_RE.match(request.default_country or ""):
            raise ValidationError(
                "default_country must be a 2-letter uppercase ISO code",
                field="default_country",
            )

        if request.default_key_size not in ALLOWED_KEY_SIZES:
            raise ValidationError(
                "default_key_size must be 2048, 3072 or 4096",
                field="default_key_size",
            )

        if request.ca_certificate_pem:
            certificate_engine.load_certificate(request.ca_certificate_pem)

    def validate_hostname_suffix(self, suffix: str) -> None:
        if not suffix:
            raise ValidationError("hostname_suffix is required", field="hostname_suffix")
        if not suffix.startswith("."):
            raise ValidationError("hostname_suffix must start with a dot", field="hostname_suffix")
        if not HOSTNAME_SUFFIX_RE.match(suffix):
            raise ValidationError(
                "hostname_suffix must be a valid domain suffix (e.g. .example.com)",
                field="hostname_suffix",
            )

    async def setup(self, db: AsyncSession, request: SetupRequest) -> CAConfig:
        """Create the configuration; a second setup is a Conflict."""
        self.validate(request)
        if await self.get(db) is not None:
            raise Conflict("CA is already configured", field="config")

        config = CAConfig(id=CONFIG_ROW_ID, is_configured=True)
        self._apply(config, request.model_dump())
        db.add(config)
        await commit_or_rollback(db, "create configuration")

        logger.info(
            "CA configured",
            ca_name=config.ca_name,
            hostname_suffix=config.hostname_suffix,
        )
        return config

    async def update(self, db: AsyncSession, request: UpdateConfigRequest) -> CAConfig:
        self.validate(request)
        config = await self.require(db)
        self._apply(config, request.model_dump())
        await commit_or_rollback(db, "update configuration")
        logger.info("CA configuration updated", ca_name=config.ca_name)
        return config

    def stage_replacement(self, db: AsyncSession, existing: CAConfig | None, values: dict) -> CAConfig:
        """Stage config values from a backup without committing."""
        config = existing or CAConfig(id=CONFIG_ROW_ID)
        self._apply(config, values)
        config.is_configured = True
        if existing is None:
            db.add(config)
        return config

    async def reset_database(self, db: AsyncSession, session: VaultSession) -> None:
        """Delete every record, including history and the wrapped master key."""
        for model in (CertificateRecord, HistoryEntry, SecurityKey, CAConfig):
            await db.execute(delete(model))
        await commit_or_rollback(db, "reset database")
        session.close()
        logger.warning("Database reset")

    # ==================== Helper Methods ====================

    def _apply(self, config: CAConfig, values: dict) -> None:
        for name in CONFIG_FIELDS:
            if name in values:
                setattr(config, name, values[name])
        if not config.default_organizational_unit:
            config.default_organizational_unit = None

    def _validate_required(self, value: str | None, field: str) -> None:
        if not value or not value.strip():
            raise ValidationError(f"{field} is required", field=field)
        if len(value) > MAX_FIELD_LENGTH:
            raise ValidationError(
                f"{field} must not exceed {MAX_FIELD_LENGTH} characters",
                field=field,
            )

    def _validate_email(self, email: str | None) -> None:
        self._validate_required(email, "owner_email")
        if not EMAIL_RE.match(email):
            raise ValidationError("owner_email must be a valid email address", field="owner_email")


# Singleton instance
config_service = ConfigService()
