"""CA configuration model (singleton row)."""

from datetime import datetime, timezone

from sqlalchemy import String, Text, Integer, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from certvault.database import Base, UTCDateTime

CONFIG_ROW_ID = 1


class CAConfig(Base):
    """Identity and certificate defaults of the managed CA."""

    __tablename__ = "ca_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=CONFIG_ROW_ID)
    owner_email: Mapped[str] = mapped_column(String(254), nullable=False)
    ca_name: Mapped[str] = mapped_column(String(256), nullable=False)
    hostname_suffix: Mapped[str] = mapped_column(String(253), nullable=False)
    validity_period_days: Mapped[int] = mapped_column(Integer, default=365, nullable=False)

    default_organization: Mapped[str] = mapped_column(String(256), nullable=False)
    default_organizational_unit: Mapped[str | None] = mapped_column(String(256), nullable=True)
    default_city: Mapped[str] = mapped_column(String(128), nullable=False)
    default_state: Mapped[str] = mapped_column(String(128), nullable=False)
    default_country: Mapped[str] = mapped_column(String(2), nullable=False)
    default_key_size: Mapped[int] = mapped_column(Integer, default=4096, nullable=False)

    # Root certificate of the managed CA, used to complete chains locally
    ca_certificate_pem: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_configured: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(timezone.utc)
    )
    last_modified: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<CAConfig {self.ca_name}>"
