"""Wrapped master key model."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import String, LargeBinary, Integer
from sqlalchemy.orm import Mapped, mapped_column

from certvault.database import Base, JSONType, UTCDateTime

DEFAULT_LABEL = "Password"


class SecurityKeyMethod(str, Enum):
    """How the master key is wrapped."""
    PASSWORD = "password"


class SecurityKey(Base):
    """Master key wrapped under one password-derived key.

    Several rows may wrap the same master key, one per enrolled password.

    ``metadata_`` holds the KDF salt and parameters; the AES-GCM tag on
    ``wrapped_master_key`` is the check value verified on unlock.
    """

    __tablename__ = "security_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    method: Mapped[str] = mapped_column(String(32), default=SecurityKeyMethod.PASSWORD.value, nullable=False)
    label: Mapped[str] = mapped_column(String(128), default=DEFAULT_LABEL, nullable=False)
    wrapped_master_key: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(timezone.utc)
    )
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<SecurityKey {self.method} {self.id}>"
