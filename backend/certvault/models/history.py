"""Certificate history model (append-only)."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import String, Text, Integer
from sqlalchemy.orm import Mapped, mapped_column

from certvault.database import Base, UTCDateTime


class HistoryEventType(str, Enum):
    """Lifecycle events recorded per hostname."""
    CSR_GENERATED = "csr_generated"
    CSR_REGENERATED = "csr_regenerated"
    CERTIFICATE_UPLOADED = "certificate_uploaded"
    CERTIFICATE_IMPORTED = "certificate_imported"
    CERTIFICATE_RESTORED = "certificate_restored"
    CERTIFICATE_DELETED = "certificate_deleted"
    RENEWAL_CANCELLED = "renewal_cancelled"
    READONLY_ENABLED = "readonly_enabled"
    READONLY_DISABLED = "readonly_disabled"


class HistoryEntry(Base):
    """Immutable audit entry.

    Not tied to the certificates table by a foreign key: entries outlive
    the record they describe and only a full reset removes them.
    """

    __tablename__ = "certificate_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hostname: Mapped[str] = mapped_column(String(253), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(timezone.utc), index=True
    )

    def __repr__(self) -> str:
        return f"<HistoryEntry {self.hostname} {self.event_type}>"
