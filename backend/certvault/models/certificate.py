"""Certificate record model.

One row per hostname. The active and pending material share the row in
flattened columns; ``certvault.core.certificate_state`` lifts a row into a
tagged ``Certificate`` value before any state logic runs.
"""

from datetime import datetime, timezone

from sqlalchemy import String, Text, Boolean, LargeBinary
from sqlalchemy.orm import Mapped, mapped_column

from certvault.database import Base, UTCDateTime


class CertificateRecord(Base):
    """Persisted certificate and sealed key material for one hostname."""

    __tablename__ = "certificates"

    hostname: Mapped[str] = mapped_column(String(253), primary_key=True)

    # Active material
    certificate_pem: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_private_key: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    chain_pem: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)

    # Outstanding request (initial issuance or renewal)
    pending_csr_pem: Mapped[str | None] = mapped_column(Text, nullable=True)
    pending_encrypted_private_key: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    pending_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    read_only: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(timezone.utc), index=True
    )
    last_modified: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<CertificateRecord {self.hostname}>"
