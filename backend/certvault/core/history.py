"""Append-only certificate history."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from certvault.config import get_settings
from certvault.core.errors import ValidationError
from certvault.core.logging import get_logger
from certvault.models import HistoryEntry, HistoryEventType

logger = get_logger(__name__)


@dataclass
class HistoryRecord:
    """A history entry as returned to callers."""
    id: int
    hostname: str
    event_type: str
    message: str
    created_at: datetime


class HistoryService:
    """Writes and reads the per-hostname audit trail.

    ``record`` only stages the entry on the caller's session so it commits
    together with the mutation it describes.
    """

    def record(
        self,
        db: AsyncSession,
        hostname: str,
        event_type: HistoryEventType,
        message: str,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            hostname=hostname,
            event_type=event_type.value,
            message=message,
        )
        db.add(entry)
        logger.debug("History event staged", hostname=hostname, event_type=event_type.value)
        return entry

    async def list_entries(
        self,
        db: AsyncSession,
        hostname: str,
        limit: int | None = None,
    ) -> list[HistoryRecord]:
        """Newest-first history for one hostname."""
        if limit is None or limit == 0:
            limit = get_settings().history_default_limit
        if limit < 0:
            raise ValidationError("Limit must be positive", field="limit")

        result = await db.execute(
            select(HistoryEntry)
            .where(HistoryEntry.hostname == hostname)
            .order_by(HistoryEntry.created_at.desc(), HistoryEntry.id.desc())
            .limit(limit)
        )
        return [
            HistoryRecord(
                id=entry.id,
                hostname=entry.hostname,
                event_type=entry.event_type,
                message=entry.message,
                created_at=entry.created_at,
            )
            for entry in result.scalars().all()
        ]


# Singleton instance
history_service = HistoryService()
