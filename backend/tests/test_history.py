"""Tests for the certificate history log."""

import pytest

from certvault.core.certificate_state import certificate_state_engine
from certvault.core.config_service import config_service
from certvault.core.errors import ValidationError
from certvault.core.history import history_service
from certvault.models import HistoryEventType


class TestHistory:
    """Tests for HistoryService."""

    @pytest.mark.asyncio
    async def test_newest_first(self, db_session):
        for i in range(3):
            history_service.record(db_session, "web.test.local", HistoryEventType.CSR_GENERATED, f"event {i}")
        await db_session.commit()

        entries = await history_service.list_entries(db_session, "web.test.local")

        assert [e.message for e in entries] == ["event 2", "event 1", "event 0"]
        assert entries[0].created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_scoped_to_hostname(self, db_session):
        history_service.record(db_session, "a.test.local", HistoryEventType.CSR_GENERATED, "a")
        history_service.record(db_session, "b.test.local", HistoryEventType.CSR_GENERATED, "b")
        await db_session.commit()

        entries = await history_service.list_entries(db_session, "a.test.local")

        assert [e.hostname for e in entries] == ["a.test.local"]

    @pytest.mark.asyncio
    async def test_default_limit(self, db_session):
        for i in range(60):
            history_service.record(db_session, "web.test.local", HistoryEventType.CSR_GENERATED, f"event {i}")
        await db_session.commit()

        assert len(await history_service.list_entries(db_session, "web.test.local")) == 50
        assert len(await history_service.list_entries(db_session, "web.test.local", limit=5)) == 5
        assert len(await history_service.list_entries(db_session, "web.test.local", limit=0)) == 50

    @pytest.mark.asyncio
    async def test_negative_limit(self, db_session):
        with pytest.raises(ValidationError) as exc_info:
            await history_service.list_entries(db_session, "web.test.local", limit=-1)

        assert exc_info.value.field == "limit"

    @pytest.mark.asyncio
    async def test_staged_entries_roll_back(self, db_session):
        """Entries only exist once the mutation they describe commits."""
        history_service.record(db_session, "web.test.local", HistoryEventType.CSR_GENERATED, "never")
        await db_session.rollback()

        assert await history_service.list_entries(db_session, "web.test.local") == []

    @pytest.mark.asyncio
    async def test_only_reset_clears_history(self, db_session, vault_session, ca_config):
        history_service.record(db_session, "web.test.local", HistoryEventType.CSR_GENERATED, "kept")
        await db_session.commit()

        await config_service.reset_database(db_session, vault_session)

        assert await history_service.list_entries(db_session, "web.test.local") == []
        assert not vault_session.is_unlocked
        assert not await certificate_state_engine.exists(db_session, "web.test.local")
