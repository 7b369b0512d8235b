"""
Unit tests for the Supabase-backed stores (client mocked).
"""
from datetime import timedelta
from unittest.mock import MagicMock, patch

import psycopg
import pytest

from relay.core.exceptions import StorageError
from relay.services.sync.database import PostgresCursorBackend, SupabaseItemStore, SupabaseUserStore, user_from_row
from relay.services.sync.models import ChatMessage, MailMessage, Source, SyncAttemptRecord, SyncStatus

from tests.fakes import T0


@pytest.fixture
def supabase():
    return MagicMock()


def _chat(message_id, space_id="spaces/S1", user_id="user-1", seconds=0):
    return ChatMessage(user_id=user_id, message_id=message_id, space_id=space_id, message_time=T0 + timedelta(seconds=seconds))


class TestUserFromRow:
    def test_builds_user(self):
        user = user_from_row({
            "id": 7,
            "email": "a@example.com",
            "google_tokens": {"access_token": "at", "refresh_token": "rt", "expiry_date": 1709294400000},
            "last_gmail_sync": "2024-03-01T12:00:00Z",
        })

        assert user.id == "7"
        assert user.credential.refresh_token == "rt"
        assert user.credential.expires_at == T0
        assert user.last_gmail_sync == T0
        assert user.last_chat_sync is None

    def test_missing_access_token_rejected(self):
        with pytest.raises(ValueError):
            user_from_row({"id": "u", "google_tokens": {"refresh_token": "rt"}})


class TestSupabaseUserStore:
    @pytest.mark.asyncio
    async def test_unusable_rows_are_skipped(self, supabase):
        supabase.table.return_value.select.return_value.eq.return_value.execute.return_value = MagicMock(data=[
            {"id": "good", "email": "g@example.com", "google_tokens": {"access_token": "at"}},
            {"id": "bad", "email": "b@example.com", "google_tokens": None},
        ])

        users = await SupabaseUserStore(supabase).list_active_users()

        assert [u.id for u in users] == ["good"]

    @pytest.mark.asyncio
    async def test_listing_failure_is_storage_error(self, supabase):
        supabase.table.return_value.select.return_value.eq.return_value.execute.side_effect = RuntimeError("boom")

        with pytest.raises(StorageError):
            await SupabaseUserStore(supabase).list_active_users()

    @pytest.mark.asyncio
    async def test_success_record_moves_last_sync_marker(self, supabase):
        table = supabase.table.return_value
        record = SyncAttemptRecord(
            user_id="user-1",
            source=Source.GMAIL,
            status=SyncStatus.SUCCESS,
            item_count=4,
            message="Collected 4 new messages",
            watermark=T0,
            created_at=T0 + timedelta(seconds=30),
        )

        await SupabaseUserStore(supabase).record_sync_outcome(record)

        assert [c.args[0] for c in supabase.table.call_args_list] == ["sync_logs", "users"]
        inserted = table.insert.call_args.args[0]
        assert inserted["sync_type"] == "gmail"
        assert inserted["status"] == "success"
        assert inserted["records_processed"] == 4
        update = table.update.call_args.args[0]
        assert update["last_gmail_sync"] == T0.isoformat()
        table.update.return_value.eq.assert_called_with("id", "user-1")

    @pytest.mark.asyncio
    async def test_error_record_leaves_marker_alone(self, supabase):
        record = SyncAttemptRecord(
            user_id="user-1",
            source=Source.CHAT,
            status=SyncStatus.ERROR,
            message="Chat collection failed: nope",
            error_details={"type": "RuntimeError"},
        )

        await SupabaseUserStore(supabase).record_sync_outcome(record)

        assert [c.args[0] for c in supabase.table.call_args_list] == ["sync_logs"]
        supabase.table.return_value.update.assert_not_called()


class TestSupabaseItemStore:
    @pytest.mark.asyncio
    async def test_upsert_ignores_duplicates_on_natural_key(self, supabase):
        upsert = supabase.table.return_value.upsert
        upsert.return_value.execute.return_value = MagicMock(data=[{"message_id": "a"}])

        inserted = await SupabaseItemStore(supabase).upsert_items(Source.CHAT, [_chat("a"), _chat("b")])

        assert inserted == 1
        supabase.table.assert_called_with("chat_messages")
        assert upsert.call_args.kwargs == {"on_conflict": "user_id,message_id,space_id", "ignore_duplicates": True}

    @pytest.mark.asyncio
    async def test_in_batch_duplicates_and_invalid_rows_dropped(self, supabase):
        upsert = supabase.table.return_value.upsert
        upsert.return_value.execute.return_value = MagicMock(data=[])
        items = [
            MailMessage(user_id="user-1", message_id="m1", message_time=T0),
            MailMessage(user_id="user-1", message_id="m1", message_time=T0),
            MailMessage(user_id="", message_id="m2", message_time=T0),
        ]

        await SupabaseItemStore(supabase).upsert_items(Source.GMAIL, items)

        rows = upsert.call_args.args[0]
        assert [r["message_id"] for r in rows] == ["m1"]
        assert upsert.call_args.kwargs["on_conflict"] == "user_id,message_id"

    @pytest.mark.asyncio
    async def test_batches(self, supabase):
        upsert = supabase.table.return_value.upsert
        upsert.return_value.execute.return_value = MagicMock(data=[{}, {}])

        inserted = await SupabaseItemStore(supabase, batch_size=2).upsert_items(
            Source.CHAT, [_chat(f"m{i}") for i in range(4)]
        )

        assert upsert.call_count == 2
        assert inserted == 4

    @pytest.mark.asyncio
    async def test_empty_batch_is_a_no_op(self, supabase):
        assert await SupabaseItemStore(supabase).upsert_items(Source.CHAT, []) == 0
        supabase.table.assert_not_called()

    @pytest.mark.asyncio
    async def test_write_failure_is_storage_error(self, supabase):
        supabase.table.return_value.upsert.return_value.execute.side_effect = RuntimeError("timeout")

        with pytest.raises(StorageError):
            await SupabaseItemStore(supabase).upsert_items(Source.CHAT, [_chat("a")])

    @pytest.mark.asyncio
    async def test_latest_chat_space_times_keeps_newest_per_space(self, supabase):
        execute = supabase.table.return_value.select.return_value.eq.return_value\
            .order.return_value.range.return_value.execute
        execute.side_effect = [
            MagicMock(data=[
                {"space_id": "spaces/S2", "space_name": "Two", "space_type": "DM", "timestamp": "2024-03-01T12:05:00Z"},
                {"space_id": "spaces/S1", "space_name": "One", "space_type": "SPACE", "timestamp": "2024-03-01T12:01:00Z"},
            ]),
            MagicMock(data=[
                {"space_id": "spaces/S1", "space_name": "One", "space_type": "SPACE", "timestamp": "2024-03-01T12:00:00Z"},
            ]),
        ]

        result = await SupabaseItemStore(supabase).latest_chat_space_times("user-1", page_size=2)

        assert [(space.space_id, when) for space, when in result] == [
            ("spaces/S2", T0 + timedelta(minutes=5)),
            ("spaces/S1", T0 + timedelta(minutes=1)),
        ]
        assert execute.call_count == 2


class TestPostgresCursorBackend:
    @pytest.fixture
    def conn(self):
        conn = MagicMock()
        cur = conn.cursor.return_value.__enter__.return_value
        cur.fetchone.return_value = (T0, True, "One", "SPACE", T0)
        with patch("relay.services.sync.database.psycopg.connect", return_value=conn):
            yield conn

    @pytest.mark.asyncio
    async def test_advance_is_a_greatest_upsert(self, conn):
        cursor = await PostgresCursorBackend("postgresql://test").advance("u1:chat:spaces/S1", T0, has_new_msg=True, space_name="One")

        sql, params = conn.cursor.return_value.__enter__.return_value.execute.call_args.args
        assert "GREATEST(sync_cursors.watermark, EXCLUDED.watermark)" in sql
        assert params[:4] == ("u1:chat:spaces/S1", T0, True, "One")
        assert cursor.watermark == T0
        conn.commit.assert_called_once()
        conn.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_key(self, conn):
        conn.cursor.return_value.__enter__.return_value.fetchone.return_value = None

        assert await PostgresCursorBackend("postgresql://test").get("u1:gmail") is None

    @pytest.mark.asyncio
    async def test_failure_rolls_back(self, conn):
        conn.cursor.return_value.__enter__.return_value.execute.side_effect = psycopg.OperationalError("down")

        with pytest.raises(StorageError):
            await PostgresCursorBackend("postgresql://test").mark_idle("u1:chat:spaces/S1")

        conn.rollback.assert_called_once()
        conn.close.assert_called_once()
