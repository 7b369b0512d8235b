"""
Unit tests for mail strategy selection and the mail collector.
"""
from datetime import datetime, timedelta, timezone

import pytest

from relay.core.exceptions import ProviderAPIError
from relay.services.sync.models import MailMessage, Source, SyncStatus
from relay.services.sync.orchestration.email_sync import MailCollector, select_mail_strategy

from tests.fakes import T0, FakeGmailClient, gmail_raw, make_user, rate_limited


@pytest.fixture
def build(retry, cursors, item_store, sync_logger, config, no_sleep):
    def _build(client):
        return MailCollector(
            None,
            retry,
            cursors,
            item_store,
            sync_logger,
            config=config,
            client_factory=lambda token: client,
            sleep=no_sleep,
            clock=lambda: T0,
        )
    return _build


def _epoch_ms(instant: datetime) -> str:
    return str(int(instant.timestamp() * 1000))


async def _seed_mail(item_store, user_id):
    await item_store.upsert_items(Source.GMAIL, [
        MailMessage(user_id=user_id, message_id="seed", message_time=T0 - timedelta(days=1))
    ])


class TestStrategySelection:
    def test_no_data_is_initial(self, config):
        strategy = select_mail_strategy(False, None, config)

        assert strategy.kind == "initial"
        assert strategy.query == ""
        assert strategy.max_results == config.mail_initial_max_results

    def test_no_data_ignores_watermark(self, config):
        assert select_mail_strategy(False, T0, config).kind == "initial"

    def test_data_and_watermark_is_incremental_after_watermark(self, config):
        strategy = select_mail_strategy(True, T0, config)

        assert strategy.kind == "incremental"
        assert strategy.query == f"after:{int(T0.timestamp())}"
        assert strategy.max_results == config.mail_incremental_max_results

    def test_data_without_watermark_falls_back_to_recent_window(self, config):
        strategy = select_mail_strategy(True, None, config)

        assert strategy.kind == "fallback"
        assert strategy.query == "newer_than:7d"
        assert strategy.max_results == config.mail_fallback_max_results

    def test_initial_budget_is_larger_than_incremental_by_default(self, config):
        initial = select_mail_strategy(False, None, config)
        incremental = select_mail_strategy(True, T0, config)

        assert initial.max_results == 500
        assert incremental.max_results == 100

    def test_fallback_window_is_configurable(self, config):
        config.mail_fallback_window_days = 3

        assert select_mail_strategy(True, None, config).query == "newer_than:3d"

    def test_naive_watermark_is_treated_as_utc(self, config):
        naive = datetime(2024, 3, 1, 12, 0, 0)

        assert select_mail_strategy(True, naive, config).query == f"after:{int(T0.timestamp())}"


class TestMailCollection:
    @pytest.mark.asyncio
    async def test_brand_new_user_with_no_mail_records_success_with_zero(self, build, user_store):
        user = make_user()
        client = FakeGmailClient([])

        result = await build(client).collect(user)

        assert result.items_stored == 0
        records = user_store.records_for(user.id, Source.GMAIL)
        assert len(records) == 1
        assert records[0].status == SyncStatus.SUCCESS
        assert records[0].item_count == 0
        assert records[0].error_details is None
        assert client.list_calls[0]["query"] == ""

    @pytest.mark.asyncio
    async def test_incremental_query_uses_last_sync(self, build, item_store, user_store):
        user = make_user(last_gmail_sync=T0 - timedelta(hours=1))
        await _seed_mail(item_store, user.id)
        client = FakeGmailClient([gmail_raw("m1")])

        await build(client).collect(user)

        assert client.list_calls[0]["query"] == f"after:{int((T0 - timedelta(hours=1)).timestamp())}"

    @pytest.mark.asyncio
    async def test_success_moves_last_sync_to_listing_start(self, build, user_store):
        user = make_user()
        user_store.users[user.id] = user
        client = FakeGmailClient([gmail_raw("m1")])

        await build(client).collect(user)

        record = user_store.records_for(user.id, Source.GMAIL)[0]
        assert record.watermark == T0
        assert user_store.users[user.id].last_gmail_sync == T0

    @pytest.mark.asyncio
    async def test_items_stored_newest_first(self, build, item_store):
        client = FakeGmailClient([
            gmail_raw("old", date="Thu, 29 Feb 2024 08:00:00 +0000"),
            gmail_raw("new", date="Fri, 1 Mar 2024 09:00:00 +0000"),
            gmail_raw("mid", date="Thu, 29 Feb 2024 20:00:00 +0000"),
        ])

        result = await build(client).collect(make_user())

        assert result.items_stored == 3
        _, stored = item_store.upsert_calls[-1]
        assert [m.message_id for m in stored] == ["new", "mid", "old"]

    @pytest.mark.asyncio
    async def test_detail_failure_is_skipped(self, build, item_store, no_sleep):
        client = FakeGmailClient([gmail_raw("m1"), gmail_raw("m2"), gmail_raw("m3")])
        client.detail_errors["m2"] = ProviderAPIError("not found", provider="gmail", status_code=404)

        result = await build(client).collect(make_user())

        assert result.items_stored == 2
        assert result.items_skipped == 1
        # courtesy pause after every detail fetch
        assert no_sleep.await_count == 3

    @pytest.mark.asyncio
    async def test_listing_honours_budget_across_pages(self, build, config):
        config.mail_page_size = 40
        config.mail_initial_max_results = 100
        client = FakeGmailClient([gmail_raw(f"m{i}") for i in range(150)])

        result = await build(client).collect(make_user())

        assert [c["max_results"] for c in client.list_calls] == [40, 40, 20]
        assert result.items_seen == 100
        assert len(client.detail_calls) == 100

    @pytest.mark.asyncio
    async def test_incremental_backlog_larger_than_budget_is_drained_oldest_first(self, build, config, item_store, user_store):
        config.mail_incremental_max_results = 2
        user = make_user(last_gmail_sync=T0 - timedelta(hours=1))
        user_store.users[user.id] = user
        await _seed_mail(item_store, user.id)
        client = FakeGmailClient([
            gmail_raw("m3", internalDate=_epoch_ms(T0 - timedelta(minutes=10))),
            gmail_raw("m2", internalDate=_epoch_ms(T0 - timedelta(minutes=20))),
            gmail_raw("m1", internalDate=_epoch_ms(T0 - timedelta(minutes=30))),
        ])
        collector = build(client)

        first = await collector.collect(user)

        assert first.items_stored == 2
        assert client.detail_calls == ["m2", "m1"]
        marker = user_store.users[user.id].last_gmail_sync
        assert marker < T0 - timedelta(minutes=10)

        second = await collector.collect(user_store.users[user.id])

        assert second.items_stored == 1
        assert client.list_calls[-1]["query"] == f"after:{int(marker.timestamp())}"
        stored_ids = {message_id for (_, message_id) in item_store.rows[Source.GMAIL]}
        assert {"m1", "m2", "m3"} <= stored_ids
        assert user_store.users[user.id].last_gmail_sync == T0

    @pytest.mark.asyncio
    async def test_truncated_run_with_no_processed_mail_keeps_marker(self, build, config, item_store, user_store):
        config.mail_incremental_max_results = 1
        last_sync = T0 - timedelta(hours=1)
        user = make_user(last_gmail_sync=last_sync)
        user_store.users[user.id] = user
        await _seed_mail(item_store, user.id)
        client = FakeGmailClient([
            gmail_raw("m2", internalDate=_epoch_ms(T0 - timedelta(minutes=10))),
            gmail_raw("m1", internalDate=_epoch_ms(T0 - timedelta(minutes=20))),
        ])
        client.detail_errors["m1"] = ProviderAPIError("not found", provider="gmail", status_code=404)

        result = await build(client).collect(user)

        assert result.items_skipped == 1
        assert user_store.users[user.id].last_gmail_sync == last_sync

    @pytest.mark.asyncio
    async def test_rerun_does_not_duplicate(self, build, item_store):
        user = make_user()
        client = FakeGmailClient([gmail_raw("m1"), gmail_raw("m2")])
        collector = build(client)

        first = await collector.collect(user)
        second = await collector.collect(user)

        assert first.items_stored == 2
        assert second.items_stored == 0
        assert item_store.count(Source.GMAIL) == 2

    @pytest.mark.asyncio
    async def test_transient_listing_error_is_retried_then_surfaced(self, build, user_store):
        client = FakeGmailClient([])
        client.list_error = rate_limited("gmail")

        with pytest.raises(ProviderAPIError):
            await build(client).collect(make_user())

        assert len(client.list_calls) == 3
        assert user_store.records == []


class TestGmailNormalizationInCollector:
    @pytest.mark.asyncio
    async def test_row_fields(self, build, item_store):
        user = make_user()
        client = FakeGmailClient([gmail_raw("m1", sender='"Doe, Jane" <jane@example.com>')])

        await build(client).collect(user)

        row = item_store.rows[Source.GMAIL][(user.id, "m1")]
        assert row["sender_name"] == "Doe, Jane"
        assert row["sender_email"] == "jane@example.com"
        assert row["subject"] == "Subject m1"
        assert row["body"] == "snippet m1"
        assert row["labels"] == ["INBOX"]
        assert row["date_received"] == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc).isoformat()
