"""
Tests for the delivery orchestrator.
"""

import asyncio
from datetime import timedelta

import pytest

from kai_alerts.core.config import DeliveryConfig, EmailConfig
from kai_alerts.core.models import (
    AlertStatus,
    DeliveryMethod,
    DeliveryRecord,
    DeliveryStatus,
    utc_now,
)
from kai_alerts.database.manager import DatabaseError
from kai_alerts.notifications.delivery import DeliveryError, DeliveryOrchestrator
from kai_alerts.notifications.email import PROVIDER_NOT_CONFIGURED, EmailNotifier

from factories import make_alert, make_subscriber
from fakes import FakeGateway


@pytest.fixture
async def alert(database):
    return await database.store_alert(make_alert("Dodoma"))


@pytest.fixture
async def subscriber(subscribers):
    return await subscribers.add_subscriber(make_subscriber("Dodoma", push_id="device-1"))


async def failed_record(database, alert, subscriber, attempts=1, age_hours=2.0,
                        method=DeliveryMethod.SMS):
    sent_at = utc_now() - timedelta(hours=age_hours)
    return await database.record_delivery(DeliveryRecord(
        alert_id=alert.id,
        subscriber_id=subscriber.subscriber_id,
        method=method,
        status=DeliveryStatus.FAILED,
        attempts=attempts,
        last_error="timeout",
        sent_at=sent_at,
    ))


class TestDeliverAlert:
    async def test_sms_and_push_are_recorded(self, orchestrator, database, alert, subscriber, primary_sms):
        result = await orchestrator.deliver_alert(alert, subscriber)

        assert result.success
        assert [r.method for r in result.results] == [DeliveryMethod.SMS, DeliveryMethod.PUSH]
        assert primary_sms.sent[0][0] == "+255700000001"

        records = await database.get_deliveries_for_alert(alert.id)
        assert {(r.method, r.status) for r in records} == {
            (DeliveryMethod.SMS, DeliveryStatus.SENT),
            (DeliveryMethod.PUSH, DeliveryStatus.DELIVERED),
        }
        assert all(r.attempts == 1 for r in records)

    async def test_sms_body_fits_one_message(self, orchestrator, alert, subscriber, primary_sms):
        await orchestrator.deliver_alert(alert, subscriber, methods=["sms"])

        body = primary_sms.sent[0][1]
        assert len(body) <= 160
        assert body.endswith("- KAI Intelligence")
        assert "MAFURIKO" in body

    async def test_secondary_gateway_takes_over_on_rejection(
        self, orchestrator, alert, subscriber, primary_sms, secondary_sms
    ):
        primary_sms.mode = "reject"

        result = await orchestrator.deliver_alert(alert, subscriber, methods=["sms"])

        assert result.success
        assert result.results[0].provider == "secondary_sms"
        assert len(primary_sms.sent) == 1
        assert len(secondary_sms.sent) == 1

    async def test_secondary_gateway_takes_over_on_exception(
        self, orchestrator, alert, subscriber, primary_sms, secondary_sms
    ):
        primary_sms.mode = "raise"

        result = await orchestrator.deliver_alert(alert, subscriber, methods=["sms"])

        assert result.results[0].success
        assert orchestrator.stats["sms_sent"] == 1

    async def test_both_gateways_failing_records_failure(
        self, orchestrator, database, alert, subscriber, primary_sms, secondary_sms
    ):
        primary_sms.mode = "raise"
        secondary_sms.mode = "reject"

        result = await orchestrator.deliver_alert(alert, subscriber, methods=["sms"])

        assert not result.success
        records = await database.get_deliveries_for_alert(alert.id)
        assert records[0].status == DeliveryStatus.FAILED
        assert records[0].last_error == "InvalidPhoneNumber"
        assert orchestrator.stats["sms_failed"] == 1

    async def test_subscriber_without_phone_gets_no_sms(self, orchestrator, subscribers, alert, primary_sms):
        subscriber = await subscribers.add_subscriber(make_subscriber("Dodoma", phone=None))

        result = await orchestrator.deliver_alert(alert, subscriber)

        assert [r.method for r in result.results] == [DeliveryMethod.PUSH]
        assert primary_sms.sent == []

    async def test_push_publishes_to_user_region_and_broadcast(self, orchestrator, alert, subscriber, push):
        await orchestrator.deliver_alert(alert, subscriber, methods=["push"])

        assert push.topics() == ["user:device-1", "region:Dodoma", "broadcast"]
        events = [payload["event"] for _, payload in push.published]
        assert events == ["alert:new", "alert:region", "alert:broadcast"]
        assert push.published[0][1]["alert"]["id"] == alert.id

    async def test_push_failure_is_recorded(self, orchestrator, database, alert, subscriber, push):
        push.fail = True

        result = await orchestrator.deliver_alert(alert, subscriber, methods=["push"])

        assert not result.success
        records = await database.get_deliveries_for_alert(alert.id)
        assert records[0].status == DeliveryStatus.FAILED
        assert records[0].last_error == "hub offline"

    async def test_missing_push_channel_writes_no_record(
        self, database, subscribers, templates, alert, subscriber
    ):
        orchestrator = DeliveryOrchestrator(DeliveryConfig(), database, subscribers, templates)

        result = await orchestrator.deliver_alert(alert, subscriber, methods=["push"])

        assert not result.success
        assert result.results[0].error == "Push channel not configured"
        assert await database.get_deliveries_for_alert(alert.id) == []

    async def test_email_always_fails_and_is_recorded(self, orchestrator, database, subscribers, alert):
        subscriber = await subscribers.add_subscriber(
            make_subscriber("Dodoma", phone=None, email="farmer@example.com")
        )

        result = await orchestrator.deliver_alert(alert, subscriber, methods=["email"])

        assert not result.success
        assert result.results[0].error == PROVIDER_NOT_CONFIGURED
        records = await database.get_deliveries_for_alert(alert.id)
        assert records[0].method == DeliveryMethod.EMAIL
        assert records[0].status == DeliveryStatus.FAILED
        assert orchestrator.stats["email_failed"] == 1

    async def test_record_write_failure_keeps_delivery_result(
        self, orchestrator, database, alert, subscriber, monkeypatch
    ):
        async def failing_record(*args, **kwargs):
            raise DatabaseError("locked")

        monkeypatch.setattr(database, "record_delivery", failing_record)

        result = await orchestrator.deliver_alert(alert, subscriber, methods=["sms"])

        assert result.success
        assert result.results[0].record_id is None
        assert orchestrator.stats["records_dropped"] == 1


class TestDeliverToRegion:
    async def test_region_fan_out(self, orchestrator, subscribers, alert, primary_sms):
        await subscribers.add_subscriber(make_subscriber("Dodoma", phone="+255700000001"))
        await subscribers.add_subscriber(make_subscriber("Mwanza", phone="+255700000002", regions=["Dodoma"]))
        await subscribers.add_subscriber(make_subscriber("Mwanza", phone="+255700000003"))
        await subscribers.add_subscriber(make_subscriber("Dodoma", phone="+255700000004", expires_in_days=-1))

        summary = await orchestrator.deliver_to_region(alert)

        assert summary == {"region": "Dodoma", "subscribers": 2, "successful": 2, "failed": 0}
        assert sorted(to for to, _ in primary_sms.sent) == ["+255700000001", "+255700000002"]

    async def test_exception_for_one_subscriber_counts_as_failure(
        self, orchestrator, subscribers, alert, monkeypatch
    ):
        bad = await subscribers.add_subscriber(make_subscriber("Dodoma", phone="+255700000009"))
        await subscribers.add_subscriber(make_subscriber("Dodoma", phone="+255700000001"))
        original = orchestrator.deliver_alert

        async def flaky(alert, subscriber, methods=None):
            if subscriber.subscriber_id == bad.subscriber_id:
                raise RuntimeError("template crashed")
            return await original(alert, subscriber, methods)

        monkeypatch.setattr(orchestrator, "deliver_alert", flaky)

        summary = await orchestrator.deliver_to_region(alert)

        assert summary["successful"] == 1
        assert summary["failed"] == 1

    async def test_subscriber_store_failure_raises_delivery_error(self, orchestrator, subscribers, alert, monkeypatch):
        async def broken(*args, **kwargs):
            raise DatabaseError("gone")

        monkeypatch.setattr(subscribers, "get_region_subscribers", broken)

        with pytest.raises(DeliveryError):
            await orchestrator.deliver_to_region(alert)


class TestDailyCap:
    async def test_capped_subscriber_is_skipped_without_record(
        self, orchestrator, database, subscriber, primary_sms
    ):
        for _ in range(10):
            earlier = await database.store_alert(make_alert("Dodoma"))
            await orchestrator.deliver_alert(earlier, subscriber, methods=["sms"])
        primary_sms.sent.clear()

        eleventh = await database.store_alert(make_alert("Dodoma"))
        result = await orchestrator.deliver_with_daily_cap(eleventh, subscriber)

        assert result is None
        assert primary_sms.sent == []
        assert await database.get_deliveries_for_alert(eleventh.id) == []
        assert orchestrator.stats["skipped_daily_cap"] == 1

    async def test_each_channel_record_counts_toward_the_cap(
        self, orchestrator, database, subscriber, primary_sms
    ):
        for _ in range(5):
            earlier = await database.store_alert(make_alert("Dodoma"))
            await orchestrator.deliver_alert(earlier, subscriber)
        assert await database.count_deliveries_since(
            subscriber.subscriber_id, orchestrator.start_of_day()
        ) == 10
        primary_sms.sent.clear()

        sixth = await database.store_alert(make_alert("Dodoma"))
        result = await orchestrator.deliver_with_daily_cap(sixth, subscriber)

        assert result is None
        assert primary_sms.sent == []
        assert await database.get_deliveries_for_alert(sixth.id) == []

    async def test_subscriber_locks_are_released_after_use(self, orchestrator, database, subscriber):
        first = await database.store_alert(make_alert("Dodoma"))
        second = await database.store_alert(make_alert("Dodoma"))

        results = await asyncio.gather(
            orchestrator.deliver_with_daily_cap(first, subscriber),
            orchestrator.deliver_with_daily_cap(second, subscriber),
        )

        assert all(result.success for result in results)
        assert orchestrator._subscriber_locks == {}

    async def test_below_the_cap_still_delivers(self, orchestrator, database, subscriber):
        for _ in range(9):
            earlier = await database.store_alert(make_alert("Dodoma"))
            await orchestrator.deliver_alert(earlier, subscriber, methods=["sms"])

        tenth = await database.store_alert(make_alert("Dodoma"))
        result = await orchestrator.deliver_with_daily_cap(tenth, subscriber)

        assert result is not None and result.success

    async def test_failed_deliveries_do_not_count(self, orchestrator, database, subscriber, primary_sms, secondary_sms):
        primary_sms.mode = secondary_sms.mode = "reject"
        for _ in range(10):
            earlier = await database.store_alert(make_alert("Dodoma"))
            await orchestrator.deliver_alert(earlier, subscriber, methods=["sms"])

        primary_sms.mode = "ok"
        alert = await database.store_alert(make_alert("Dodoma"))
        result = await orchestrator.deliver_with_daily_cap(alert, subscriber, methods=["sms"])

        assert result.success

    async def test_start_of_day_uses_local_calendar(self, database, subscribers, templates):
        orchestrator = DeliveryOrchestrator(
            DeliveryConfig(), database, subscribers, templates, timezone="Africa/Dar_es_Salaam"
        )
        now = utc_now().replace(hour=22, minute=30)

        start = orchestrator.start_of_day(now)

        # 22:30 UTC is already the next day in East Africa (UTC+3)
        assert start.utcoffset() == timedelta(hours=3)
        assert start.date() == (now + timedelta(hours=3)).date()
        assert (start.hour, start.minute) == (0, 0)


class TestRetrySweep:
    async def test_failed_record_is_retried(self, orchestrator, database, alert, subscriber):
        record = await failed_record(database, alert, subscriber)

        summary = await orchestrator.retry_failed_deliveries()

        assert summary == {"processed": 1, "succeeded": 1, "failed": 0}
        updated = await database.get_delivery(record.id)
        assert updated.status == DeliveryStatus.SENT
        assert updated.attempts == 2
        assert updated.sent_at > record.sent_at

    async def test_failed_retry_keeps_original_sent_at(
        self, orchestrator, database, alert, subscriber, primary_sms, secondary_sms
    ):
        primary_sms.mode = secondary_sms.mode = "raise"
        record = await failed_record(database, alert, subscriber, attempts=2)

        summary = await orchestrator.retry_failed_deliveries()

        assert summary["failed"] == 1
        updated = await database.get_delivery(record.id)
        assert updated.status == DeliveryStatus.FAILED
        assert updated.attempts == 3
        assert abs((updated.sent_at - record.sent_at).total_seconds()) < 1

    async def test_record_at_ceiling_is_never_touched(self, orchestrator, database, alert, subscriber, primary_sms):
        record = await failed_record(database, alert, subscriber, attempts=3, age_hours=2)

        summary = await orchestrator.retry_failed_deliveries()
        await orchestrator.retry_failed_deliveries()

        assert summary["processed"] == 0
        assert primary_sms.sent == []
        unchanged = await database.get_delivery(record.id)
        assert unchanged.attempts == 3
        assert unchanged.status == DeliveryStatus.FAILED

    async def test_record_outside_window_is_not_retried(self, orchestrator, database, alert, subscriber):
        record = await failed_record(database, alert, subscriber, age_hours=25)

        summary = await orchestrator.retry_failed_deliveries()

        assert summary["processed"] == 0
        assert (await database.get_delivery(record.id)).attempts == 1

    async def test_attempts_never_exceed_ceiling(
        self, orchestrator, database, alert, subscriber, primary_sms, secondary_sms
    ):
        primary_sms.mode = secondary_sms.mode = "reject"
        record = await failed_record(database, alert, subscriber)

        for _ in range(5):
            await orchestrator.retry_failed_deliveries()

        assert (await database.get_delivery(record.id)).attempts == 3

    async def test_cancelled_alert_is_not_resent(self, orchestrator, database, alert, subscriber, primary_sms):
        record = await failed_record(database, alert, subscriber)
        await database.cancel_alert(alert.id)

        summary = await orchestrator.retry_failed_deliveries()

        assert summary["failed"] == 1
        assert primary_sms.sent == []
        updated = await database.get_delivery(record.id)
        assert updated.last_error == f"Alert is {AlertStatus.CANCELLED.value}"

    async def test_push_retry_is_recorded_delivered(self, orchestrator, database, alert, subscriber, push):
        record = await failed_record(database, alert, subscriber, method=DeliveryMethod.PUSH)

        await orchestrator.retry_failed_deliveries()

        updated = await database.get_delivery(record.id)
        assert updated.status == DeliveryStatus.DELIVERED
        assert updated.delivered_at is not None
        assert "region:Dodoma" in push.topics()


async def test_send_sms_without_gateways(database, subscribers, templates):
    orchestrator = DeliveryOrchestrator(
        DeliveryConfig(), database, subscribers, templates, email=EmailNotifier(EmailConfig())
    )

    result = await orchestrator.send_sms("+255700000001", "hello")

    assert not result.success
    assert result.error == "No SMS gateway configured"


async def test_alert_sms_without_gateways_is_recorded_as_failed(database, subscribers, templates, alert, subscriber):
    orchestrator = DeliveryOrchestrator(DeliveryConfig(), database, subscribers, templates)

    result = await orchestrator.deliver_alert(alert, subscriber, methods=["sms"])

    assert not result.success
    assert result.results[0].record_id is not None
    records = await database.get_deliveries_for_alert(alert.id)
    assert [(r.method, r.status, r.last_error) for r in records] == [
        (DeliveryMethod.SMS, DeliveryStatus.FAILED, "No SMS gateway configured"),
    ]


async def test_close_closes_gateways(orchestrator, primary_sms, secondary_sms):
    await orchestrator.close()
    assert primary_sms.closed and secondary_sms.closed


async def test_gateway_order(database, subscribers, templates):
    primary = FakeGateway("a")
    orchestrator = DeliveryOrchestrator(DeliveryConfig(), database, subscribers, templates, secondary_sms=primary)
    assert [g.name for g in orchestrator.sms_gateways] == ["a"]
