"""
Alert delivery orchestration for KAI Alerts.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from ..core.config import DeliveryConfig
from ..core.models import (
    Alert,
    AlertStatus,
    DeliveryMethod,
    DeliveryRecord,
    DeliveryStatus,
    utc_now,
)
from ..database.manager import DatabaseError, DatabaseManager
from ..utils.logging import AlertLogger, default_loggers
from .email import EmailNotifier
from .push import BROADCAST_TOPIC, PushChannel, region_topic, user_topic
from .sms import SMSGateway, SMSGatewayError
from .subscriber import Subscriber, SubscriberManager
from .templates import TemplateEngine

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Delivery orchestration error."""

    pass


@dataclass
class ChannelResult:
    """Outcome of one delivery method for one subscriber."""

    method: DeliveryMethod
    success: bool
    status: DeliveryStatus = DeliveryStatus.FAILED
    provider: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None
    # False when the channel had nothing to send through; such results are not recorded
    attempted: bool = True
    record_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["method"] = self.method.value
        data["status"] = self.status.value
        return data


@dataclass
class DeliveryResult:
    """Outcome of delivering one alert to one subscriber."""

    alert_id: str
    subscriber_id: str
    results: List[ChannelResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return any(result.success for result in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "subscriber_id": self.subscriber_id,
            "success": self.success,
            "results": [result.to_dict() for result in self.results],
        }


class DeliveryOrchestrator:
    """Delivers alerts over SMS, push and email and records every attempt."""

    def __init__(
        self,
        config: DeliveryConfig,
        database: DatabaseManager,
        subscribers: SubscriberManager,
        templates: TemplateEngine,
        primary_sms: Optional[SMSGateway] = None,
        secondary_sms: Optional[SMSGateway] = None,
        push: Optional[PushChannel] = None,
        email: Optional[EmailNotifier] = None,
        timezone: str = "Africa/Dar_es_Salaam",
        alert_logger: Optional[AlertLogger] = None,
    ):
        """
        Initialize delivery orchestrator.

        Args:
            config: Delivery configuration
            database: Delivery record store
            subscribers: Subscriber store
            templates: Message template engine
            primary_sms: Preferred SMS gateway
            secondary_sms: Fallback SMS gateway
            push: Real-time push channel
            email: Email channel
            timezone: Time zone whose calendar day bounds the daily cap
            alert_logger: Structured alert event logger
        """
        self.config = config
        self.database = database
        self.subscribers = subscribers
        self.templates = templates
        self.primary_sms = primary_sms
        self.secondary_sms = secondary_sms
        self.push = push
        self.email = email
        self.timezone = ZoneInfo(timezone)
        self.alert_logger = alert_logger or default_loggers()[1]

        # subscriber id -> (lock, number of tasks holding or waiting on it)
        self._subscriber_locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

        self.stats = {
            "sms_sent": 0,
            "sms_failed": 0,
            "push_sent": 0,
            "push_failed": 0,
            "email_failed": 0,
            "records_dropped": 0,
            "retries_attempted": 0,
            "skipped_daily_cap": 0,
        }

    @property
    def sms_gateways(self) -> List[SMSGateway]:
        return [g for g in (self.primary_sms, self.secondary_sms) if g is not None]

    async def deliver_alert(
        self,
        alert: Alert,
        subscriber: Subscriber,
        methods: Optional[Sequence[str]] = None,
    ) -> DeliveryResult:
        """
        Deliver an alert to one subscriber over each requested method.

        Args:
            alert: Alert to deliver
            subscriber: Recipient
            methods: Delivery methods (defaults to the configured methods)

        Returns:
            Per-method results; success if any method succeeded
        """
        result = DeliveryResult(alert_id=alert.id, subscriber_id=subscriber.subscriber_id)

        for method in self._resolve_methods(methods):
            if method == DeliveryMethod.SMS and not subscriber.phone:
                continue
            if method == DeliveryMethod.EMAIL and not subscriber.email:
                continue

            channel_result = await self._attempt_method(alert, subscriber, method)
            if channel_result.attempted:
                channel_result.record_id = await self._record(alert, subscriber, channel_result)

            self.alert_logger.log_delivery(
                alert.id,
                subscriber.subscriber_id,
                method.value,
                channel_result.success,
                provider=channel_result.provider,
                error=channel_result.error,
            )
            result.results.append(channel_result)

        return result

    async def deliver_to_region(self, alert: Alert) -> Dict[str, Any]:
        """
        Deliver an alert to every active subscriber in its region.

        Returns:
            Summary of {region, subscribers, successful, failed}
        """
        try:
            subscribers = await self.subscribers.get_region_subscribers(alert.region)
        except DatabaseError as e:
            raise DeliveryError(f"Could not resolve subscribers for {alert.region}: {e}") from e

        outcomes = await asyncio.gather(
            *(self.deliver_alert(alert, subscriber) for subscriber in subscribers),
            return_exceptions=True,
        )

        successful = 0
        failed = 0
        for subscriber, outcome in zip(subscribers, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    f"Delivery of alert {alert.id} to {subscriber.subscriber_id} raised: {outcome}",
                    exc_info=outcome,
                )
                failed += 1
            elif outcome.success:
                successful += 1
            else:
                failed += 1

        logger.info(
            f"Alert {alert.id} delivered in {alert.region}: "
            f"{successful} successful, {failed} failed of {len(subscribers)}"
        )
        return {
            "region": alert.region,
            "subscribers": len(subscribers),
            "successful": successful,
            "failed": failed,
        }

    async def deliver_with_daily_cap(
        self,
        alert: Alert,
        subscriber: Subscriber,
        methods: Optional[Sequence[str]] = None,
    ) -> Optional[DeliveryResult]:
        """
        Deliver an alert unless the subscriber already reached today's cap.

        Returns:
            Delivery result, or None if the delivery was skipped
        """
        async with self._subscriber_lock(subscriber.subscriber_id):
            delivered_today = await self.database.count_deliveries_since(
                subscriber.subscriber_id, self.start_of_day()
            )
            if delivered_today >= self.config.max_alerts_per_day:
                self.stats["skipped_daily_cap"] += 1
                self.alert_logger.log_delivery_skipped(
                    alert.id,
                    subscriber.subscriber_id,
                    "daily alert limit reached",
                    delivered_today=delivered_today,
                    limit=self.config.max_alerts_per_day,
                )
                return None
            return await self.deliver_alert(alert, subscriber, methods)

    async def retry_failed_deliveries(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Re-attempt failed deliveries that are still inside the retry window.

        Every processed record has its attempt counter incremented, whatever
        the outcome.

        Returns:
            Counts of {processed, succeeded, failed}
        """
        records = await self.database.get_retryable_deliveries(
            max_attempts=self.config.max_attempts,
            window_hours=self.config.retry_window_hours,
            now=now,
        )
        summary = {"processed": 0, "succeeded": 0, "failed": 0}

        for record in records:
            try:
                channel_result = await self._retry_record(record)
                await self.database.update_delivery_attempt(
                    record.id,
                    channel_result.status,
                    provider=channel_result.provider,
                    provider_message_id=channel_result.message_id,
                    error=channel_result.error,
                )
            except DatabaseError as e:
                logger.error(f"Could not update delivery {record.id} after retry: {e}")
                continue
            except Exception as e:
                logger.error(f"Unexpected error retrying delivery {record.id}: {e}", exc_info=True)
                continue

            summary["processed"] += 1
            self.stats["retries_attempted"] += 1
            if channel_result.success:
                summary["succeeded"] += 1
            else:
                summary["failed"] += 1

        if summary["processed"]:
            logger.info(
                f"Retried {summary['processed']} deliveries: "
                f"{summary['succeeded']} succeeded, {summary['failed']} failed"
            )
        return summary

    async def send_sms(self, to: str, body: str) -> ChannelResult:
        """
        Send a text through the primary gateway, falling back to the secondary.

        Nothing is recorded; digests and reminders use this directly.
        """
        gateways = self.sms_gateways
        if not gateways:
            self.stats["sms_failed"] += 1
            return ChannelResult(
                method=DeliveryMethod.SMS,
                success=False,
                error="No SMS gateway configured",
                attempted=False,
            )

        result = None
        for index, gateway in enumerate(gateways):
            if index:
                logger.warning(f"Retrying SMS to {to} via fallback gateway {gateway.name}")
            try:
                sms_result = await gateway.send(to, body)
            except SMSGatewayError as e:
                result = ChannelResult(DeliveryMethod.SMS, False, provider=gateway.name, error=str(e))
                continue
            except Exception as e:
                logger.error(f"Unexpected error sending SMS via {gateway.name}: {e}", exc_info=True)
                result = ChannelResult(DeliveryMethod.SMS, False, provider=gateway.name, error=str(e))
                continue

            if sms_result.success:
                self.stats["sms_sent"] += 1
                return ChannelResult(
                    method=DeliveryMethod.SMS,
                    success=True,
                    status=DeliveryStatus.SENT,
                    provider=sms_result.provider,
                    message_id=sms_result.message_id,
                )
            result = ChannelResult(
                DeliveryMethod.SMS, False, provider=sms_result.provider, error=sms_result.error
            )

        self.stats["sms_failed"] += 1
        return result

    @asynccontextmanager
    async def _subscriber_lock(self, subscriber_id: str) -> AsyncIterator[None]:
        """Serialize work for one subscriber; the lock is dropped once nobody uses it."""
        lock, users = self._subscriber_locks.get(subscriber_id, (asyncio.Lock(), 0))
        self._subscriber_locks[subscriber_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._subscriber_locks[subscriber_id]
            if users == 1:
                del self._subscriber_locks[subscriber_id]
            else:
                self._subscriber_locks[subscriber_id] = (lock, users - 1)

    def start_of_day(self, now: Optional[datetime] = None) -> datetime:
        """Midnight of the current calendar day in the delivery time zone."""
        local = (now or utc_now()).astimezone(self.timezone)
        return local.replace(hour=0, minute=0, second=0, microsecond=0)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "sms_gateways": [g.name for g in self.sms_gateways],
            "push_enabled": self.push is not None,
        }

    async def close(self) -> None:
        for gateway in self.sms_gateways:
            await gateway.close()

    def _resolve_methods(self, methods: Optional[Sequence[str]]) -> List[DeliveryMethod]:
        return [DeliveryMethod(m) for m in (methods or self.config.default_methods)]

    async def _attempt_method(
        self, alert: Alert, subscriber: Subscriber, method: DeliveryMethod
    ) -> ChannelResult:
        if method == DeliveryMethod.SMS:
            body = self.templates.render_alert_sms(alert, subscriber.language)
            result = await self.send_sms(subscriber.phone, body)
            # alert texts are recorded even when no gateway is configured
            result.attempted = True
            return result
        if method == DeliveryMethod.PUSH:
            return await self._send_push(alert, subscriber)
        if method == DeliveryMethod.EMAIL:
            return await self._send_email(alert, subscriber)
        return ChannelResult(method, False, error=f"Unsupported delivery method: {method.value}", attempted=False)

    async def _send_push(self, alert: Alert, subscriber: Subscriber) -> ChannelResult:
        if self.push is None:
            return ChannelResult(
                DeliveryMethod.PUSH, False, error="Push channel not configured", attempted=False
            )

        payload = alert.to_payload()
        messages = []
        if subscriber.push_id:
            messages.append((user_topic(subscriber.push_id), "alert:new"))
        messages.append((region_topic(alert.region), "alert:region"))
        messages.append((BROADCAST_TOPIC, "alert:broadcast"))

        try:
            for topic, event in messages:
                await self.push.publish(topic, {"event": event, "alert": payload})
        except Exception as e:
            self.stats["push_failed"] += 1
            logger.warning(f"Push delivery of alert {alert.id} failed: {e}")
            return ChannelResult(DeliveryMethod.PUSH, False, provider="websocket", error=str(e))

        self.stats["push_sent"] += 1
        return ChannelResult(
            DeliveryMethod.PUSH, True, status=DeliveryStatus.DELIVERED, provider="websocket"
        )

    async def _send_email(self, alert: Alert, subscriber: Subscriber) -> ChannelResult:
        if self.email is None:
            self.stats["email_failed"] += 1
            return ChannelResult(DeliveryMethod.EMAIL, False, error="Email channel not configured")

        outcome = await self.email.send_alert_email(alert, subscriber.email)
        if not outcome.get("success"):
            self.stats["email_failed"] += 1
            return ChannelResult(
                DeliveryMethod.EMAIL, False, provider=outcome.get("provider"), error=outcome.get("error")
            )
        return ChannelResult(
            DeliveryMethod.EMAIL, True, status=DeliveryStatus.SENT, provider=outcome.get("provider")
        )

    async def _retry_record(self, record: DeliveryRecord) -> ChannelResult:
        alert = await self.database.get_alert(record.alert_id)
        subscriber = await self.subscribers.get_subscriber(record.subscriber_id)
        if alert is None or subscriber is None:
            return ChannelResult(record.method, False, error="Alert or subscriber no longer exists")
        if alert.status != AlertStatus.ACTIVE:
            return ChannelResult(record.method, False, error=f"Alert is {alert.status.value}")
        return await self._attempt_method(alert, subscriber, record.method)

    async def _record(
        self, alert: Alert, subscriber: Subscriber, result: ChannelResult
    ) -> Optional[int]:
        now = utc_now()
        record = DeliveryRecord(
            alert_id=alert.id,
            subscriber_id=subscriber.subscriber_id,
            method=result.method,
            status=result.status,
            provider=result.provider,
            provider_message_id=result.message_id,
            last_error=result.error,
            sent_at=now,
            last_attempt_at=now,
            delivered_at=now if result.status == DeliveryStatus.DELIVERED else None,
        )
        try:
            stored = await self.database.record_delivery(
                record, phone=subscriber.phone, email=subscriber.email
            )
        except DatabaseError as e:
            self.stats["records_dropped"] += 1
            self.alert_logger.log_dead_letter(
                "delivery_record", record.model_dump(mode="json"), str(e)
            )
            return None
        return stored.id
