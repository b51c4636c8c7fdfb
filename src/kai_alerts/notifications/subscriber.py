"""
Subscriber management for KAI Alerts.
Resolves who should receive an alert and tracks subscription usage.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..core.models import utc_now
from ..database.manager import DatabaseError, DatabaseManager, from_db_time, to_db_time
from ..database.models import SubscriberRecord, SubscriptionRecord

logger = logging.getLogger(__name__)


class SubscriptionStatus(Enum):
    """Subscription status."""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SubscriptionPlan(Enum):
    """Subscription plan tiers."""
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


@dataclass
class Subscription:
    """Subscription plan and usage for one subscriber."""

    plan: SubscriptionPlan
    expires_at: datetime
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    auto_renew: bool = False
    alerts_included: Optional[int] = None  # None means unlimited
    alerts_used: int = 0
    subscription_id: Optional[int] = None

    @property
    def has_allowance(self) -> bool:
        return self.alerts_included is None or self.alerts_used < self.alerts_included

    def days_left(self, now: Optional[datetime] = None) -> int:
        remaining = (self.expires_at - (now or utc_now())).total_seconds()
        return max(0, math.ceil(remaining / 86400))


@dataclass
class Subscriber:
    """Subscriber information."""

    subscriber_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    phone: Optional[str] = None
    email: Optional[str] = None
    region: Optional[str] = None
    regions: List[str] = field(default_factory=list)
    language: str = "sw"
    push_id: Optional[str] = None
    subscription: Optional[Subscription] = None

    def matches_region(self, region: str) -> bool:
        return self.region == region or region in self.regions


class SubscriberManager:
    """Queries subscribers and subscriptions in the relational store."""

    def __init__(self, database: DatabaseManager):
        self.database = database

    async def add_subscriber(self, subscriber: Subscriber) -> Subscriber:
        """
        Insert a subscriber and, if present, their subscription.

        Args:
            subscriber: Subscriber to add

        Returns:
            The subscriber with the subscription id populated
        """
        try:
            async with await self.database.get_session() as session:
                session.add(SubscriberRecord(
                    id=subscriber.subscriber_id,
                    phone=subscriber.phone,
                    email=subscriber.email,
                    region=subscriber.region,
                    regions=subscriber.regions,
                    language=subscriber.language,
                    push_id=subscriber.push_id,
                ))
                subscription_row = None
                if subscriber.subscription:
                    sub = subscriber.subscription
                    subscription_row = SubscriptionRecord(
                        subscriber_id=subscriber.subscriber_id,
                        plan=sub.plan.value,
                        status=sub.status.value,
                        expires_at=to_db_time(sub.expires_at),
                        auto_renew=sub.auto_renew,
                        alerts_included=sub.alerts_included,
                        alerts_used=sub.alerts_used,
                    )
                    session.add(subscription_row)
                await session.commit()
                if subscription_row is not None:
                    subscriber.subscription.subscription_id = subscription_row.id
                logger.info(f"Added subscriber {subscriber.subscriber_id}")
                return subscriber
        except SQLAlchemyError as e:
            logger.error(f"Failed to add subscriber {subscriber.subscriber_id}: {e}")
            raise DatabaseError(f"Failed to add subscriber: {e}") from e

    async def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        """Get a subscriber with their most recent subscription."""
        try:
            async with await self.database.get_session() as session:
                record = await session.get(SubscriberRecord, subscriber_id)
                if record is None:
                    return None
                result = await session.execute(
                    select(SubscriptionRecord)
                    .where(SubscriptionRecord.subscriber_id == subscriber_id)
                    .order_by(SubscriptionRecord.expires_at.desc())
                    .limit(1)
                )
                return self._to_subscriber(record, result.scalars().first())
        except SQLAlchemyError as e:
            logger.error(f"Failed to get subscriber {subscriber_id}: {e}")
            raise DatabaseError(f"Failed to get subscriber: {e}") from e

    async def get_region_subscribers(
        self,
        region: str,
        include_enterprise: bool = False,
        require_allowance: bool = False,
        now: Optional[datetime] = None,
    ) -> List[Subscriber]:
        """
        Subscribers with an active, unexpired subscription covering a region.

        Args:
            region: Alert region
            include_enterprise: Enterprise plans receive alerts for every region
            require_allowance: Exclude subscriptions that used up their allowance
            now: Reference time

        Returns:
            Matching subscribers, one entry each
        """
        conditions = [
            SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value,
            SubscriptionRecord.expires_at > to_db_time(now or utc_now()),
        ]
        if require_allowance:
            conditions.append(or_(
                SubscriptionRecord.alerts_included.is_(None),
                SubscriptionRecord.alerts_used < SubscriptionRecord.alerts_included,
            ))

        subscribers = await self._query_active(conditions)
        return [
            s for s in subscribers
            if s.matches_region(region)
            or (include_enterprise and s.subscription.plan == SubscriptionPlan.ENTERPRISE)
        ]

    async def get_digest_subscribers(
        self, plans: Sequence[str], now: Optional[datetime] = None
    ) -> List[Subscriber]:
        """Active subscribers on the given plans who can receive SMS."""
        return await self._query_active([
            SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value,
            SubscriptionRecord.expires_at > to_db_time(now or utc_now()),
            SubscriptionRecord.plan.in_(list(plans)),
            SubscriberRecord.phone.is_not(None),
        ])

    async def get_expiring_subscriptions(
        self, days: int, now: Optional[datetime] = None
    ) -> List[Subscriber]:
        """Active subscriptions without auto-renew that expire within `days`."""
        now = now or utc_now()
        return await self._query_active([
            SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value,
            SubscriptionRecord.auto_renew.is_(False),
            SubscriptionRecord.expires_at > to_db_time(now),
            SubscriptionRecord.expires_at <= to_db_time(now + timedelta(days=days)),
        ])

    async def expire_lapsed_subscriptions(self, now: Optional[datetime] = None) -> int:
        """Flip active subscriptions past their expiry to expired."""
        try:
            async with await self.database.get_session() as session:
                result = await session.execute(
                    update(SubscriptionRecord)
                    .where(
                        SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value,
                        SubscriptionRecord.expires_at < to_db_time(now or utc_now()),
                    )
                    .values(status=SubscriptionStatus.EXPIRED.value)
                )
                await session.commit()
                if result.rowcount:
                    logger.info(f"Expired {result.rowcount} subscriptions")
                return result.rowcount
        except SQLAlchemyError as e:
            logger.error(f"Failed to expire subscriptions: {e}")
            raise DatabaseError(f"Failed to expire subscriptions: {e}") from e

    async def increment_alerts_used(self, subscription_id: int) -> bool:
        """
        Count one delivered alert against a subscription.

        The allowance check and the increment happen in one UPDATE, so
        concurrent sweeps cannot push usage past the allowance.

        Returns:
            True if the counter was incremented
        """
        try:
            async with await self.database.get_session() as session:
                result = await session.execute(
                    update(SubscriptionRecord)
                    .where(
                        SubscriptionRecord.id == subscription_id,
                        or_(
                            SubscriptionRecord.alerts_included.is_(None),
                            SubscriptionRecord.alerts_used < SubscriptionRecord.alerts_included,
                        ),
                    )
                    .values(alerts_used=SubscriptionRecord.alerts_used + 1)
                )
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to increment usage for subscription {subscription_id}: {e}")
            raise DatabaseError(f"Failed to increment subscription usage: {e}") from e

    async def _query_active(self, conditions: list) -> List[Subscriber]:
        try:
            async with await self.database.get_session() as session:
                result = await session.execute(
                    select(SubscriberRecord, SubscriptionRecord)
                    .join(SubscriptionRecord, SubscriptionRecord.subscriber_id == SubscriberRecord.id)
                    .where(*conditions)
                    .order_by(SubscriberRecord.id, SubscriptionRecord.expires_at.desc())
                )
                subscribers: Dict[str, Subscriber] = {}
                for record, subscription in result.all():
                    # Latest-expiring subscription wins when several are active
                    if record.id not in subscribers:
                        subscribers[record.id] = self._to_subscriber(record, subscription)
                return list(subscribers.values())
        except SQLAlchemyError as e:
            logger.error(f"Failed to query subscribers: {e}")
            raise DatabaseError(f"Failed to query subscribers: {e}") from e

    @staticmethod
    def _to_subscriber(
        record: SubscriberRecord, subscription: Optional[SubscriptionRecord]
    ) -> Subscriber:
        return Subscriber(
            subscriber_id=record.id,
            phone=record.phone,
            email=record.email,
            region=record.region,
            regions=record.regions or [],
            language=record.language or "sw",
            push_id=record.push_id,
            subscription=Subscription(
                plan=SubscriptionPlan(subscription.plan),
                expires_at=from_db_time(subscription.expires_at),
                status=SubscriptionStatus(subscription.status),
                auto_renew=subscription.auto_renew,
                alerts_included=subscription.alerts_included,
                alerts_used=subscription.alerts_used,
                subscription_id=subscription.id,
            ) if subscription is not None else None,
        )
