"""
Database manager for KAI Alerts.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .models import AlertRecord, Base, DeliveryRecordRow
from ..core.config import AppConfig
from ..core.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    DeliveryMethod,
    DeliveryRecord,
    DeliveryStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

SUCCESSFUL_STATUSES = (DeliveryStatus.SENT.value, DeliveryStatus.DELIVERED.value)


class DatabaseError(Exception):
    """Database operation error."""

    pass


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC for storage."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a stored naive datetime."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class DatabaseManager:
    """Manages alert and delivery persistence for KAI Alerts."""

    def __init__(self, config: AppConfig):
        """
        Initialize database manager.

        Args:
            config: Application configuration
        """
        self.config = config
        self.engine = None
        self.async_session_factory = None
        self._is_initialized = False

    async def initialize(self, database_url: Optional[str] = None) -> None:
        """
        Initialize database connection and create tables.

        Args:
            database_url: Database URL (defaults to the configured URL or SQLite in data_dir)
        """
        if self._is_initialized:
            return

        try:
            database_url = database_url or self.config.database.url
            if not database_url:
                self.config.data_dir.mkdir(parents=True, exist_ok=True)
                db_path = self.config.data_dir / "kai_alerts.db"
                database_url = f"sqlite+aiosqlite:///{db_path}"

            self.engine = create_async_engine(
                database_url,
                echo=self.config.database.echo,
                pool_pre_ping=True,
                pool_recycle=3600,
            )

            self.async_session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            self._is_initialized = True
            logger.info(f"Database initialized: {database_url}")

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise DatabaseError(f"Database initialization failed: {e}") from e

    async def close(self) -> None:
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self._is_initialized = False
            logger.info("Database connections closed")

    async def get_session(self) -> AsyncSession:
        """Get a database session."""
        if not self._is_initialized:
            raise DatabaseError("Database not initialized")
        return self.async_session_factory()

    async def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        try:
            async with await self.get_session() as session:
                await session.execute(text("SELECT 1"))
                return True
        except (SQLAlchemyError, DatabaseError) as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    # Alerts

    async def store_alert(self, alert: Alert) -> Alert:
        """
        Persist a newly generated alert.

        Args:
            alert: Alert to store

        Returns:
            The stored alert
        """
        try:
            async with await self.get_session() as session:
                session.add(AlertRecord(
                    id=alert.id,
                    alert_type=alert.type.value,
                    severity=alert.severity.value,
                    confidence=alert.confidence,
                    region=alert.region,
                    country_code=alert.country_code,
                    forecast_date=to_db_time(alert.forecast_date),
                    lead_time_hours=alert.lead_time_hours,
                    issued_at=to_db_time(alert.issued_at),
                    valid_until=to_db_time(alert.valid_until),
                    title=alert.title,
                    description=alert.description,
                    recommendations=alert.recommendations,
                    impact_assessment=alert.impact_assessment,
                    data_source=alert.metadata.get("data_source", "weather_api"),
                    alert_metadata=alert.model_dump(mode="json")["metadata"],
                    status=alert.status.value,
                    is_verified=alert.is_verified,
                    verified_at=to_db_time(alert.verified_at),
                ))
                await session.commit()
                logger.debug(f"Stored alert: {alert.id}")
                return alert

        except SQLAlchemyError as e:
            logger.error(f"Failed to store alert {alert.id}: {e}")
            raise DatabaseError(f"Failed to store alert: {e}") from e

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        """Get an alert by ID."""
        try:
            async with await self.get_session() as session:
                record = await session.get(AlertRecord, alert_id)
                return self._alert_from_record(record) if record else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to get alert {alert_id}: {e}")
            raise DatabaseError(f"Failed to get alert: {e}") from e

    async def get_active_alerts(self, region: Optional[str] = None, hours: int = 24) -> List[Alert]:
        """Active alerts issued within the last `hours`, newest first."""
        cutoff = to_db_time(utc_now() - timedelta(hours=hours))
        try:
            async with await self.get_session() as session:
                query = select(AlertRecord).where(
                    AlertRecord.status == AlertStatus.ACTIVE.value,
                    AlertRecord.issued_at >= cutoff,
                )
                if region:
                    query = query.where(AlertRecord.region == region)
                result = await session.execute(query.order_by(AlertRecord.issued_at.desc()))
                return [self._alert_from_record(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to get active alerts: {e}")
            raise DatabaseError(f"Failed to get active alerts: {e}") from e

    async def get_active_alert_summary(self, hours: int = 24) -> List[Dict[str, Any]]:
        """
        Count active alerts from the last `hours` grouped by region, type and severity.

        Returns:
            Rows of {region, type, severity, count}, ordered by region then
            most severe first
        """
        cutoff = to_db_time(utc_now() - timedelta(hours=hours))
        try:
            async with await self.get_session() as session:
                result = await session.execute(
                    select(
                        AlertRecord.region,
                        AlertRecord.alert_type,
                        AlertRecord.severity,
                        func.count(AlertRecord.id),
                    )
                    .where(
                        AlertRecord.status == AlertStatus.ACTIVE.value,
                        AlertRecord.issued_at >= cutoff,
                    )
                    .group_by(AlertRecord.region, AlertRecord.alert_type, AlertRecord.severity)
                )
                rows = [
                    {"region": region, "type": alert_type, "severity": severity, "count": count}
                    for region, alert_type, severity, count in result.all()
                ]
        except SQLAlchemyError as e:
            logger.error(f"Failed to summarize active alerts: {e}")
            raise DatabaseError(f"Failed to summarize active alerts: {e}") from e

        rows.sort(key=lambda row: (row["region"], -AlertSeverity(row["severity"]).rank, row["type"]))
        return rows

    async def cancel_alert(self, alert_id: str) -> bool:
        """Cancel an active alert. Returns False if it was not active."""
        return await self._set_alert_status(alert_id, AlertStatus.CANCELLED)

    async def verify_alert(self, alert_id: str) -> bool:
        """Mark an alert as verified by an operator."""
        try:
            async with await self.get_session() as session:
                result = await session.execute(
                    update(AlertRecord)
                    .where(AlertRecord.id == alert_id, AlertRecord.is_verified.is_(False))
                    .values(is_verified=True, verified_at=to_db_time(utc_now()))
                )
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to verify alert {alert_id}: {e}")
            raise DatabaseError(f"Failed to verify alert: {e}") from e

    async def expire_alerts(self, now: Optional[datetime] = None) -> int:
        """Expire active alerts whose validity has passed. Returns the number expired."""
        now = to_db_time(now or utc_now())
        try:
            async with await self.get_session() as session:
                result = await session.execute(
                    update(AlertRecord)
                    .where(
                        AlertRecord.status == AlertStatus.ACTIVE.value,
                        AlertRecord.valid_until.is_not(None),
                        AlertRecord.valid_until < now,
                    )
                    .values(status=AlertStatus.EXPIRED.value)
                )
                await session.commit()
                if result.rowcount:
                    logger.info(f"Expired {result.rowcount} alerts")
                return result.rowcount
        except SQLAlchemyError as e:
            logger.error(f"Failed to expire alerts: {e}")
            raise DatabaseError(f"Failed to expire alerts: {e}") from e

    async def _set_alert_status(self, alert_id: str, status: AlertStatus) -> bool:
        try:
            async with await self.get_session() as session:
                result = await session.execute(
                    update(AlertRecord)
                    .where(AlertRecord.id == alert_id, AlertRecord.status == AlertStatus.ACTIVE.value)
                    .values(status=status.value)
                )
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to set alert {alert_id} to {status.value}: {e}")
            raise DatabaseError(f"Failed to update alert status: {e}") from e

    @staticmethod
    def _alert_from_record(record: AlertRecord) -> Alert:
        return Alert(
            id=record.id,
            type=record.alert_type,
            severity=record.severity,
            confidence=record.confidence,
            region=record.region,
            country_code=record.country_code,
            forecast_date=from_db_time(record.forecast_date),
            lead_time_hours=record.lead_time_hours,
            title=record.title,
            description=record.description,
            recommendations=record.recommendations or [],
            impact_assessment=record.impact_assessment or "",
            status=record.status,
            metadata=record.alert_metadata or {},
            issued_at=from_db_time(record.issued_at),
            valid_until=from_db_time(record.valid_until),
            is_verified=record.is_verified,
            verified_at=from_db_time(record.verified_at),
        )

    # Deliveries

    async def record_delivery(
        self,
        record: DeliveryRecord,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None,
    ) -> DeliveryRecord:
        """
        Insert a delivery record.

        Args:
            record: Delivery outcome
            phone: Recipient phone at send time
            email: Recipient email at send time
            provider_response: Raw provider response for auditing

        Returns:
            The record with its database id set
        """
        try:
            async with await self.get_session() as session:
                row = DeliveryRecordRow(
                    alert_id=record.alert_id,
                    subscriber_id=record.subscriber_id,
                    delivery_method=record.method.value,
                    delivery_status=record.status.value,
                    phone=phone,
                    email=email,
                    provider=record.provider,
                    provider_message_id=record.provider_message_id,
                    provider_response=provider_response,
                    attempts=record.attempts,
                    last_error=record.last_error,
                    sent_at=to_db_time(record.sent_at),
                    last_attempt_at=to_db_time(record.last_attempt_at or record.sent_at),
                    delivered_at=to_db_time(record.delivered_at),
                )
                session.add(row)
                await session.commit()
                return record.model_copy(update={"id": row.id})
        except SQLAlchemyError as e:
            logger.error(f"Failed to record delivery for alert {record.alert_id}: {e}")
            raise DatabaseError(f"Failed to record delivery: {e}") from e

    async def get_delivery(self, record_id: int) -> Optional[DeliveryRecord]:
        """Get a delivery record by ID."""
        try:
            async with await self.get_session() as session:
                row = await session.get(DeliveryRecordRow, record_id)
                return self._delivery_from_row(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to get delivery {record_id}: {e}")
            raise DatabaseError(f"Failed to get delivery: {e}") from e

    async def get_deliveries_for_alert(self, alert_id: str) -> List[DeliveryRecord]:
        """All delivery records for an alert."""
        try:
            async with await self.get_session() as session:
                result = await session.execute(
                    select(DeliveryRecordRow)
                    .where(DeliveryRecordRow.alert_id == alert_id)
                    .order_by(DeliveryRecordRow.id)
                )
                return [self._delivery_from_row(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to get deliveries for alert {alert_id}: {e}")
            raise DatabaseError(f"Failed to get deliveries: {e}") from e

    async def count_deliveries_since(self, subscriber_id: str, since: datetime) -> int:
        """Count a subscriber's sent or delivered records since a point in time."""
        try:
            async with await self.get_session() as session:
                result = await session.execute(
                    select(func.count(DeliveryRecordRow.id)).where(
                        DeliveryRecordRow.subscriber_id == subscriber_id,
                        DeliveryRecordRow.delivery_status.in_(SUCCESSFUL_STATUSES),
                        DeliveryRecordRow.sent_at >= to_db_time(since),
                    )
                )
                return result.scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to count deliveries for {subscriber_id}: {e}")
            raise DatabaseError(f"Failed to count deliveries: {e}") from e

    async def get_retryable_deliveries(
        self, max_attempts: int = 3, window_hours: int = 24, now: Optional[datetime] = None
    ) -> List[DeliveryRecord]:
        """
        Failed delivery records still eligible for another attempt.

        Args:
            max_attempts: Records at or above this attempt count are excluded
            window_hours: Only records first sent within this many hours qualify
            now: Reference time (defaults to the current time)

        Returns:
            Eligible records, oldest first
        """
        cutoff = to_db_time((now or utc_now()) - timedelta(hours=window_hours))
        try:
            async with await self.get_session() as session:
                result = await session.execute(
                    select(DeliveryRecordRow)
                    .where(
                        DeliveryRecordRow.delivery_status == DeliveryStatus.FAILED.value,
                        DeliveryRecordRow.attempts < max_attempts,
                        DeliveryRecordRow.sent_at > cutoff,
                    )
                    .order_by(DeliveryRecordRow.sent_at)
                )
                return [self._delivery_from_row(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to get retryable deliveries: {e}")
            raise DatabaseError(f"Failed to get retryable deliveries: {e}") from e

    async def update_delivery_attempt(
        self,
        record_id: int,
        status: DeliveryStatus,
        provider: Optional[str] = None,
        provider_message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Record the outcome of a retry.

        The attempt counter is incremented in the UPDATE itself. A successful
        retry moves sent_at to the retry time; a failed one keeps the original
        sent_at so the retry window is measured from the first attempt.
        """
        now = to_db_time(utc_now())
        values: Dict[str, Any] = {
            "delivery_status": status.value,
            "attempts": DeliveryRecordRow.attempts + 1,
            "last_attempt_at": now,
            "last_error": error,
        }
        if provider:
            values["provider"] = provider
        if provider_message_id:
            values["provider_message_id"] = provider_message_id
        if status.value in SUCCESSFUL_STATUSES:
            values["sent_at"] = now
        if status == DeliveryStatus.DELIVERED:
            values["delivered_at"] = now

        try:
            async with await self.get_session() as session:
                await session.execute(
                    update(DeliveryRecordRow)
                    .where(DeliveryRecordRow.id == record_id)
                    .values(**values)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update delivery {record_id}: {e}")
            raise DatabaseError(f"Failed to update delivery: {e}") from e

    async def get_delivery_statistics(self, hours: int = 24) -> Dict[str, Any]:
        """Delivery counts by method and status over the last `hours`."""
        cutoff = to_db_time(utc_now() - timedelta(hours=hours))
        try:
            async with await self.get_session() as session:
                result = await session.execute(
                    select(
                        DeliveryRecordRow.delivery_method,
                        DeliveryRecordRow.delivery_status,
                        func.count(DeliveryRecordRow.id),
                    )
                    .where(DeliveryRecordRow.sent_at >= cutoff)
                    .group_by(DeliveryRecordRow.delivery_method, DeliveryRecordRow.delivery_status)
                )
                by_method: Dict[str, Dict[str, int]] = {}
                total = 0
                for method, status, count in result.all():
                    by_method.setdefault(method, {})[status] = count
                    total += count
                return {"period_hours": hours, "total": total, "by_method": by_method}
        except SQLAlchemyError as e:
            logger.error(f"Failed to get delivery statistics: {e}")
            raise DatabaseError(f"Failed to get delivery statistics: {e}") from e

    @staticmethod
    def _delivery_from_row(row: DeliveryRecordRow) -> DeliveryRecord:
        return DeliveryRecord(
            id=row.id,
            alert_id=row.alert_id,
            subscriber_id=row.subscriber_id,
            method=DeliveryMethod(row.delivery_method),
            status=DeliveryStatus(row.delivery_status),
            provider=row.provider,
            provider_message_id=row.provider_message_id,
            attempts=row.attempts,
            last_error=row.last_error,
            sent_at=from_db_time(row.sent_at),
            last_attempt_at=from_db_time(row.last_attempt_at),
            delivered_at=from_db_time(row.delivered_at),
        )
