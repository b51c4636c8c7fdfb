"""
Database models for KAI Alerts.

Timestamps are stored as naive UTC.
"""

from datetime import datetime, timezone
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AlertRecord(Base):
    """Database model for generated climate alerts."""

    __tablename__ = "climate_alerts"

    id = Column(String, primary_key=True)

    # Classification
    alert_type = Column(String, nullable=False, index=True)
    severity = Column(String, nullable=False, index=True)
    confidence = Column(Integer, nullable=False)

    # Location and timing
    region = Column(String, nullable=False, index=True)
    country_code = Column(String(2), nullable=False, default="TZ")
    forecast_date = Column(DateTime, nullable=False)
    lead_time_hours = Column(Integer, nullable=False, default=0)
    issued_at = Column(DateTime, nullable=False, index=True)
    valid_until = Column(DateTime, index=True)

    # Content
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    recommendations = Column(JSON)
    impact_assessment = Column(Text)
    data_source = Column(String)
    alert_metadata = Column("metadata", JSON)

    # Lifecycle
    status = Column(String, nullable=False, default="active", index=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)

    deliveries = relationship("DeliveryRecordRow", back_populates="alert")

    __table_args__ = (
        Index("idx_alerts_region_status", "region", "status"),
        Index("idx_alerts_status_issued", "status", "issued_at"),
    )


class SubscriberRecord(Base):
    """Database model for alert subscribers."""

    __tablename__ = "subscribers"

    id = Column(String, primary_key=True)
    phone = Column(String)
    email = Column(String)
    region = Column(String, index=True)
    regions = Column(JSON)
    language = Column(String(5), nullable=False, default="sw")
    push_id = Column(String)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)

    subscriptions = relationship("SubscriptionRecord", back_populates="subscriber")


class SubscriptionRecord(Base):
    """Database model for subscriber plans and usage."""

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_id = Column(String, ForeignKey("subscribers.id"), nullable=False, index=True)
    plan = Column(String, nullable=False, default="basic")
    status = Column(String, nullable=False, default="active", index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    auto_renew = Column(Boolean, nullable=False, default=False)
    alerts_included = Column(Integer)  # NULL means unlimited
    alerts_used = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)

    subscriber = relationship("SubscriberRecord", back_populates="subscriptions")


class DeliveryRecordRow(Base):
    """Database model for per-channel delivery attempts."""

    __tablename__ = "alert_deliveries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(String, ForeignKey("climate_alerts.id"), nullable=False, index=True)
    subscriber_id = Column(String, ForeignKey("subscribers.id"), nullable=False, index=True)

    delivery_method = Column(String, nullable=False)
    delivery_status = Column(String, nullable=False, default="pending")

    # Recipient snapshot
    phone = Column(String)
    email = Column(String)

    # Provider details
    provider = Column(String)
    provider_message_id = Column(String)
    provider_response = Column(JSON)

    attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(Text)

    sent_at = Column(DateTime, nullable=False, index=True)
    last_attempt_at = Column(DateTime)
    delivered_at = Column(DateTime)
    read_at = Column(DateTime)

    alert = relationship("AlertRecord", back_populates="deliveries")

    __table_args__ = (
        Index("idx_deliveries_subscriber_sent", "subscriber_id", "sent_at"),
        Index("idx_deliveries_status_attempts", "delivery_status", "attempts"),
    )
