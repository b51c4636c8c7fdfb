"""
Database components for KAI Alerts.
"""

from .models import AlertRecord, SubscriberRecord, SubscriptionRecord, DeliveryRecordRow
from .manager import DatabaseManager, DatabaseError

__all__ = [
    "AlertRecord",
    "SubscriberRecord",
    "SubscriptionRecord",
    "DeliveryRecordRow",
    "DatabaseManager",
    "DatabaseError",
]
