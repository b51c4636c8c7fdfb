"""
Core application components for KAI Alerts.
"""

from .config import AppConfig, RegionConfig, ThresholdsConfig, SMSConfig, DeliveryConfig, SchedulerConfig, LoggingConfig, DatabaseConfig, AdminServerConfig
from .models import Alert, AlertType, AlertSeverity, AlertStatus, DeliveryMethod, DeliveryStatus, DeliveryRecord, WeatherSnapshot
from .stats import SchedulerRunStats

__all__ = [
    "AppConfig",
    "RegionConfig",
    "ThresholdsConfig",
    "SMSConfig",
    "DeliveryConfig",
    "SchedulerConfig",
    "LoggingConfig",
    "DatabaseConfig",
    "AdminServerConfig",
    "Alert",
    "AlertType",
    "AlertSeverity",
    "AlertStatus",
    "DeliveryMethod",
    "DeliveryStatus",
    "DeliveryRecord",
    "WeatherSnapshot",
    "SchedulerRunStats",
]
