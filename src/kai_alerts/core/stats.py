"""
Process-wide run statistics for KAI Alerts.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .models import utc_now


@dataclass
class SchedulerRunStats:
    """
    Cumulative counters for scheduled work.

    One instance is created at startup and shared by handle. All mutation
    happens on the event loop through the record_* methods, none of which
    await, so each update is atomic with respect to other tasks.
    """

    weather_checks: int = 0
    alerts_generated: int = 0
    alerts_delivered: int = 0
    delivery_failures: int = 0
    retries_attempted: int = 0
    digests_sent: int = 0
    reminders_sent: int = 0
    last_weather_check: Optional[datetime] = None
    last_delivery: Optional[datetime] = None
    last_retry_sweep: Optional[datetime] = None
    last_digest: Optional[datetime] = None
    last_expiry_sweep: Optional[datetime] = None
    started_at: datetime = field(default_factory=utc_now)

    def record_weather_check(self, alerts_generated: int) -> None:
        self.weather_checks += 1
        self.alerts_generated += alerts_generated
        self.last_weather_check = utc_now()

    def record_delivery(self, success: bool) -> None:
        if success:
            self.alerts_delivered += 1
        else:
            self.delivery_failures += 1
        self.last_delivery = utc_now()

    def record_retry_sweep(self, attempted: int) -> None:
        self.retries_attempted += attempted
        self.last_retry_sweep = utc_now()

    def record_digest(self, sent: int) -> None:
        self.digests_sent += sent
        self.last_digest = utc_now()

    def record_expiry_sweep(self, reminders: int) -> None:
        self.reminders_sent += reminders
        self.last_expiry_sweep = utc_now()

    @property
    def uptime_seconds(self) -> float:
        return (utc_now() - self.started_at).total_seconds()

    @property
    def uptime(self) -> str:
        """Uptime formatted as 'Xh Ym'."""
        minutes = int(self.uptime_seconds // 60)
        return f"{minutes // 60}h {minutes % 60}m"

    @property
    def delivery_success_rate(self) -> str:
        total = self.alerts_delivered + self.delivery_failures
        if total == 0:
            return "N/A"
        return f"{self.alerts_delivered / total * 100:.1f}%"

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "weather_checks": self.weather_checks,
            "alerts_generated": self.alerts_generated,
            "alerts_delivered": self.alerts_delivered,
            "delivery_failures": self.delivery_failures,
            "retries_attempted": self.retries_attempted,
            "digests_sent": self.digests_sent,
            "reminders_sent": self.reminders_sent,
            "last_weather_check": iso(self.last_weather_check),
            "last_delivery": iso(self.last_delivery),
            "last_retry_sweep": iso(self.last_retry_sweep),
            "last_digest": iso(self.last_digest),
            "last_expiry_sweep": iso(self.last_expiry_sweep),
            "uptime_start": iso(self.started_at),
            "uptime": self.uptime,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "delivery_success_rate": self.delivery_success_rate,
        }
