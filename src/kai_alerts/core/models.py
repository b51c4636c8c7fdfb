"""
Core data models for KAI Alerts.
"""

import uuid
from datetime import date as Date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class AlertType(str, Enum):
    """Hazard types."""

    FLOOD = "flood"
    DROUGHT = "drought"
    CYCLONE = "cyclone"
    LOCUST = "locust"
    DISEASE = "disease"
    HEATWAVE = "heatwave"
    WILDFIRE = "wildfire"


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertStatus(str, Enum):
    """Alert lifecycle status."""

    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class DeliveryMethod(str, Enum):
    """Delivery channels."""

    SMS = "sms"
    PUSH = "push"
    EMAIL = "email"
    WEBHOOK = "webhook"


class DeliveryStatus(str, Enum):
    """Delivery record status."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    READ = "read"


class WeatherConditions(BaseModel):
    """Observed conditions at fetch time."""

    temperature: Optional[float] = Field(None, description="Temperature in Celsius")
    humidity: Optional[float] = Field(None, description="Relative humidity in percent")
    pressure: Optional[float] = Field(None, description="Pressure in hPa")
    wind_speed: Optional[float] = Field(None, description="Wind speed in km/h")
    precipitation: float = Field(0.0, description="Precipitation in mm")
    cloud_cover: Optional[float] = Field(None, description="Cloud cover in percent")


class ForecastEntry(WeatherConditions):
    """A single time-indexed forecast entry."""

    time: datetime = Field(..., description="Start of the forecast interval")
    date: Date = Field(..., description="Calendar date of the interval")
    interval_hours: int = Field(3, description="Length of the forecast interval")
    max_temperature: Optional[float] = Field(None, description="Maximum temperature in Celsius")
    min_temperature: Optional[float] = Field(None, description="Minimum temperature in Celsius")


class DailyWeather(BaseModel):
    """Forecast rolled up to one calendar day."""

    date: Date
    precipitation: float = 0.0
    max_temperature: Optional[float] = None
    avg_temperature: Optional[float] = None
    max_wind_speed: Optional[float] = None


class WeatherSnapshot(BaseModel):
    """Normalized weather data for one region from one provider."""

    source: str = Field(..., description="Provider identifier")
    fetched_at: datetime = Field(default_factory=utc_now)
    current: WeatherConditions = Field(default_factory=WeatherConditions)
    forecast: List[ForecastEntry] = Field(default_factory=list)

    def daily(self) -> List[DailyWeather]:
        """Roll the forecast up per calendar date, preserving order."""
        buckets: Dict[Date, List[ForecastEntry]] = {}
        for entry in self.forecast:
            buckets.setdefault(entry.date, []).append(entry)

        days = []
        for day, entries in buckets.items():
            highs = [
                e.max_temperature if e.max_temperature is not None else e.temperature
                for e in entries
            ]
            highs = [t for t in highs if t is not None]
            temps = [e.temperature for e in entries if e.temperature is not None]
            winds = [e.wind_speed for e in entries if e.wind_speed is not None]
            days.append(DailyWeather(
                date=day,
                precipitation=sum(e.precipitation for e in entries),
                max_temperature=max(highs) if highs else None,
                avg_temperature=sum(temps) / len(temps) if temps else None,
                max_wind_speed=max(winds) if winds else None,
            ))
        return days


class Alert(BaseModel):
    """Climate hazard alert."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Alert identifier")
    type: AlertType = Field(..., description="Hazard type")
    severity: AlertSeverity = Field(..., description="Alert severity")
    confidence: int = Field(..., ge=0, le=100, description="Confidence score")
    region: str = Field(..., description="Region name")
    country_code: str = Field("TZ", description="Country code")
    forecast_date: datetime = Field(..., description="Expected hazard date")
    lead_time_hours: int = Field(0, ge=0, description="Hours between issuance and onset")
    title: str = Field(..., description="Alert title")
    description: str = Field(..., description="Alert description")
    recommendations: List[str] = Field(default_factory=list, description="Recommended actions")
    impact_assessment: str = Field("", description="Expected impact")
    status: AlertStatus = Field(AlertStatus.ACTIVE, description="Lifecycle status")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Measured values and data source")
    issued_at: datetime = Field(default_factory=utc_now, description="Issue timestamp")
    valid_until: Optional[datetime] = Field(None, description="Expiry timestamp")
    is_verified: bool = Field(False, description="Verified by an operator")
    verified_at: Optional[datetime] = Field(None, description="Verification timestamp")

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe representation for push and API responses."""
        return self.model_dump(mode="json")


class DeliveryRecord(BaseModel):
    """Outcome of delivering one alert to one subscriber over one channel."""

    id: Optional[int] = None
    alert_id: str
    subscriber_id: str
    method: DeliveryMethod
    status: DeliveryStatus = DeliveryStatus.PENDING
    provider: Optional[str] = None
    provider_message_id: Optional[str] = None
    attempts: int = Field(1, ge=0)
    last_error: Optional[str] = None
    sent_at: datetime = Field(default_factory=utc_now)
    last_attempt_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
