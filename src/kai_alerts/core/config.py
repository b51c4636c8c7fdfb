"""
Configuration management for KAI Alerts.
"""

from pathlib import Path
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from ruamel.yaml import YAML


class WeatherProviderConfig(BaseModel):
    """Weather data provider configuration."""

    name: str = Field(..., description="Provider name: 'openweather' or 'weatherapi'")
    enabled: bool = Field(True, description="Enable this provider")
    api_key: Optional[str] = Field(None, description="Provider API key")
    base_url: Optional[str] = Field(None, description="Override the provider base URL")
    timeout: int = Field(30, description="Request timeout in seconds")

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.lower()
        if value not in ("openweather", "weatherapi"):
            raise ValueError(f"Unknown weather provider: {value}")
        return value


def _default_providers() -> List[WeatherProviderConfig]:
    return [
        WeatherProviderConfig(name="openweather"),
        WeatherProviderConfig(name="weatherapi"),
    ]


class WeatherConfig(BaseModel):
    """Weather ingestion configuration."""

    providers: List[WeatherProviderConfig] = Field(
        default_factory=_default_providers,
        description="Providers in priority order; the first that answers wins"
    )
    region_delay_seconds: float = Field(1.0, ge=0, description="Pause between regions during a sweep")
    max_retries: int = Field(2, ge=0, description="Retries per provider request on 5xx/transport errors")


class RegionConfig(BaseModel):
    """Monitored region."""

    name: str = Field(..., description="Region name")
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


def _default_regions() -> List[RegionConfig]:
    return [
        RegionConfig(name="Dar es Salaam", latitude=-6.7924, longitude=39.2083),
        RegionConfig(name="Morogoro", latitude=-6.8211, longitude=37.6636),
        RegionConfig(name="Dodoma", latitude=-6.1630, longitude=35.7516),
        RegionConfig(name="Mwanza", latitude=-2.5164, longitude=32.9175),
        RegionConfig(name="Arusha", latitude=-3.3869, longitude=36.6830),
        RegionConfig(name="Mbeya", latitude=-8.9094, longitude=33.4606),
        RegionConfig(name="Tanga", latitude=-5.0689, longitude=39.0986),
        RegionConfig(name="Zanzibar", latitude=-6.1659, longitude=39.2026),
        RegionConfig(name="Kilimanjaro", latitude=-3.3731, longitude=37.3397),
        RegionConfig(name="Iringa", latitude=-7.7700, longitude=35.6900),
    ]


class FloodThresholds(BaseModel):
    """Flood thresholds."""

    rainfall_24h: float = Field(100.0, gt=0, description="24 hour rainfall in mm")
    rainfall_7day: float = Field(250.0, gt=0, description="7 day rainfall in mm")

    @model_validator(mode="after")
    def check_windows(self) -> "FloodThresholds":
        if self.rainfall_7day < self.rainfall_24h:
            raise ValueError("rainfall_7day must not be lower than rainfall_24h")
        return self


class DroughtThresholds(BaseModel):
    """Drought thresholds."""

    days_without_rain: int = Field(21, gt=0, lt=30, description="Dry days within the 30 day window")
    rainfall_30day: float = Field(20.0, gt=0, description="30 day rainfall in mm")
    temperature_avg: float = Field(35.0, gt=0, description="Average temperature in Celsius")


class CycloneThresholds(BaseModel):
    """Cyclone thresholds."""

    wind_speed: float = Field(119.0, gt=0, description="Wind speed in km/h")
    pressure: float = Field(980.0, ge=850, le=1100, description="Pressure in hPa")


class HeatwaveThresholds(BaseModel):
    """Heatwave thresholds."""

    temperature_max: float = Field(38.0, gt=0, description="Daily maximum temperature in Celsius")
    days_sustained: int = Field(3, ge=1, le=7, description="Consecutive hot days within the 7 day window")


class ThresholdsConfig(BaseModel):
    """Hazard thresholds."""

    flood: FloodThresholds = Field(default_factory=FloodThresholds)
    drought: DroughtThresholds = Field(default_factory=DroughtThresholds)
    cyclone: CycloneThresholds = Field(default_factory=CycloneThresholds)
    heatwave: HeatwaveThresholds = Field(default_factory=HeatwaveThresholds)


class AlertsConfig(BaseModel):
    """Alert generation configuration."""

    country_code: str = Field("TZ", description="Country code stored on generated alerts")
    validity_hours: int = Field(48, gt=0, description="Hours after the forecast date before an alert expires")


class SMSGatewayConfig(BaseModel):
    """SMS gateway configuration."""

    provider: str = Field("africastalking", description="Gateway: 'africastalking' or 'twilio'")
    enabled: bool = Field(True, description="Enable this gateway")
    username: Optional[str] = Field(None, description="Africa's Talking username")
    api_key: Optional[str] = Field(None, description="Africa's Talking API key")
    sender_id: Optional[str] = Field("KAI", description="Short code or sender ID")
    account_sid: Optional[str] = Field(None, description="Twilio account SID")
    auth_token: Optional[str] = Field(None, description="Twilio auth token")
    from_number: Optional[str] = Field(None, description="Twilio sending number")
    base_url: Optional[str] = Field(None, description="Override the gateway base URL")
    timeout: int = Field(30, description="Request timeout in seconds")

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, value: str) -> str:
        value = value.lower()
        if value not in ("africastalking", "twilio"):
            raise ValueError(f"Unknown SMS gateway: {value}")
        return value


class SMSConfig(BaseModel):
    """SMS delivery configuration."""

    primary: SMSGatewayConfig = Field(default_factory=SMSGatewayConfig)
    secondary: Optional[SMSGatewayConfig] = Field(
        None, description="Fallback gateway, used once when the primary fails"
    )
    max_length: int = Field(160, ge=20, description="Maximum alert SMS length")
    digest_max_length: int = Field(480, ge=20, description="Maximum digest SMS length")
    signature: str = Field("- KAI Intelligence", description="Signature appended to every SMS")
    default_language: str = Field("sw", description="Language used when a subscriber has none")


class PushConfig(BaseModel):
    """Real-time push channel configuration."""

    enabled: bool = Field(True, description="Enable the WebSocket push channel")
    heartbeat_seconds: float = Field(30.0, gt=0, description="WebSocket heartbeat interval")


class EmailConfig(BaseModel):
    """Email configuration."""

    enabled: bool = Field(False, description="Enable the email channel")


class DeliveryConfig(BaseModel):
    """Delivery orchestration configuration."""

    default_methods: List[str] = Field(default_factory=lambda: ["sms", "push"])
    max_attempts: int = Field(3, ge=1, description="Attempt ceiling for the retry sweep")
    retry_window_hours: int = Field(24, gt=0, description="Only failures newer than this are retried")
    max_alerts_per_day: int = Field(10, ge=1, description="Successful deliveries per subscriber per day")

    @field_validator("default_methods")
    @classmethod
    def validate_methods(cls, value: List[str]) -> List[str]:
        allowed = {"sms", "push", "email"}
        unknown = [m for m in value if m not in allowed]
        if unknown:
            raise ValueError(f"Unknown delivery methods: {', '.join(unknown)}")
        return value


class SchedulerConfig(BaseModel):
    """Scheduler configuration."""

    enabled: bool = Field(True, description="Enable scheduled jobs")
    timezone: str = Field("Africa/Dar_es_Salaam", description="Time zone for cron triggers and day boundaries")
    weather_check_cron: str = Field("0 * * * *", description="Hazard sweep schedule")
    retry_cron: str = Field("*/15 * * * *", description="Retry sweep schedule")
    digest_cron: str = Field("0 6 * * *", description="Daily digest schedule")
    expiry_cron: str = Field("0 0 * * *", description="Subscription expiry sweep schedule")
    expiry_reminder_days: int = Field(3, ge=1, description="Remind subscribers this many days before expiry")
    digest_plans: List[str] = Field(default_factory=lambda: ["premium", "enterprise"])
    misfire_grace_time: int = Field(300, ge=1, description="Seconds a late job may still run")
    run_on_start: bool = Field(False, description="Run a hazard sweep immediately on startup")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @field_validator("weather_check_cron", "retry_cron", "digest_cron", "expiry_cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        try:
            CronTrigger.from_crontab(value)
        except ValueError as e:
            raise ValueError(f"Invalid cron expression '{value}': {e}") from e
        return value


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field("INFO", description="Log level")
    file: Optional[Path] = Field(None, description="Log file path")
    format: str = Field("json", description="Log format: 'json' or 'text'")


class DatabaseConfig(BaseModel):
    """Database configuration."""

    url: Optional[str] = Field(None, description="Database URL (defaults to SQLite in data_dir)")
    echo: bool = Field(False, description="Echo SQL statements")


class AdminServerConfig(BaseModel):
    """Administrative HTTP server configuration."""

    enabled: bool = Field(True, description="Enable the admin HTTP server")
    host: str = Field("0.0.0.0", description="Server host")
    port: int = Field(8100, description="Server port")


class AppConfig(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="KAI_",
        env_nested_delimiter="__",
        extra="allow",
        case_sensitive=False,
    )

    data_dir: Path = Field(Path("/var/lib/kai-alerts/data"), description="Data directory")

    weather: WeatherConfig = Field(default_factory=WeatherConfig)
    regions: List[RegionConfig] = Field(default_factory=_default_regions)
    thresholds: ThresholdsConfig = Field(default_factory=ThresholdsConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    sms: SMSConfig = Field(default_factory=SMSConfig)
    push: PushConfig = Field(default_factory=PushConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    admin: AdminServerConfig = Field(default_factory=AdminServerConfig)

    @field_validator("regions")
    @classmethod
    def validate_regions(cls, value: List[RegionConfig]) -> List[RegionConfig]:
        names = [region.name for region in value]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate region names: {', '.join(duplicates)}")
        return value

    @classmethod
    def from_yaml(cls, config_path = None) -> "AppConfig":
        """Load configuration from YAML file."""
        if config_path is None:
            config_path = Path("config/default.yaml")
        elif isinstance(config_path, str):
            config_path = Path(config_path)

        if not config_path.exists():
            return cls()

        yaml = YAML(typ='safe')
        with open(config_path, 'r') as f:
            yaml_data = yaml.load(f) or {}

        return cls(**yaml_data)
