"""
Hazard risk rules for KAI Alerts.

Each evaluator inspects a normalized weather snapshot for one region and
returns an alert when its hazard condition holds, or None otherwise. The
evaluators are independent and all of them run on every pass, so a region
can raise several alerts of different types at once.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..core.config import AlertsConfig, RegionConfig, ThresholdsConfig
from ..core.models import (
    Alert,
    AlertSeverity,
    AlertType,
    ForecastEntry,
    WeatherSnapshot,
)

logger = logging.getLogger(__name__)

DRY_DAY_MM = 1.0
DROUGHT_WINDOW_DAYS = 30
HEATWAVE_WINDOW_DAYS = 7
DEFAULT_PRESSURE_HPA = 1013.0

# Fixed classification bands
CYCLONE_CRITICAL_KMH = 150.0
CYCLONE_HIGH_KMH = 119.0
DROUGHT_CRITICAL_DAYS = 30
DROUGHT_HIGH_DAYS = 25
HEATWAVE_CRITICAL_C = 42.0
HEATWAVE_HIGH_C = 40.0
HEATWAVE_CRITICAL_DAYS = 5
HEATWAVE_HIGH_DAYS = 3

CYCLONE_DEFAULT_LEAD_HOURS = 48
HEATWAVE_LEAD_HOURS = 24


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def clamp_confidence(value: float) -> int:
    """Round and clamp a confidence score into 0..100."""
    return max(0, min(100, round_half_up(value)))


def hours_between(start: datetime, end: datetime) -> int:
    """Whole hours from start to end, never negative."""
    return max(0, int((end - start).total_seconds() // 3600))


def entries_within(forecast: List[ForecastEntry], hours: int) -> List[ForecastEntry]:
    """Forecast entries that start within `hours` of the first entry."""
    if not forecast:
        return []
    ordered = sorted(forecast, key=lambda entry: entry.time)
    cutoff = ordered[0].time + timedelta(hours=hours)
    return [entry for entry in ordered if entry.time < cutoff]


class RiskRuleEngine:
    """Evaluates weather snapshots against hazard thresholds."""

    def __init__(self, thresholds: ThresholdsConfig, alerts_config: Optional[AlertsConfig] = None):
        """
        Initialize the rule engine.

        Args:
            thresholds: Hazard thresholds
            alerts_config: Alert generation settings (country code, validity)
        """
        self.thresholds = thresholds
        self.alerts_config = alerts_config or AlertsConfig()
        self._evaluators: List[Callable[[RegionConfig, WeatherSnapshot], Optional[Alert]]] = [
            self.evaluate_flood,
            self.evaluate_drought,
            self.evaluate_cyclone,
            self.evaluate_heatwave,
        ]

    def evaluate(self, region: RegionConfig, snapshot: WeatherSnapshot) -> List[Alert]:
        """
        Run every hazard evaluator against a snapshot.

        Args:
            region: Region the snapshot belongs to
            snapshot: Normalized weather data

        Returns:
            Alerts for every hazard whose condition holds
        """
        alerts = []
        for evaluator in self._evaluators:
            try:
                alert = evaluator(region, snapshot)
            except Exception as e:
                logger.error(f"Evaluator {evaluator.__name__} failed for {region.name}: {e}", exc_info=True)
                continue
            if alert is not None:
                alerts.append(alert)
        return alerts

    def evaluate_flood(self, region: RegionConfig, snapshot: WeatherSnapshot) -> Optional[Alert]:
        """Flood risk from 24 hour and 7 day accumulated rainfall."""
        threshold = self.thresholds.flood
        window_24h = entries_within(snapshot.forecast, 24)
        window_7d = entries_within(snapshot.forecast, 24 * 7)

        rainfall_24h = sum(entry.precipitation for entry in window_24h)
        rainfall_7day = sum(entry.precipitation for entry in window_7d)

        if rainfall_24h <= threshold.rainfall_24h and rainfall_7day <= threshold.rainfall_7day:
            return None

        if rainfall_24h > threshold.rainfall_24h * 1.5:
            severity = AlertSeverity.CRITICAL
        elif rainfall_24h > threshold.rainfall_24h:
            severity = AlertSeverity.HIGH
        else:
            severity = AlertSeverity.MEDIUM

        confidence = min(95, 70 + (rainfall_24h / threshold.rainfall_24h) * 15)

        wettest = max(window_7d, key=lambda entry: entry.precipitation)
        lead_time = hours_between(snapshot.fetched_at, wettest.time)

        if severity == AlertSeverity.CRITICAL:
            recommendations = [
                "EVACUATE LOW-LYING AREAS NOW!",
                "Move livestock and harvest to high ground immediately.",
            ]
        else:
            recommendations = [
                "Move harvest to elevated storage.",
                "Prepare drainage.",
                "Monitor water levels.",
            ]

        return self._build_alert(
            alert_type=AlertType.FLOOD,
            region=region,
            snapshot=snapshot,
            severity=severity,
            confidence=confidence,
            lead_time=lead_time,
            title=f"Flood Warning - {region.name}",
            description=(
                f"Heavy rainfall expected: {round_half_up(rainfall_24h)}mm in next 24 hours. "
                f"Total 7-day forecast: {round_half_up(rainfall_7day)}mm. Flood risk is {severity.value}."
            ),
            recommendations=recommendations,
            impact_assessment=(
                f"Potential flooding in {region.name} and surrounding areas. "
                "Crops at risk: Maize, rice, vegetables in low-lying fields."
            ),
            metadata={
                "rainfall_24h": round(rainfall_24h, 1),
                "rainfall_7day": round(rainfall_7day, 1),
                "threshold": threshold.rainfall_24h,
            },
        )

    def evaluate_drought(self, region: RegionConfig, snapshot: WeatherSnapshot) -> Optional[Alert]:
        """Drought risk from dry days, 30 day rainfall and average temperature."""
        threshold = self.thresholds.drought
        days = snapshot.daily()[:DROUGHT_WINDOW_DAYS]
        if not days:
            return None

        dry_days = sum(1 for day in days if day.precipitation < DRY_DAY_MM)
        rainfall_30day = sum(day.precipitation for day in days)

        temperatures = [day.avg_temperature for day in days if day.avg_temperature is not None]
        if temperatures:
            avg_temp = sum(temperatures) / len(temperatures)
        else:
            avg_temp = snapshot.current.temperature

        hot_and_dry = (
            rainfall_30day < threshold.rainfall_30day
            and avg_temp is not None
            and avg_temp > threshold.temperature_avg
        )
        if dry_days <= threshold.days_without_rain and not hot_and_dry:
            return None

        if dry_days > DROUGHT_CRITICAL_DAYS:
            severity = AlertSeverity.CRITICAL
        elif dry_days > DROUGHT_HIGH_DAYS:
            severity = AlertSeverity.HIGH
        else:
            severity = AlertSeverity.MEDIUM

        confidence = min(90, 65 + (dry_days / threshold.days_without_rain) * 20)
        avg_text = f"{round_half_up(avg_temp)}°C" if avg_temp is not None else "unknown"

        return self._build_alert(
            alert_type=AlertType.DROUGHT,
            region=region,
            snapshot=snapshot,
            severity=severity,
            confidence=confidence,
            lead_time=0,
            title=f"Drought Alert - {region.name}",
            description=(
                f"{dry_days} days forecast without significant rainfall. "
                f"Only {round_half_up(rainfall_30day)}mm expected in next {len(days)} days. "
                f"Average temperature: {avg_text}."
            ),
            recommendations=[
                "Plant drought-resistant crops (sorghum, millet).",
                "Implement water conservation.",
                "Consider irrigation if available.",
            ],
            impact_assessment=(
                f"Severe drought conditions in {region.name}. "
                "Crops at risk: Maize, beans. Water sources may dry up."
            ),
            metadata={
                "days_without_rain": dry_days,
                "rainfall_30day": round(rainfall_30day, 1),
                "avg_temp": round(avg_temp, 1) if avg_temp is not None else None,
                "threshold": threshold.days_without_rain,
            },
        )

    def evaluate_cyclone(self, region: RegionConfig, snapshot: WeatherSnapshot) -> Optional[Alert]:
        """Cyclone and high wind risk from wind speed and pressure."""
        threshold = self.thresholds.cyclone
        current_wind = snapshot.current.wind_speed or 0.0
        forecast_winds = [entry.wind_speed for entry in snapshot.forecast if entry.wind_speed is not None]
        forecast_wind = max(forecast_winds) if forecast_winds else 0.0
        pressure = snapshot.current.pressure if snapshot.current.pressure is not None else DEFAULT_PRESSURE_HPA

        low_pressure = pressure < threshold.pressure
        if current_wind <= threshold.wind_speed and forecast_wind <= threshold.wind_speed and not low_pressure:
            return None

        max_wind = max(current_wind, forecast_wind)
        if max_wind > CYCLONE_CRITICAL_KMH:
            severity = AlertSeverity.CRITICAL
        elif max_wind > CYCLONE_HIGH_KMH:
            severity = AlertSeverity.HIGH
        else:
            severity = AlertSeverity.MEDIUM

        confidence = 85 if low_pressure else 75

        if current_wind > threshold.wind_speed:
            lead_time = 0
        else:
            lead_time = CYCLONE_DEFAULT_LEAD_HOURS
            for entry in sorted(snapshot.forecast, key=lambda e: e.time):
                if entry.wind_speed is not None and entry.wind_speed > threshold.wind_speed:
                    lead_time = hours_between(snapshot.fetched_at, entry.time)
                    break

        if severity == AlertSeverity.CRITICAL:
            title = f"Cyclone Warning - {region.name}"
            headline = "TROPICAL CYCLONE expected."
            recommendations = [
                "EVACUATE NOW!",
                "Seek shelter in sturdy buildings.",
                "Stay away from windows.",
            ]
        else:
            title = f"High Wind Warning - {region.name}"
            headline = "Strong winds expected."
            recommendations = [
                "Secure loose objects.",
                "Harvest ready crops.",
                "Reinforce structures.",
            ]

        return self._build_alert(
            alert_type=AlertType.CYCLONE,
            region=region,
            snapshot=snapshot,
            severity=severity,
            confidence=confidence,
            lead_time=lead_time,
            title=title,
            description=(
                f"{headline} Wind speed: up to {round_half_up(max_wind)} km/h. "
                f"Pressure: {round_half_up(pressure)} mb."
            ),
            recommendations=recommendations,
            impact_assessment=(
                f"Dangerous wind conditions in {region.name}. "
                "Risk of structural damage, falling trees, power outages."
            ),
            metadata={
                "wind_speed": round_half_up(max_wind),
                "pressure": pressure,
                "threshold": threshold.wind_speed,
            },
        )

    def evaluate_heatwave(self, region: RegionConfig, snapshot: WeatherSnapshot) -> Optional[Alert]:
        """Heatwave risk from a consecutive run of hot days."""
        threshold = self.thresholds.heatwave
        days = snapshot.daily()[:HEATWAVE_WINDOW_DAYS]

        consecutive_days = 0
        for day in days:
            temp = day.max_temperature if day.max_temperature is not None else day.avg_temperature
            if temp is None or temp <= threshold.temperature_max:
                break
            consecutive_days += 1

        candidates = [snapshot.current.temperature]
        candidates.extend(
            day.max_temperature if day.max_temperature is not None else day.avg_temperature
            for day in days
        )
        candidates = [t for t in candidates if t is not None]
        if not candidates:
            return None
        max_temp = max(candidates)

        if consecutive_days < threshold.days_sustained and max_temp <= threshold.temperature_max + 3:
            return None

        if max_temp > HEATWAVE_CRITICAL_C or consecutive_days > HEATWAVE_CRITICAL_DAYS:
            severity = AlertSeverity.CRITICAL
        elif max_temp > HEATWAVE_HIGH_C or consecutive_days > HEATWAVE_HIGH_DAYS:
            severity = AlertSeverity.HIGH
        else:
            severity = AlertSeverity.MEDIUM

        return self._build_alert(
            alert_type=AlertType.HEATWAVE,
            region=region,
            snapshot=snapshot,
            severity=severity,
            confidence=75,
            lead_time=HEATWAVE_LEAD_HOURS,
            title=f"Heatwave Alert - {region.name}",
            description=(
                f"Extreme heat expected for {consecutive_days} consecutive days. "
                f"Maximum temperature: {round_half_up(max_temp)}°C."
            ),
            recommendations=[
                "Protect livestock from heat.",
                "Increase irrigation.",
                "Harvest heat-sensitive crops early.",
                "Provide shade for animals.",
            ],
            impact_assessment=(
                f"Dangerous heat conditions in {region.name}. "
                "Crops at risk: Vegetables, flowers. Livestock stress likely."
            ),
            metadata={
                "max_temp": round_half_up(max_temp),
                "consecutive_days": consecutive_days,
                "threshold": threshold.temperature_max,
            },
        )

    def _build_alert(
        self,
        alert_type: AlertType,
        region: RegionConfig,
        snapshot: WeatherSnapshot,
        severity: AlertSeverity,
        confidence: float,
        lead_time: int,
        title: str,
        description: str,
        recommendations: List[str],
        impact_assessment: str,
        metadata: dict,
    ) -> Alert:
        issued_at = snapshot.fetched_at
        forecast_date = issued_at + timedelta(hours=lead_time)
        return Alert(
            type=alert_type,
            severity=severity,
            confidence=clamp_confidence(confidence),
            region=region.name,
            country_code=self.alerts_config.country_code,
            forecast_date=forecast_date,
            lead_time_hours=lead_time,
            title=title,
            description=description,
            recommendations=recommendations,
            impact_assessment=impact_assessment,
            metadata={**metadata, "data_source": snapshot.source},
            issued_at=issued_at,
            valid_until=forecast_date + timedelta(hours=self.alerts_config.validity_hours),
        )
