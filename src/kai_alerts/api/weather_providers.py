"""
Weather data provider clients for KAI Alerts.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from dateutil import parser

from ..core.config import WeatherProviderConfig
from ..core.models import ForecastEntry, WeatherConditions, WeatherSnapshot

logger = logging.getLogger(__name__)

MS_TO_KMH = 3.6


class ProviderUnavailableError(Exception):
    """Weather provider could not deliver a usable snapshot."""

    pass


class WeatherProvider(ABC):
    """Base class for weather providers."""

    name = "base"
    default_base_url = ""

    def __init__(
        self,
        config: WeatherProviderConfig,
        max_retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize weather provider.

        Args:
            config: Provider configuration
            max_retries: Maximum number of retry attempts for failed requests
            transport: Optional httpx transport (used for testing)
        """
        self.config = config
        self.max_retries = max_retries
        self.client = httpx.AsyncClient(
            base_url=config.base_url or self.default_base_url,
            timeout=config.timeout,
            headers={"User-Agent": "KAI-Alerts"},
            follow_redirects=True,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        """Whether the provider is enabled and has credentials."""
        return self.config.enabled and bool(self.config.api_key)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @abstractmethod
    async def fetch(self, latitude: float, longitude: float) -> WeatherSnapshot:
        """
        Fetch current conditions and forecast for a location.

        Raises:
            ProviderUnavailableError: If the provider is unreachable or returns unusable data
        """

    async def _get_with_retry(
        self, path: str, params: Dict[str, Any], retry_count: int = 0
    ) -> Dict[str, Any]:
        """
        Fetch JSON from the provider with retry logic.

        Args:
            path: Request path relative to the base URL
            params: Query parameters
            retry_count: Current retry attempt

        Returns:
            JSON response data
        """
        try:
            response = await self.client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500 and retry_count < self.max_retries:
                logger.warning(
                    f"{self.name} server error {e.response.status_code}, retrying... "
                    f"({retry_count + 1}/{self.max_retries})"
                )
                await asyncio.sleep(2 ** retry_count)
                return await self._get_with_retry(path, params, retry_count + 1)
            logger.error(f"{self.name} HTTP error: {e.response.status_code}")
            raise ProviderUnavailableError(f"{self.name} HTTP error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            if retry_count < self.max_retries:
                logger.warning(f"{self.name} request error, retrying... ({retry_count + 1}/{self.max_retries})")
                await asyncio.sleep(2 ** retry_count)
                return await self._get_with_retry(path, params, retry_count + 1)
            logger.error(f"{self.name} request error: {e}")
            raise ProviderUnavailableError(f"{self.name} request failed: {e}") from e
        except ValueError as e:
            raise ProviderUnavailableError(f"{self.name} returned invalid JSON") from e


class OpenWeatherProvider(WeatherProvider):
    """OpenWeather current conditions and 3-hourly forecast."""

    name = "openweather"
    default_base_url = "https://api.openweathermap.org/data/2.5"

    async def fetch(self, latitude: float, longitude: float) -> WeatherSnapshot:
        params = {
            "lat": latitude,
            "lon": longitude,
            "appid": self.config.api_key,
            "units": "metric",
        }
        current, forecast = await asyncio.gather(
            self._get_with_retry("/weather", params),
            self._get_with_retry("/forecast", {**params, "cnt": 40}),
        )
        try:
            return self._normalize(current, forecast)
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderUnavailableError(f"openweather response malformed: {e}") from e

    def _normalize(self, current: Dict[str, Any], forecast: Dict[str, Any]) -> WeatherSnapshot:
        offset = timedelta(seconds=(forecast.get("city") or {}).get("timezone", 0))

        entries: List[ForecastEntry] = []
        for item in forecast["list"]:
            main = item["main"]
            time = datetime.fromtimestamp(item["dt"], tz=timezone.utc)
            entries.append(ForecastEntry(
                time=time,
                date=(time + offset).date(),
                interval_hours=3,
                temperature=main.get("temp"),
                max_temperature=main.get("temp_max"),
                min_temperature=main.get("temp_min"),
                humidity=main.get("humidity"),
                pressure=main.get("pressure"),
                wind_speed=_kmh(item.get("wind", {}).get("speed")),
                precipitation=(item.get("rain") or {}).get("3h", 0.0),
                cloud_cover=(item.get("clouds") or {}).get("all"),
            ))

        main = current["main"]
        return WeatherSnapshot(
            source=self.name,
            current=WeatherConditions(
                temperature=main.get("temp"),
                humidity=main.get("humidity"),
                pressure=main.get("pressure"),
                wind_speed=_kmh(current.get("wind", {}).get("speed")),
                precipitation=(current.get("rain") or {}).get("1h", 0.0),
                cloud_cover=(current.get("clouds") or {}).get("all"),
            ),
            forecast=entries,
        )


class WeatherAPIProvider(WeatherProvider):
    """WeatherAPI.com current conditions and daily forecast."""

    name = "weatherapi"
    default_base_url = "https://api.weatherapi.com/v1"

    async def fetch(self, latitude: float, longitude: float) -> WeatherSnapshot:
        data = await self._get_with_retry("/forecast.json", {
            "key": self.config.api_key,
            "q": f"{latitude},{longitude}",
            "days": 7,
            "aqi": "no",
            "alerts": "yes",
        })
        try:
            return self._normalize(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderUnavailableError(f"weatherapi response malformed: {e}") from e

    def _normalize(self, data: Dict[str, Any]) -> WeatherSnapshot:
        current = data["current"]
        entries = []
        for forecast_day in data["forecast"]["forecastday"]:
            day = forecast_day["day"]
            start = parser.isoparse(forecast_day["date"]).replace(tzinfo=timezone.utc)
            entries.append(ForecastEntry(
                time=start,
                date=start.date(),
                interval_hours=24,
                temperature=day.get("avgtemp_c"),
                max_temperature=day.get("maxtemp_c"),
                min_temperature=day.get("mintemp_c"),
                humidity=day.get("avghumidity"),
                wind_speed=day.get("maxwind_kph"),
                precipitation=day.get("totalprecip_mm") or 0.0,
            ))

        return WeatherSnapshot(
            source=self.name,
            current=WeatherConditions(
                temperature=current.get("temp_c"),
                humidity=current.get("humidity"),
                pressure=current.get("pressure_mb"),
                wind_speed=current.get("wind_kph"),
                precipitation=current.get("precip_mm") or 0.0,
                cloud_cover=current.get("cloud"),
            ),
            forecast=entries,
        )


def _kmh(speed_ms: Optional[float]) -> Optional[float]:
    if speed_ms is None:
        return None
    return speed_ms * MS_TO_KMH


PROVIDERS = {
    OpenWeatherProvider.name: OpenWeatherProvider,
    WeatherAPIProvider.name: WeatherAPIProvider,
}


def create_provider(
    config: WeatherProviderConfig,
    max_retries: int = 2,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> WeatherProvider:
    """Build a provider client from its configuration."""
    try:
        provider_class = PROVIDERS[config.name]
    except KeyError:
        raise ValueError(f"Unknown weather provider: {config.name}") from None
    return provider_class(config, max_retries=max_retries, transport=transport)
