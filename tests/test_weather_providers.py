"""
Tests for the weather provider clients.
"""

from datetime import date

import httpx
import pytest

from kai_alerts.api.weather_providers import (
    OpenWeatherProvider,
    ProviderUnavailableError,
    WeatherAPIProvider,
    create_provider,
)
from kai_alerts.core.config import WeatherProviderConfig

OPENWEATHER_CURRENT = {
    "main": {"temp": 29.5, "humidity": 70, "pressure": 1009},
    "wind": {"speed": 10.0},
    "rain": {"1h": 2.5},
    "clouds": {"all": 40},
}

OPENWEATHER_FORECAST = {
    "city": {"timezone": 10800},
    "list": [
        {
            # 2026-03-02 22:00 UTC, already 3 March in Dodoma
            "dt": 1772488800,
            "main": {"temp": 25.0, "temp_max": 26.0, "temp_min": 24.0, "humidity": 80, "pressure": 1010},
            "wind": {"speed": 5.0},
            "rain": {"3h": 12.0},
            "clouds": {"all": 90},
        },
        {
            "dt": 1772499600,
            "main": {"temp": 24.0, "temp_max": 24.5, "temp_min": 23.0, "humidity": 85, "pressure": 1011},
            "wind": {"speed": 4.0},
        },
    ],
}

WEATHERAPI_FORECAST = {
    "current": {
        "temp_c": 31.0,
        "humidity": 55,
        "pressure_mb": 1008.0,
        "wind_kph": 18.0,
        "precip_mm": 0.0,
        "cloud": 25,
    },
    "forecast": {
        "forecastday": [
            {"date": "2026-03-02", "day": {
                "avgtemp_c": 30.0, "maxtemp_c": 36.0, "mintemp_c": 22.0,
                "avghumidity": 60, "maxwind_kph": 25.0, "totalprecip_mm": 4.2,
            }},
            {"date": "2026-03-03", "day": {
                "avgtemp_c": 31.0, "maxtemp_c": 39.0, "mintemp_c": 23.0,
                "avghumidity": 58, "maxwind_kph": 20.0, "totalprecip_mm": None,
            }},
        ]
    },
}


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    async def instant(seconds):
        return None

    monkeypatch.setattr("kai_alerts.api.weather_providers.asyncio.sleep", instant)


def openweather(handler, max_retries=2):
    config = WeatherProviderConfig(name="openweather", api_key="test-key")
    return OpenWeatherProvider(config, max_retries=max_retries, transport=httpx.MockTransport(handler))


def weatherapi(handler, max_retries=2):
    config = WeatherProviderConfig(name="weatherapi", api_key="test-key")
    return WeatherAPIProvider(config, max_retries=max_retries, transport=httpx.MockTransport(handler))


class TestOpenWeather:
    async def test_snapshot_is_normalized(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path.endswith("/weather"):
                return httpx.Response(200, json=OPENWEATHER_CURRENT)
            return httpx.Response(200, json=OPENWEATHER_FORECAST)

        async with openweather(handler) as provider:
            snapshot = await provider.fetch(-6.163, 35.7516)

        assert snapshot.source == "openweather"
        assert snapshot.current.wind_speed == pytest.approx(36.0)
        assert snapshot.current.precipitation == 2.5
        assert snapshot.current.pressure == 1009

        first, second = snapshot.forecast
        assert first.precipitation == 12.0
        assert first.wind_speed == pytest.approx(18.0)
        assert first.max_temperature == 26.0
        assert first.interval_hours == 3
        assert first.date == date(2026, 3, 3)
        assert second.precipitation == 0.0

        params = requests[0].url.params
        assert params["appid"] == "test-key"
        assert params["units"] == "metric"

    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(401, json={"message": "Invalid API key"})

        provider = openweather(handler)
        with pytest.raises(ProviderUnavailableError, match="401"):
            await provider.fetch(-6.163, 35.7516)
        await provider.close()

        # one request per endpoint
        assert len(calls) == 2

    async def test_malformed_payload_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"unexpected": True})

        provider = openweather(handler)
        with pytest.raises(ProviderUnavailableError, match="malformed"):
            await provider.fetch(-6.163, 35.7516)
        await provider.close()


class TestWeatherAPI:
    async def test_snapshot_is_normalized(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["q"] == "-3.3869,36.683"
            assert request.url.params["days"] == "7"
            return httpx.Response(200, json=WEATHERAPI_FORECAST)

        async with weatherapi(handler) as provider:
            snapshot = await provider.fetch(-3.3869, 36.683)

        assert snapshot.source == "weatherapi"
        assert snapshot.current.wind_speed == 18.0
        assert [e.date for e in snapshot.forecast] == [date(2026, 3, 2), date(2026, 3, 3)]
        assert snapshot.forecast[0].interval_hours == 24
        assert snapshot.forecast[1].max_temperature == 39.0
        assert snapshot.forecast[1].precipitation == 0.0

    async def test_server_errors_are_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json=WEATHERAPI_FORECAST)

        async with weatherapi(handler) as provider:
            snapshot = await provider.fetch(-3.3869, 36.683)

        assert len(calls) == 3
        assert len(snapshot.forecast) == 2

    async def test_retries_are_bounded(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        provider = weatherapi(handler, max_retries=1)
        with pytest.raises(ProviderUnavailableError, match="500"):
            await provider.fetch(-3.3869, 36.683)
        await provider.close()

        assert len(calls) == 2

    async def test_transport_errors_become_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = weatherapi(handler, max_retries=0)
        with pytest.raises(ProviderUnavailableError, match="request failed"):
            await provider.fetch(-3.3869, 36.683)
        await provider.close()


class TestCreateProvider:
    async def test_builds_provider_by_name(self):
        provider = create_provider(WeatherProviderConfig(name="weatherapi", api_key="k"))
        assert isinstance(provider, WeatherAPIProvider)
        assert provider.is_configured
        await provider.close()

    async def test_missing_key_is_not_configured(self):
        provider = create_provider(WeatherProviderConfig(name="openweather"))
        assert not provider.is_configured
        await provider.close()
