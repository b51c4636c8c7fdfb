"""
Weather provider clients.
"""

from .weather_providers import OpenWeatherProvider, WeatherAPIProvider, WeatherProvider, ProviderUnavailableError, create_provider

__all__ = ["OpenWeatherProvider", "WeatherAPIProvider", "WeatherProvider", "ProviderUnavailableError", "create_provider"]
