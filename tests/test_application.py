"""
Tests for application wiring and lifecycle.
"""

import asyncio

import pytest

from kai_alerts.core.application import KaiAlertsApplication
from kai_alerts.core.config import AppConfig


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        data_dir=tmp_path,
        regions=[{"name": "Dodoma", "latitude": -6.1630, "longitude": 35.7516}],
        weather={"region_delay_seconds": 0, "max_retries": 0},
        admin={"enabled": False},
        scheduler={"enabled": False},
        logging={"level": "WARNING", "format": "text"},
    )


async def test_initialize_wires_components(config):
    app = KaiAlertsApplication(config)
    await app.initialize()
    try:
        status = app.get_status()

        assert status["initialized"] is True
        assert status["regions"] == 1
        assert status["providers"] == []
        assert status["push_enabled"] is True
        assert status["admin_server"] is None
        assert status["delivery"]["sms_gateways"] == []
        assert status["scheduler"]["is_running"] is False
        assert [p.name for p in app.providers] == ["openweather", "weatherapi"]
    finally:
        await app.shutdown()

    assert app.get_status()["initialized"] is False


async def test_shutdown_is_idempotent(config):
    app = KaiAlertsApplication(config)
    await app.initialize()

    await app.shutdown()
    await app.shutdown()

    assert not app.running


async def test_run_until_shutdown(config, monkeypatch):
    config.scheduler.run_on_start = True
    app = KaiAlertsApplication(config)
    monkeypatch.setattr(app, "_setup_signal_handlers", lambda: None)

    task = asyncio.create_task(app.run())
    for _ in range(100):
        if app.run_stats.weather_checks:
            break
        await asyncio.sleep(0.01)
    app._shutdown_event.set()
    await asyncio.wait_for(task, timeout=5)

    # no provider has a key, so the startup sweep skips the only region
    assert app.run_stats.weather_checks == 1
    assert app.run_stats.alerts_generated == 0
    assert not app.running
