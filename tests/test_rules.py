"""
Tests for the hazard rule engine.
"""

from datetime import timedelta

import pytest

from kai_alerts.core.config import AlertsConfig, RegionConfig, ThresholdsConfig
from kai_alerts.core.models import AlertSeverity, AlertType
from kai_alerts.processing.rules import RiskRuleEngine, clamp_confidence, entries_within, round_half_up

from factories import NOW, daily_entries, hourly_entries, make_snapshot

DODOMA = RegionConfig(name="Dodoma", latitude=-6.1630, longitude=35.7516)
ARUSHA = RegionConfig(name="Arusha", latitude=-3.3869, longitude=36.6830)


@pytest.fixture
def engine():
    return RiskRuleEngine(ThresholdsConfig(), AlertsConfig())


class TestHelpers:
    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(93.5) == 94
        assert round_half_up(93.4) == 93

    def test_clamp_confidence(self):
        assert clamp_confidence(140) == 100
        assert clamp_confidence(-3) == 0
        assert clamp_confidence(77.5) == 78

    def test_entries_within_is_measured_from_first_entry(self):
        entries = hourly_entries([1, 2, 3, 4], step_hours=12)
        assert [e.precipitation for e in entries_within(entries, 24)] == [1, 2]


class TestFloodRule:
    def test_heavy_rain_is_critical(self, engine):
        snapshot = make_snapshot(hourly_entries([20.0] * 8))

        alert = engine.evaluate_flood(DODOMA, snapshot)

        assert alert.type == AlertType.FLOOD
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.confidence == 94
        assert alert.title == "Flood Warning - Dodoma"
        assert alert.metadata["rainfall_24h"] == 160.0
        assert alert.metadata["data_source"] == "fake"

    @pytest.mark.parametrize("rainfall,expected", [
        (150.0, AlertSeverity.HIGH),
        (150.1, AlertSeverity.CRITICAL),
        (100.1, AlertSeverity.HIGH),
    ])
    def test_critical_boundary_is_one_and_a_half_times_threshold(self, engine, rainfall, expected):
        snapshot = make_snapshot(hourly_entries([rainfall]))
        assert engine.evaluate_flood(DODOMA, snapshot).severity == expected

    def test_weekly_total_alone_is_medium(self, engine):
        snapshot = make_snapshot(hourly_entries([50.0, 250.0], step_hours=48))

        alert = engine.evaluate_flood(DODOMA, snapshot)

        assert alert.severity == AlertSeverity.MEDIUM
        assert alert.confidence == 78
        assert alert.lead_time_hours == 48

    def test_dates_follow_lead_time(self, engine):
        snapshot = make_snapshot(hourly_entries([5.0, 120.0], step_hours=6))

        alert = engine.evaluate_flood(DODOMA, snapshot)

        assert alert.lead_time_hours == 6
        assert alert.issued_at == NOW
        assert alert.forecast_date == NOW + timedelta(hours=6)
        assert alert.valid_until == NOW + timedelta(hours=6 + 48)

    def test_light_rain_raises_nothing(self, engine):
        snapshot = make_snapshot(hourly_entries([2.0] * 40))
        assert engine.evaluate_flood(DODOMA, snapshot) is None


class TestDroughtRule:
    def test_long_dry_spell_is_high(self, engine):
        snapshot = make_snapshot(daily_entries(27, precipitation=0.0))

        alert = engine.evaluate_drought(ARUSHA, snapshot)

        assert alert.type == AlertType.DROUGHT
        assert alert.severity == AlertSeverity.HIGH
        assert alert.confidence == 90
        assert alert.metadata["days_without_rain"] == 27

    def test_exactly_twenty_five_dry_days_is_medium(self, engine):
        snapshot = make_snapshot(daily_entries(25, precipitation=0.0))
        assert engine.evaluate_drought(ARUSHA, snapshot).severity == AlertSeverity.MEDIUM

    def test_hot_and_dry_month_triggers_without_enough_dry_days(self, engine):
        forecast = (
            daily_entries(10, precipitation=0.0, max_temperature=40.0, temperature=37.0)
            + daily_entries(10, precipitation=1.5, max_temperature=40.0, temperature=37.0,
                            start=NOW + timedelta(days=10))
        )
        alert = engine.evaluate_drought(ARUSHA, make_snapshot(forecast))

        assert alert is not None
        assert alert.severity == AlertSeverity.MEDIUM
        assert alert.metadata["avg_temp"] == 37.0

    def test_regular_rain_raises_nothing(self, engine):
        forecast = daily_entries(20, precipitation=0.0) + daily_entries(
            10, precipitation=5.0, start=NOW + timedelta(days=20)
        )
        assert engine.evaluate_drought(ARUSHA, make_snapshot(forecast)) is None

    def test_no_forecast_days_raises_nothing(self, engine):
        assert engine.evaluate_drought(ARUSHA, make_snapshot([])) is None


class TestCycloneRule:
    def test_current_high_wind_is_high(self, engine):
        snapshot = make_snapshot([], wind_speed=130.0, pressure=1005.0)

        alert = engine.evaluate_cyclone(DODOMA, snapshot)

        assert alert.severity == AlertSeverity.HIGH
        assert alert.confidence == 75
        assert alert.lead_time_hours == 0
        assert alert.title == "High Wind Warning - Dodoma"

    def test_forecast_storm_with_low_pressure_is_critical(self, engine):
        forecast = hourly_entries([0.0, 0.0, 0.0], step_hours=6, wind_speed=20.0)
        forecast[2] = forecast[2].model_copy(update={"wind_speed": 160.0})
        snapshot = make_snapshot(forecast, wind_speed=20.0, pressure=970.0)

        alert = engine.evaluate_cyclone(DODOMA, snapshot)

        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.confidence == 85
        assert alert.lead_time_hours == 12
        assert alert.title == "Cyclone Warning - Dodoma"

    def test_low_pressure_alone_defaults_lead_time(self, engine):
        snapshot = make_snapshot([], wind_speed=40.0, pressure=975.0)

        alert = engine.evaluate_cyclone(DODOMA, snapshot)

        assert alert.severity == AlertSeverity.MEDIUM
        assert alert.lead_time_hours == 48

    def test_calm_weather_raises_nothing(self, engine):
        assert engine.evaluate_cyclone(DODOMA, make_snapshot([])) is None


class TestHeatwaveRule:
    def test_four_hot_days_is_high(self, engine):
        forecast = daily_entries(4, max_temperature=39.0) + daily_entries(
            3, max_temperature=30.0, start=NOW + timedelta(days=4)
        )

        alert = engine.evaluate_heatwave(DODOMA, make_snapshot(forecast))

        assert alert.severity == AlertSeverity.HIGH
        assert alert.confidence == 75
        assert alert.metadata["consecutive_days"] == 4
        assert alert.metadata["max_temp"] == 39
        assert alert.lead_time_hours == 24

    def test_single_extreme_day_triggers(self, engine):
        forecast = daily_entries(1, max_temperature=43.0) + daily_entries(
            6, max_temperature=30.0, start=NOW + timedelta(days=1)
        )
        alert = engine.evaluate_heatwave(DODOMA, make_snapshot(forecast))
        assert alert.severity == AlertSeverity.CRITICAL

    def test_short_warm_spell_raises_nothing(self, engine):
        forecast = daily_entries(2, max_temperature=39.0) + daily_entries(
            5, max_temperature=30.0, start=NOW + timedelta(days=2)
        )
        assert engine.evaluate_heatwave(DODOMA, make_snapshot(forecast)) is None


class TestEvaluate:
    def test_hazards_are_evaluated_independently(self, engine):
        forecast = daily_entries(27, precipitation=0.0, max_temperature=39.0)
        alerts = engine.evaluate(DODOMA, make_snapshot(forecast))
        assert {a.type for a in alerts} == {AlertType.DROUGHT, AlertType.HEATWAVE}

    def test_failing_evaluator_does_not_stop_the_others(self, engine):
        def broken(region, snapshot):
            raise RuntimeError("bad data")

        engine._evaluators[0] = broken
        snapshot = make_snapshot([], wind_speed=130.0)

        alerts = engine.evaluate(DODOMA, snapshot)

        assert [a.type for a in alerts] == [AlertType.CYCLONE]

    @pytest.mark.parametrize("snapshot", [
        make_snapshot(hourly_entries([5000.0] * 8)),
        make_snapshot(daily_entries(30, precipitation=0.0, max_temperature=55.0)),
        make_snapshot([], wind_speed=400.0, pressure=860.0, temperature=60.0),
    ])
    def test_confidence_stays_within_bounds(self, engine, snapshot):
        alerts = engine.evaluate(DODOMA, snapshot)
        assert alerts
        assert all(0 <= a.confidence <= 100 for a in alerts)
