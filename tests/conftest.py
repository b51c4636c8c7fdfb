"""
pytest configuration and shared fixtures.
"""

import pytest

from kai_alerts.core.config import (
    AppConfig,
    DeliveryConfig,
    EmailConfig,
    RegionConfig,
    SchedulerConfig,
    SMSConfig,
    ThresholdsConfig,
)
from kai_alerts.core.scheduler import AlertScheduler
from kai_alerts.core.stats import SchedulerRunStats
from kai_alerts.database.manager import DatabaseManager
from kai_alerts.notifications.delivery import DeliveryOrchestrator
from kai_alerts.notifications.email import EmailNotifier
from kai_alerts.notifications.subscriber import SubscriberManager
from kai_alerts.notifications.templates import TemplateEngine
from kai_alerts.processing.monitor import RegionMonitor
from kai_alerts.processing.rules import RiskRuleEngine

from factories import hourly_entries, make_snapshot
from fakes import FakeGateway, FakePush, FakeProvider

DODOMA = RegionConfig(name="Dodoma", latitude=-6.1630, longitude=35.7516)


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(data_dir=tmp_path)


@pytest.fixture
async def database(app_config, tmp_path):
    manager = DatabaseManager(app_config)
    await manager.initialize(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    yield manager
    await manager.close()


@pytest.fixture
def subscribers(database) -> SubscriberManager:
    return SubscriberManager(database)


@pytest.fixture
def run_stats() -> SchedulerRunStats:
    return SchedulerRunStats()


@pytest.fixture
def primary_sms() -> FakeGateway:
    return FakeGateway("primary_sms")


@pytest.fixture
def secondary_sms() -> FakeGateway:
    return FakeGateway("secondary_sms")


@pytest.fixture
def push() -> FakePush:
    return FakePush()


@pytest.fixture
def templates() -> TemplateEngine:
    return TemplateEngine(SMSConfig())


@pytest.fixture
def orchestrator(database, subscribers, templates, primary_sms, secondary_sms, push) -> DeliveryOrchestrator:
    return DeliveryOrchestrator(
        config=DeliveryConfig(),
        database=database,
        subscribers=subscribers,
        templates=templates,
        primary_sms=primary_sms,
        secondary_sms=secondary_sms,
        push=push,
        email=EmailNotifier(EmailConfig()),
    )


@pytest.fixture
def provider() -> FakeProvider:
    """Provider forecasting 160 mm over 24 hours for every region."""
    return FakeProvider(default=make_snapshot(hourly_entries([20.0] * 8)))


@pytest.fixture
def scheduler(database, subscribers, orchestrator, templates, run_stats, provider) -> AlertScheduler:
    monitor = RegionMonitor(
        regions=[DODOMA],
        providers=[provider],
        rule_engine=RiskRuleEngine(ThresholdsConfig()),
        database=database,
        run_stats=run_stats,
        region_delay=0,
    )
    return AlertScheduler(
        config=SchedulerConfig(),
        monitor=monitor,
        delivery=orchestrator,
        subscribers=subscribers,
        database=database,
        templates=templates,
        run_stats=run_stats,
    )
