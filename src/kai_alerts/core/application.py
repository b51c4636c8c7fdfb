"""
Core application logic for KAI Alerts.
"""

import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import AppConfig
from .scheduler import AlertScheduler
from .stats import SchedulerRunStats
from ..api.weather_providers import WeatherProvider, create_provider
from ..database.manager import DatabaseManager
from ..monitoring.server import AdminServer
from ..notifications.delivery import DeliveryOrchestrator
from ..notifications.email import EmailNotifier
from ..notifications.push import WebSocketPushHub
from ..notifications.sms import create_gateway
from ..notifications.subscriber import SubscriberManager
from ..notifications.templates import TemplateEngine
from ..processing.monitor import RegionMonitor
from ..processing.rules import RiskRuleEngine
from ..utils.logging import AlertLogger, PerformanceLogger, setup_logging

logger = logging.getLogger(__name__)


class KaiAlertsApplication:
    """Main application class for KAI Alerts."""

    def __init__(self, config: AppConfig):
        """
        Initialize the application.

        Args:
            config: Application configuration
        """
        self.config = config
        self.run_stats = SchedulerRunStats()
        self.database: Optional[DatabaseManager] = None
        self.subscribers: Optional[SubscriberManager] = None
        self.providers: List[WeatherProvider] = []
        self.monitor: Optional[RegionMonitor] = None
        self.push_hub: Optional[WebSocketPushHub] = None
        self.delivery: Optional[DeliveryOrchestrator] = None
        self.scheduler: Optional[AlertScheduler] = None
        self.admin_server: Optional[AdminServer] = None
        self.performance_logger: Optional[PerformanceLogger] = None
        self.alert_logger: Optional[AlertLogger] = None
        self.running = False
        self._initialized = False
        self._shutdown_event = asyncio.Event()
        self._start_time = datetime.now(timezone.utc)

    async def initialize(self) -> None:
        """Initialize the application components."""
        if self._initialized:
            return

        _, self.performance_logger, self.alert_logger = setup_logging(self.config.logging)
        logger.info("Initializing KAI Alerts application")

        self.database = DatabaseManager(self.config)
        await self.database.initialize()
        self.subscribers = SubscriberManager(self.database)

        self.providers = [
            create_provider(provider_config, max_retries=self.config.weather.max_retries)
            for provider_config in self.config.weather.providers
            if provider_config.enabled
        ]
        configured = [p.name for p in self.providers if p.is_configured]
        if configured:
            logger.info(f"Weather providers: {', '.join(configured)}")
        else:
            logger.warning("No weather provider has an API key; hazard sweeps will skip every region")

        self.monitor = RegionMonitor(
            regions=self.config.regions,
            providers=self.providers,
            rule_engine=RiskRuleEngine(self.config.thresholds, self.config.alerts),
            database=self.database,
            run_stats=self.run_stats,
            region_delay=self.config.weather.region_delay_seconds,
            alert_logger=self.alert_logger,
        )

        if self.config.push.enabled:
            self.push_hub = WebSocketPushHub(heartbeat=self.config.push.heartbeat_seconds)

        primary_sms = create_gateway(self.config.sms.primary)
        secondary_sms = create_gateway(self.config.sms.secondary)
        if primary_sms is None and secondary_sms is None:
            logger.warning("No SMS gateway configured; SMS deliveries will fail")

        templates = TemplateEngine(self.config.sms)
        self.delivery = DeliveryOrchestrator(
            config=self.config.delivery,
            database=self.database,
            subscribers=self.subscribers,
            templates=templates,
            primary_sms=primary_sms,
            secondary_sms=secondary_sms,
            push=self.push_hub,
            email=EmailNotifier(self.config.email),
            timezone=self.config.scheduler.timezone,
            alert_logger=self.alert_logger,
        )

        self.scheduler = AlertScheduler(
            config=self.config.scheduler,
            monitor=self.monitor,
            delivery=self.delivery,
            subscribers=self.subscribers,
            database=self.database,
            templates=templates,
            run_stats=self.run_stats,
            performance_logger=self.performance_logger,
        )

        if self.config.admin.enabled:
            self.admin_server = AdminServer(
                scheduler=self.scheduler,
                database=self.database,
                push_hub=self.push_hub,
                host=self.config.admin.host,
                port=self.config.admin.port,
            )

        self._initialized = True
        logger.info(f"Application initialized with {len(self.config.regions)} regions")

    async def run(self) -> None:
        """Run until a shutdown signal arrives."""
        await self.initialize()
        self._setup_signal_handlers()
        self.running = True

        try:
            if self.admin_server:
                await self.admin_server.start()

            if self.config.scheduler.enabled:
                self.scheduler.start()
            else:
                logger.warning("Scheduler disabled; only manual runs will execute")

            if self.config.scheduler.run_on_start:
                result = await self.scheduler.run_now()
                logger.info(f"Startup hazard sweep: {result}")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Shutdown the application gracefully."""
        if not self._initialized:
            return
        logger.info("Shutting down KAI Alerts application")

        self.running = False
        self._shutdown_event.set()

        if self.scheduler:
            self.scheduler.stop()
        if self.admin_server:
            await self.admin_server.stop()
        elif self.push_hub:
            await self.push_hub.close()
        if self.monitor:
            await self.monitor.close()
        if self.delivery:
            await self.delivery.close()
        if self.database:
            await self.database.close()

        self._initialized = False
        logger.info("Application shutdown complete")

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def get_status(self) -> Dict[str, Any]:
        """
        Get current application status.

        Returns:
            Status dictionary
        """
        status = {
            'running': self.running,
            'initialized': self._initialized,
            'regions': len(self.config.regions),
            'providers': [p.name for p in self.providers if p.is_configured],
            'push_enabled': self.push_hub is not None,
            'push_clients': self.push_hub.client_count if self.push_hub else 0,
            'admin_server': f"{self.config.admin.host}:{self.config.admin.port}" if self.admin_server else None,
            'uptime_seconds': (datetime.now(timezone.utc) - self._start_time).total_seconds(),
        }
        if self.scheduler:
            status['scheduler'] = self.scheduler.get_stats()
        if self.delivery:
            status['delivery'] = self.delivery.get_stats()
        return status
