"""
Region monitoring for KAI Alerts.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..api.weather_providers import ProviderUnavailableError, WeatherProvider
from ..core.config import RegionConfig
from ..core.models import Alert, WeatherSnapshot, utc_now
from ..core.stats import SchedulerRunStats
from ..database.manager import DatabaseError, DatabaseManager
from ..utils.logging import AlertLogger, default_loggers
from .rules import RiskRuleEngine

logger = logging.getLogger(__name__)


class RegionMonitor:
    """Fetches weather for every region, evaluates hazards and stores alerts."""

    def __init__(
        self,
        regions: Sequence[RegionConfig],
        providers: Sequence[WeatherProvider],
        rule_engine: RiskRuleEngine,
        database: DatabaseManager,
        run_stats: SchedulerRunStats,
        region_delay: float = 1.0,
        alert_logger: Optional[AlertLogger] = None,
    ):
        """
        Initialize region monitor.

        Args:
            regions: Regions in iteration order
            providers: Weather providers in priority order
            rule_engine: Hazard rule engine
            database: Alert store
            run_stats: Shared run statistics
            region_delay: Seconds to pause between regions
            alert_logger: Structured alert event logger
        """
        self.regions = list(regions)
        self.providers = list(providers)
        self.rule_engine = rule_engine
        self.database = database
        self.run_stats = run_stats
        self.region_delay = region_delay
        self.alert_logger = alert_logger or default_loggers()[1]

        self.stats: Dict[str, Any] = {
            "forecasts_fetched": 0,
            "alerts_generated": 0,
            "api_calls": 0,
            "provider_failures": 0,
            "regions_skipped": 0,
            "persistence_failures": 0,
            "last_update": None,
        }

    async def fetch_snapshot(self, region: RegionConfig) -> Optional[WeatherSnapshot]:
        """
        Fetch weather for a region from the first provider that answers.

        Returns:
            Snapshot, or None if no provider could serve the region
        """
        for provider in self.providers:
            if not provider.is_configured:
                continue
            self.stats["api_calls"] += 1
            try:
                snapshot = await provider.fetch(region.latitude, region.longitude)
            except ProviderUnavailableError as e:
                self.stats["provider_failures"] += 1
                logger.warning(f"{provider.name} unavailable for {region.name}: {e}")
                continue
            except Exception as e:
                self.stats["provider_failures"] += 1
                logger.error(f"Unexpected error from {provider.name} for {region.name}: {e}", exc_info=True)
                continue
            self.stats["forecasts_fetched"] += 1
            return snapshot
        return None

    async def monitor_region(self, region: RegionConfig) -> List[Alert]:
        """Evaluate one region and persist its alerts."""
        snapshot = await self.fetch_snapshot(region)
        if snapshot is None:
            self.stats["regions_skipped"] += 1
            logger.warning(f"No weather data for {region.name}; skipping region")
            return []

        stored = []
        for alert in self.rule_engine.evaluate(region, snapshot):
            try:
                await self.database.store_alert(alert)
            except DatabaseError as e:
                self.stats["persistence_failures"] += 1
                self.alert_logger.log_dead_letter("alert", alert.to_payload(), str(e), region=region.name)
                continue
            self.alert_logger.log_alert_generated(
                alert.id, alert.type.value, alert.region, alert.severity.value, alert.confidence,
                data_source=snapshot.source,
            )
            stored.append(alert)
        return stored

    async def monitor_all_regions(self) -> List[Alert]:
        """
        Run one hazard sweep across every configured region.

        A failing region is logged and skipped; the sweep always continues.

        Returns:
            All alerts that were successfully persisted
        """
        logger.info(f"Monitoring {len(self.regions)} regions")
        all_alerts: List[Alert] = []

        for index, region in enumerate(self.regions):
            try:
                alerts = await self.monitor_region(region)
                all_alerts.extend(alerts)
                if alerts:
                    logger.info(f"{region.name}: {len(alerts)} alert(s) generated")
            except Exception as e:
                logger.error(f"Error monitoring {region.name}: {e}", exc_info=True)

            if self.region_delay and index < len(self.regions) - 1:
                await asyncio.sleep(self.region_delay)

        self.stats["alerts_generated"] += len(all_alerts)
        self.stats["last_update"] = utc_now().isoformat()
        self.run_stats.record_weather_check(len(all_alerts))

        logger.info(f"Hazard sweep complete: {len(all_alerts)} alerts across {len(self.regions)} regions")
        return all_alerts

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "regions": len(self.regions),
            "providers": [p.name for p in self.providers if p.is_configured],
        }

    async def close(self) -> None:
        for provider in self.providers:
            await provider.close()
