"""
Job scheduler for KAI Alerts.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import SchedulerConfig
from .models import Alert, utc_now
from .stats import SchedulerRunStats
from ..database.manager import DatabaseError, DatabaseManager
from ..notifications.delivery import DeliveryOrchestrator
from ..notifications.subscriber import Subscriber, SubscriberManager
from ..notifications.templates import TemplateEngine
from ..processing.monitor import RegionMonitor
from ..utils.logging import PerformanceLogger, default_loggers, get_logger

logger = logging.getLogger(__name__)
events = get_logger("scheduler")

WEATHER_CHECK_JOB = "weather_check"
RETRY_JOB = "delivery_retry"
DIGEST_JOB = "daily_digest"
EXPIRY_JOB = "subscription_expiry"


class SchedulerError(Exception):
    """Scheduler error."""

    pass


class AlertScheduler:
    """Runs the hazard, retry, digest and expiry jobs on cron schedules."""

    def __init__(
        self,
        config: SchedulerConfig,
        monitor: RegionMonitor,
        delivery: DeliveryOrchestrator,
        subscribers: SubscriberManager,
        database: DatabaseManager,
        templates: TemplateEngine,
        run_stats: SchedulerRunStats,
        performance_logger: Optional[PerformanceLogger] = None,
    ):
        """
        Initialize scheduler.

        Args:
            config: Scheduler configuration
            monitor: Region monitor used by the hazard sweep
            delivery: Delivery orchestrator
            subscribers: Subscriber store
            database: Alert store
            templates: Template engine for digests and reminders
            run_stats: Shared run statistics
            performance_logger: Timer for sweeps
        """
        self.config = config
        self.monitor = monitor
        self.delivery = delivery
        self.subscribers = subscribers
        self.database = database
        self.templates = templates
        self.run_stats = run_stats
        self.performance_logger = performance_logger or default_loggers()[0]

        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': config.misfire_grace_time,
            },
            timezone=config.timezone,
        )

        self._locks: Dict[str, asyncio.Lock] = {
            job_id: asyncio.Lock()
            for job_id in (WEATHER_CHECK_JOB, RETRY_JOB, DIGEST_JOB, EXPIRY_JOB)
        }
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        """Register the cron jobs and start the scheduler."""
        if self._is_running:
            return

        jobs = [
            (WEATHER_CHECK_JOB, self.config.weather_check_cron, self.run_hazard_sweep, "Hazard sweep"),
            (RETRY_JOB, self.config.retry_cron, self.run_retry_sweep, "Delivery retry sweep"),
            (DIGEST_JOB, self.config.digest_cron, self.run_daily_digest, "Daily digest"),
            (EXPIRY_JOB, self.config.expiry_cron, self.run_expiry_sweep, "Subscription expiry sweep"),
        ]
        try:
            for job_id, cron, func, name in jobs:
                self.scheduler.add_job(
                    func,
                    trigger=CronTrigger.from_crontab(cron, timezone=self.config.timezone),
                    id=job_id,
                    name=name,
                    replace_existing=True,
                )
            self.scheduler.start()
        except Exception as e:
            raise SchedulerError(f"Failed to start scheduler: {e}") from e

        self._is_running = True
        logger.info(f"Scheduler started with {len(jobs)} jobs ({self.config.timezone})")

    def stop(self) -> None:
        """Stop the scheduler without waiting for running jobs."""
        if not self._is_running:
            return
        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Scheduler stopped")

    # Scheduled entry points. A run that finds its job still busy is skipped.

    async def run_hazard_sweep(self) -> Optional[Dict[str, Any]]:
        return await self._run_scheduled(WEATHER_CHECK_JOB, self._hazard_sweep)

    async def run_retry_sweep(self) -> Optional[Dict[str, Any]]:
        return await self._run_scheduled(RETRY_JOB, self._retry_sweep)

    async def run_daily_digest(self) -> Optional[Dict[str, Any]]:
        return await self._run_scheduled(DIGEST_JOB, self._daily_digest)

    async def run_expiry_sweep(self) -> Optional[Dict[str, Any]]:
        return await self._run_scheduled(EXPIRY_JOB, self._expiry_sweep)

    async def run_now(self) -> Dict[str, Any]:
        """
        Run a hazard sweep immediately, waiting for any running sweep first.

        Returns:
            Dictionary with success, alerts, delivered, failed and duration (ms)
        """
        logger.info("Manual hazard sweep requested")
        try:
            async with self._locks[WEATHER_CHECK_JOB]:
                return await self._hazard_sweep()
        except Exception as e:
            logger.error(f"Manual hazard sweep failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    def get_stats(self) -> Dict[str, Any]:
        """Run statistics plus job schedule information."""
        jobs = {}
        if self._is_running:
            for job in self.scheduler.get_jobs():
                jobs[job.id] = job.next_run_time.isoformat() if job.next_run_time else None

        return {
            **self.run_stats.to_dict(),
            "is_running": self._is_running,
            "jobs_count": len(jobs),
            "jobs": jobs,
            "timezone": self.config.timezone,
        }

    async def _run_scheduled(
        self, job_id: str, func: Callable[[], Awaitable[Dict[str, Any]]]
    ) -> Optional[Dict[str, Any]]:
        lock = self._locks[job_id]
        if lock.locked():
            events.warning("job_skipped", job=job_id, reason="previous run still in progress")
            return None

        async with lock:
            events.info("job_started", job=job_id)
            try:
                result = await func()
            except Exception as e:
                logger.error(f"Scheduled job {job_id} failed: {e}", exc_info=True)
                events.error("job_failed", job=job_id, error=str(e))
                return None
            events.info("job_completed", job=job_id, result=result)
            return result

    async def _hazard_sweep(self) -> Dict[str, Any]:
        timer_id = self.performance_logger.start_timer("hazard_sweep")
        alerts = await self.monitor.monitor_all_regions()

        delivered = 0
        failed = 0
        for alert in alerts:
            try:
                subscribers = await self.subscribers.get_region_subscribers(
                    alert.region, include_enterprise=True, require_allowance=True
                )
            except DatabaseError as e:
                logger.error(f"Could not resolve subscribers for alert {alert.id}: {e}")
                continue

            for subscriber in subscribers:
                if await self._deliver(alert, subscriber):
                    delivered += 1
                else:
                    failed += 1

        duration = self.performance_logger.end_timer(
            timer_id, alerts=len(alerts), delivered=delivered, failed=failed
        )
        logger.info(f"Hazard sweep: {len(alerts)} alerts, {delivered} delivered, {failed} failed")
        return {
            "success": True,
            "alerts": len(alerts),
            "delivered": delivered,
            "failed": failed,
            "duration": duration,
        }

    async def _deliver(self, alert: Alert, subscriber: Subscriber) -> Optional[bool]:
        """Deliver one alert; returns None when skipped by the daily cap."""
        try:
            result = await self.delivery.deliver_with_daily_cap(alert, subscriber)
        except Exception as e:
            logger.error(
                f"Delivery of alert {alert.id} to {subscriber.subscriber_id} failed: {e}",
                exc_info=True,
            )
            self.run_stats.record_delivery(False)
            return False

        if result is None:
            return None
        if not result.success:
            self.run_stats.record_delivery(False)
            return False

        subscription = subscriber.subscription
        if subscription is not None and subscription.subscription_id is not None:
            try:
                await self.subscribers.increment_alerts_used(subscription.subscription_id)
            except DatabaseError as e:
                logger.error(f"Could not count alert usage for {subscriber.subscriber_id}: {e}")
        self.run_stats.record_delivery(True)
        return True

    async def _retry_sweep(self) -> Dict[str, Any]:
        summary = await self.delivery.retry_failed_deliveries()
        self.run_stats.record_retry_sweep(summary["processed"])
        for _ in range(summary["succeeded"]):
            self.run_stats.record_delivery(True)
        return summary

    async def _daily_digest(self) -> Dict[str, Any]:
        timer_id = self.performance_logger.start_timer("daily_digest")
        summary = await self.database.get_active_alert_summary(hours=24)
        recipients = await self.subscribers.get_digest_subscribers(self.config.digest_plans)

        sent = 0
        for subscriber in recipients:
            body = self.templates.render_digest(summary, subscriber.language)
            result = await self.delivery.send_sms(subscriber.phone, body)
            if result.success:
                sent += 1
            else:
                logger.warning(f"Digest to {subscriber.subscriber_id} failed: {result.error}")

        self.run_stats.record_digest(sent)
        self.performance_logger.end_timer(timer_id, recipients=len(recipients), sent=sent)
        return {"alert_groups": len(summary), "recipients": len(recipients), "sent": sent}

    async def _expiry_sweep(self) -> Dict[str, Any]:
        now = utc_now()
        expiring = await self.subscribers.get_expiring_subscriptions(
            self.config.expiry_reminder_days, now=now
        )

        reminders = 0
        for subscriber in expiring:
            if not subscriber.phone:
                continue
            body = self.templates.render_expiry_reminder(
                subscriber.subscription.plan.value,
                subscriber.subscription.days_left(now),
                subscriber.language,
            )
            result = await self.delivery.send_sms(subscriber.phone, body)
            if result.success:
                reminders += 1
            else:
                logger.warning(f"Expiry reminder to {subscriber.subscriber_id} failed: {result.error}")

        expired_subscriptions = await self.subscribers.expire_lapsed_subscriptions(now)
        expired_alerts = await self.database.expire_alerts(now)

        self.run_stats.record_expiry_sweep(reminders)
        return {
            "reminders_sent": reminders,
            "subscriptions_expired": expired_subscriptions,
            "alerts_expired": expired_alerts,
        }
