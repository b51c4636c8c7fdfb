"""
Administrative HTTP server for KAI Alerts.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from aiohttp import web
from aiohttp.web import Request, Response

from ..core.models import AlertStatus
from ..core.scheduler import AlertScheduler
from ..database.manager import DatabaseError, DatabaseManager
from ..notifications.push import WebSocketPushHub

VERSION = "1.0.0"


class AdminServer:
    """HTTP endpoints for health, statistics, manual runs and alert moderation."""

    def __init__(
        self,
        scheduler: AlertScheduler,
        database: DatabaseManager,
        push_hub: Optional[WebSocketPushHub] = None,
        host: str = "0.0.0.0",
        port: int = 8100,
    ):
        """
        Initialize admin server.

        Args:
            scheduler: Alert scheduler
            database: Alert store
            push_hub: WebSocket push hub served on /ws
            host: Server host
            port: Server port
        """
        self.scheduler = scheduler
        self.database = database
        self.push_hub = push_hub
        self.host = host
        self.port = port
        self.logger = logging.getLogger(__name__)
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def create_app(self) -> web.Application:
        """Create the web application."""
        app = web.Application(middlewares=[self.cors_middleware])

        app.router.add_get('/health', self.health_handler)
        app.router.add_get('/admin/stats', self.stats_handler)
        app.router.add_post('/admin/run-now', self.run_now_handler)
        app.router.add_post('/admin/alerts/{alert_id}/cancel', self.cancel_alert_handler)
        app.router.add_post('/admin/alerts/{alert_id}/verify', self.verify_alert_handler)
        if self.push_hub is not None:
            app.router.add_get('/ws', self.push_hub.websocket_handler)

        return app

    @web.middleware
    async def cors_middleware(self, request: Request, handler):
        """CORS middleware."""
        response = await handler(request)
        if not isinstance(response, web.WebSocketResponse):
            response.headers['Access-Control-Allow-Origin'] = '*'
            response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
            response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
        return response

    async def health_handler(self, request: Request) -> Response:
        """Handle /health endpoint."""
        database_ok = await self.database.ping()
        status = "healthy" if database_ok else "unhealthy"
        return web.json_response({
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.scheduler.run_stats.uptime_seconds, 1),
            "version": VERSION,
            "components": {
                "database": "ok" if database_ok else "unavailable",
                "scheduler": "running" if self.scheduler.is_running else "stopped",
            },
        }, status=200 if database_ok else 503)

    async def stats_handler(self, request: Request) -> Response:
        """Handle /admin/stats endpoint."""
        try:
            return web.json_response({
                **self.scheduler.get_stats(),
                "monitor": self.scheduler.monitor.get_stats(),
                "delivery": self.scheduler.delivery.get_stats(),
            })
        except Exception as e:
            self.logger.error(f"Stats request failed: {e}", exc_info=True)
            return web.json_response({"error": str(e)}, status=500)

    async def run_now_handler(self, request: Request) -> Response:
        """Handle /admin/run-now endpoint."""
        result = await self.scheduler.run_now()
        return web.json_response(result, status=200 if result.get("success") else 500)

    async def cancel_alert_handler(self, request: Request) -> Response:
        """Handle /admin/alerts/{alert_id}/cancel endpoint."""
        alert_id = request.match_info['alert_id']
        try:
            alert = await self.database.get_alert(alert_id)
            if alert is None:
                return web.json_response({"error": f"Alert {alert_id} not found"}, status=404)
            if not await self.database.cancel_alert(alert_id):
                return web.json_response(
                    {"error": f"Alert {alert_id} is {alert.status.value}"}, status=409
                )
        except DatabaseError as e:
            return web.json_response({"error": str(e)}, status=500)

        self.logger.info(f"Alert {alert_id} cancelled by operator")
        return web.json_response({"alert_id": alert_id, "status": AlertStatus.CANCELLED.value})

    async def verify_alert_handler(self, request: Request) -> Response:
        """Handle /admin/alerts/{alert_id}/verify endpoint."""
        alert_id = request.match_info['alert_id']
        try:
            alert = await self.database.get_alert(alert_id)
            if alert is None:
                return web.json_response({"error": f"Alert {alert_id} not found"}, status=404)
            await self.database.verify_alert(alert_id)
        except DatabaseError as e:
            return web.json_response({"error": str(e)}, status=500)

        self.logger.info(f"Alert {alert_id} verified by operator")
        return web.json_response({"alert_id": alert_id, "is_verified": True})

    async def start(self) -> None:
        """Start the admin server."""
        try:
            self.app = self.create_app()
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, self.host, self.port)
            await self.site.start()

            self.logger.info(f"Admin server started on {self.host}:{self.port}")
        except Exception as e:
            self.logger.error(f"Failed to start admin server: {e}")
            raise

    async def stop(self) -> None:
        """Stop the admin server."""
        try:
            if self.push_hub is not None:
                await self.push_hub.close()
            if self.site:
                await self.site.stop()
            if self.runner:
                await self.runner.cleanup()
            self.logger.info("Admin server stopped")
        except Exception as e:
            self.logger.error(f"Error stopping admin server: {e}")
