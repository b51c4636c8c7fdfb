"""
Email notification channel for KAI Alerts.

No email provider is wired up yet; every send reports a failure so the
attempt is still recorded and visible to operators.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from ..core.config import EmailConfig
from ..core.models import Alert

logger = logging.getLogger(__name__)

PROVIDER_NOT_CONFIGURED = "Email provider not configured"


class EmailNotifier:
    """Email channel placeholder."""

    name = "email"

    def __init__(self, config: EmailConfig):
        self.config = config

    async def send_alert_email(self, alert: Alert, to: str) -> Dict[str, Any]:
        """
        Attempt to send an alert email.

        Returns:
            Delivery result dictionary; always unsuccessful
        """
        logger.debug(f"Email delivery of alert {alert.id} to {to} not possible: {PROVIDER_NOT_CONFIGURED}")
        return {
            "success": False,
            "provider": self.name,
            "error": PROVIDER_NOT_CONFIGURED,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
