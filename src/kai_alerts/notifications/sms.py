"""
SMS gateway clients for KAI Alerts.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from ..core.config import SMSGatewayConfig

logger = logging.getLogger(__name__)


class SMSGatewayError(Exception):
    """SMS gateway transport error."""

    pass


@dataclass
class SMSResult:
    """Result of a single SMS send."""

    success: bool
    provider: str
    message_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class SMSGateway(ABC):
    """Base class for SMS gateways."""

    name = "base"
    default_base_url = ""

    def __init__(
        self,
        config: SMSGatewayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.client = httpx.AsyncClient(
            base_url=config.base_url or self.default_base_url,
            timeout=config.timeout,
            transport=transport,
        )

    @classmethod
    @abstractmethod
    def has_credentials(cls, config: SMSGatewayConfig) -> bool:
        """Whether a config carries the credentials this gateway needs."""

    @property
    def is_configured(self) -> bool:
        return self.config.enabled and self.has_credentials(self.config)

    @abstractmethod
    async def send(self, to: str, body: str, sender: Optional[str] = None) -> SMSResult:
        """
        Send a text message.

        Args:
            to: Recipient phone number in international format
            body: Message text
            sender: Sender ID override

        Returns:
            Send result; API-level rejections are reported as success=False

        Raises:
            SMSGatewayError: On transport or HTTP errors
        """

    async def close(self) -> None:
        await self.client.aclose()

    async def _post(self, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.client.post(url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            self.logger.error(f"{self.name} HTTP {e.response.status_code}: {e.response.text}")
            raise SMSGatewayError(f"{self.name} HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            self.logger.error(f"{self.name} request failed: {e}")
            raise SMSGatewayError(f"{self.name} request failed: {e}") from e
        except ValueError as e:
            raise SMSGatewayError(f"{self.name} returned invalid JSON") from e


class AfricasTalkingGateway(SMSGateway):
    """Africa's Talking bulk messaging API."""

    name = "africastalking"
    default_base_url = "https://api.africastalking.com"
    sandbox_base_url = "https://api.sandbox.africastalking.com"

    def __init__(self, config: SMSGatewayConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        if not config.base_url and config.username == "sandbox":
            config = config.model_copy(update={"base_url": self.sandbox_base_url})
        super().__init__(config, transport=transport)

    @classmethod
    def has_credentials(cls, config: SMSGatewayConfig) -> bool:
        return bool(config.username and config.api_key)

    async def send(self, to: str, body: str, sender: Optional[str] = None) -> SMSResult:
        form = {
            "username": self.config.username,
            "to": to,
            "message": body,
        }
        sender = sender or self.config.sender_id
        if sender:
            form["from"] = sender

        data = await self._post(
            "/version1/messaging",
            data=form,
            headers={"apiKey": self.config.api_key or "", "Accept": "application/json"},
        )

        recipients = (data.get("SMSMessageData") or {}).get("Recipients") or []
        if not recipients:
            message = (data.get("SMSMessageData") or {}).get("Message", "No recipients accepted")
            return SMSResult(success=False, provider=self.name, error=message, raw=data)

        recipient = recipients[0]
        status = recipient.get("status")
        if status == "Success":
            return SMSResult(
                success=True,
                provider=self.name,
                message_id=recipient.get("messageId"),
                status=status,
                raw=data,
            )
        return SMSResult(
            success=False,
            provider=self.name,
            message_id=recipient.get("messageId"),
            status=status,
            error=status or "Unknown gateway status",
            raw=data,
        )


class TwilioGateway(SMSGateway):
    """Twilio programmable messaging API."""

    name = "twilio"
    default_base_url = "https://api.twilio.com"

    @classmethod
    def has_credentials(cls, config: SMSGatewayConfig) -> bool:
        return bool(config.account_sid and config.auth_token and config.from_number)

    async def send(self, to: str, body: str, sender: Optional[str] = None) -> SMSResult:
        data = await self._post(
            f"/2010-04-01/Accounts/{self.config.account_sid}/Messages.json",
            data={"To": to, "From": sender or self.config.from_number, "Body": body},
            auth=(self.config.account_sid or "", self.config.auth_token or ""),
        )
        if data.get("error_code"):
            return SMSResult(
                success=False,
                provider=self.name,
                message_id=data.get("sid"),
                status=data.get("status"),
                error=data.get("error_message") or str(data.get("error_code")),
                raw=data,
            )
        return SMSResult(
            success=True,
            provider=self.name,
            message_id=data.get("sid"),
            status=data.get("status"),
            raw=data,
        )


GATEWAYS = {
    AfricasTalkingGateway.name: AfricasTalkingGateway,
    TwilioGateway.name: TwilioGateway,
}


def create_gateway(
    config: Optional[SMSGatewayConfig],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[SMSGateway]:
    """Build a gateway from config, or None when it is missing, disabled or lacks credentials."""
    if config is None or not config.enabled:
        return None
    gateway_class = GATEWAYS[config.provider]
    if not gateway_class.has_credentials(config):
        logger.warning(f"SMS gateway {config.provider} is not configured; skipping")
        return None
    return gateway_class(config, transport=transport)
