"""
Alert delivery channels for KAI Alerts.
"""

from .delivery import DeliveryOrchestrator, DeliveryError, DeliveryResult, ChannelResult
from .email import EmailNotifier
from .push import PushChannel, PushError, WebSocketPushHub
from .sms import SMSGateway, SMSGatewayError, SMSResult, AfricasTalkingGateway, TwilioGateway, create_gateway
from .subscriber import SubscriberManager, Subscriber, Subscription, SubscriptionPlan, SubscriptionStatus
from .templates import NotificationTemplate, TemplateEngine

__all__ = [
    "DeliveryOrchestrator",
    "DeliveryError",
    "DeliveryResult",
    "ChannelResult",
    "EmailNotifier",
    "PushChannel",
    "PushError",
    "WebSocketPushHub",
    "SMSGateway",
    "SMSGatewayError",
    "SMSResult",
    "AfricasTalkingGateway",
    "TwilioGateway",
    "create_gateway",
    "SubscriberManager",
    "Subscriber",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "NotificationTemplate",
    "TemplateEngine",
]
