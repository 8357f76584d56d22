"""Inbound webhook gateway and outbound collaborator clients."""
from .carrier_client import HttpCarrierClient
from .notification_client import HttpNotificationClient
from .payment_gateway import HttpPaymentGatewayClient
from .webhook_gateway import WebhookGateway, WebhookReceipt

__all__ = [
    "HttpCarrierClient",
    "HttpNotificationClient",
    "HttpPaymentGatewayClient",
    "WebhookGateway",
    "WebhookReceipt",
]
