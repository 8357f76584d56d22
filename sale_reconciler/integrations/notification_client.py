"""Transactional email client."""
from typing import Any, Dict, Optional

import httpx
import structlog

from ..config import Settings
from ..core.exceptions import TransientInfraError

logger = structlog.get_logger(__name__)


class HttpNotificationClient:
    """Sends order emails through the mail provider's REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        sender: str,
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.configured = bool(base_url)
        self.sender = sender
        self.http = http_client or httpx.AsyncClient(
            base_url=base_url or "http://mail.invalid",
            timeout=timeout_seconds,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpNotificationClient":
        return cls(
            base_url=settings.mail_api_url,
            api_key=settings.mail_api_key,
            sender=settings.mail_sender,
            timeout_seconds=settings.mail_timeout_seconds,
        )

    async def send_order_confirmation(self, payload: Dict[str, Any]) -> None:
        await self._send(
            template="order_confirmed",
            subject=f"Confirmamos tu pedido #{payload['sale_id']}",
            payload=payload,
        )

    async def send_order_expired(self, payload: Dict[str, Any]) -> None:
        await self._send(
            template="order_expired",
            subject=f"Tu pedido #{payload['sale_id']} venció",
            payload=payload,
        )

    async def _send(self, template: str, subject: str, payload: Dict[str, Any]) -> None:
        if not self.configured:
            raise TransientInfraError("Mail API is not configured", template=template)

        message = {
            "from": self.sender,
            "to": [
                {"email": payload["customer_email"], "name": payload.get("customer_name")}
            ],
            "subject": subject,
            "template": template,
            "data": payload,
        }
        try:
            response = await self.http.post("/emails", json=message)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientInfraError(f"Mail request failed: {e}", template=template)

        logger.info("email_accepted", template=template, sale_id=payload.get("sale_id"))

    async def close(self) -> None:
        await self.http.aclose()
