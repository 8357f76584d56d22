"""
Payment gateway API client.

The gateway is the source of truth for a payment's status: a notification
only says "something changed on payment X", so every notification is
resolved by fetching the payment. Lookups retry transient failures with
exponential backoff; client errors are not retried.
"""
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings
from ..core.exceptions import NotFoundError, TransientInfraError, ValidationError
from ..core.ports import GatewayPayment

logger = structlog.get_logger(__name__)


def _sale_reference(payment: Dict[str, Any]) -> Optional[int]:
    """The sale id travels as ``external_reference`` (or ``metadata.sale_id``)."""
    reference = payment.get("external_reference") or (payment.get("metadata") or {}).get(
        "sale_id"
    )
    try:
        return int(reference) if reference is not None else None
    except (TypeError, ValueError):
        logger.warning("payment_external_reference_invalid", reference=reference)
        return None


class HttpPaymentGatewayClient:
    """Fetches payments from the gateway REST API."""

    def __init__(
        self,
        base_url: str,
        access_token: str,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_min_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Gateway API base URL
            access_token: Bearer token for the merchant account
            timeout_seconds: Per-request timeout
            max_attempts: Attempts per lookup, first one included
            backoff_min_seconds: Shortest wait between attempts
            backoff_max_seconds: Cap of the exponential backoff
            http_client: Pre-built client (tests pass one with a mock transport)
        """
        self.max_attempts = max_attempts
        self.backoff_min_seconds = backoff_min_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.http = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpPaymentGatewayClient":
        return cls(
            base_url=settings.gateway_api_url,
            access_token=settings.gateway_access_token,
            timeout_seconds=settings.gateway_timeout_seconds,
            max_attempts=settings.gateway_retry_max_attempts,
        )

    async def fetch_payment(self, resource_id: str) -> GatewayPayment:
        """
        Fetch a payment by id.

        Raises:
            NotFoundError: Gateway does not know the payment
            ValidationError: Gateway rejected the request
            TransientInfraError: Gateway unreachable after all attempts
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientInfraError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=0.5, min=self.backoff_min_seconds, max=self.backoff_max_seconds
            ),
            reraise=True,
        ):
            with attempt:
                payment = await self._get_payment(resource_id)

        logger.info(
            "gateway_payment_fetched",
            resource_id=resource_id,
            status=payment.status,
            sale_id=payment.sale_id,
        )
        return payment

    async def _get_payment(self, resource_id: str) -> GatewayPayment:
        try:
            response = await self.http.get(f"/v1/payments/{resource_id}")
        except httpx.HTTPError as e:
            logger.warning("gateway_request_failed", resource_id=resource_id, error=str(e))
            raise TransientInfraError(f"Gateway request failed: {e}", resource_id=resource_id)

        if response.status_code == 404:
            raise NotFoundError(f"Payment {resource_id} not found at gateway")
        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(
                "gateway_transient_error",
                resource_id=resource_id,
                status_code=response.status_code,
            )
            raise TransientInfraError(
                f"Gateway returned {response.status_code}", resource_id=resource_id
            )
        if response.status_code >= 400:
            raise ValidationError(
                f"Gateway rejected lookup with {response.status_code}",
                resource_id=resource_id,
            )

        body = response.json()
        return GatewayPayment(
            resource_id=str(body.get("id", resource_id)),
            status=str(body.get("status", "unknown")),
            sale_id=_sale_reference(body),
        )

    async def close(self) -> None:
        await self.http.aclose()
