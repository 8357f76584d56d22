"""Shipping carrier client used for post-confirmation pre-shipments."""
from typing import Optional

import httpx
import structlog

from ..config import Settings
from ..core.exceptions import TransientInfraError
from ..core.ports import PreShipment

logger = structlog.get_logger(__name__)


class HttpCarrierClient:
    """
    Creates pre-shipments at the carrier.

    The sale id is sent as idempotency key, so repeated calls for one sale
    return the same shipment. Never retried here.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.configured = bool(base_url)
        self.http = http_client or httpx.AsyncClient(
            base_url=base_url or "http://carrier.invalid",
            timeout=timeout_seconds,
            headers={"X-Api-Key": api_key},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpCarrierClient":
        return cls(
            base_url=settings.carrier_api_url,
            api_key=settings.carrier_api_key,
            timeout_seconds=settings.carrier_timeout_seconds,
        )

    async def create_pre_shipment(self, sale_id: int) -> PreShipment:
        """
        Register a pre-shipment for a sale.

        Raises:
            TransientInfraError: Carrier not configured, unreachable or erroring
        """
        if not self.configured:
            raise TransientInfraError("Carrier API is not configured", sale_id=sale_id)

        try:
            response = await self.http.post(
                "/shipments",
                json={"reference": str(sale_id)},
                headers={"Idempotency-Key": f"sale-{sale_id}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientInfraError(f"Carrier request failed: {e}", sale_id=sale_id)

        body = response.json()
        shipment_ref = body.get("shipment_ref") or body.get("id")
        if not shipment_ref:
            raise TransientInfraError("Carrier response has no shipment reference", sale_id=sale_id)

        return PreShipment(
            shipment_ref=str(shipment_ref),
            tracking_code=body.get("tracking_code"),
        )

    async def close(self) -> None:
        await self.http.aclose()
