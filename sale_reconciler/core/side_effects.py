"""
Best-effort side effects of sale transitions.

Runs strictly after the transition committed. Each action has its own
timeout and its own error boundary: a carrier outage never prevents the
confirmation email and neither can reach back into the committed sale.
Nothing is retried inline; the carrier treats the sale id as idempotency
key, so a later re-run is safe.
"""
import asyncio
from typing import Any, Coroutine, Dict, Optional, Set

import structlog

from ..monitoring.metrics import metrics
from .domain import Sale
from .ports import CarrierClient, NotificationClient, PreShipment, UnitOfWorkFactory

logger = structlog.get_logger(__name__)


class TaskTracker:
    """Keeps references to fire-and-forget tasks until they finish."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task spawned so far (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _order_payload(sale: Sale) -> Dict[str, Any]:
    return {
        "sale_id": sale.id,
        "customer_email": sale.customer_email,
        "customer_name": sale.customer_name,
        "total": str(sale.total),
        "payment_method": sale.payment_method,
        "fulfillment_type": sale.fulfillment_type.value,
        "items": [
            {
                "product_id": item.product_id,
                "product_name": item.product_name,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "subtotal": str(item.subtotal),
            }
            for item in sale.items
        ],
    }


class SideEffectOrchestrator:
    """Pre-shipment and customer notifications for committed transitions."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        carrier: CarrierClient,
        notifier: NotificationClient,
        carrier_timeout_seconds: float = 10.0,
        notification_timeout_seconds: float = 10.0,
    ):
        """
        Initialize orchestrator.

        Args:
            uow_factory: Used to store the shipment reference on the sale
            carrier: Shipping carrier collaborator
            notifier: Transactional mail collaborator
            carrier_timeout_seconds: Upper bound for the pre-shipment call
            notification_timeout_seconds: Upper bound for one email
        """
        self.uow_factory = uow_factory
        self.carrier = carrier
        self.notifier = notifier
        self.carrier_timeout_seconds = carrier_timeout_seconds
        self.notification_timeout_seconds = notification_timeout_seconds

    async def run(self, sale: Sale) -> None:
        """Side effects of a confirmed sale. Never raises."""
        shipment = None
        if sale.is_store_pickup:
            logger.info("pre_shipment_skipped_store_pickup", sale_id=sale.id)
        else:
            shipment = await self.create_pre_shipment(sale)

        await self.send_confirmation(sale, shipment.tracking_code if shipment else None)

    async def create_pre_shipment(self, sale: Sale) -> Optional[PreShipment]:
        try:
            shipment = await asyncio.wait_for(
                self.carrier.create_pre_shipment(sale.id), self.carrier_timeout_seconds
            )
        except Exception as e:
            logger.error(
                "pre_shipment_failed",
                sale_id=sale.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_side_effect_failure("pre_shipment")
            return None

        logger.info(
            "pre_shipment_created",
            sale_id=sale.id,
            shipment_ref=shipment.shipment_ref,
            tracking_code=shipment.tracking_code,
        )

        try:
            async with self.uow_factory() as uow:
                await uow.sales.set_shipment(
                    sale.id, shipment.shipment_ref, shipment.tracking_code
                )
                await uow.commit()
        except Exception as e:
            # Shipment exists at the carrier; only our copy of the reference is missing
            logger.error("shipment_reference_not_stored", sale_id=sale.id, error=str(e))

        return shipment

    async def send_confirmation(self, sale: Sale, tracking_code: Optional[str]) -> None:
        if not sale.customer_email:
            logger.info("confirmation_email_skipped_no_address", sale_id=sale.id)
            return

        payload = _order_payload(sale)
        payload["tracking_code"] = tracking_code
        try:
            await asyncio.wait_for(
                self.notifier.send_order_confirmation(payload),
                self.notification_timeout_seconds,
            )
        except Exception as e:
            logger.error(
                "confirmation_email_failed",
                sale_id=sale.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_side_effect_failure("confirmation_email")
            return

        logger.info("confirmation_email_sent", sale_id=sale.id)

    async def notify_expired(self, sale_id: int) -> None:
        """Tell the customer their unpaid sale expired. Never raises."""
        try:
            async with self.uow_factory() as uow:
                sale = await uow.sales.get(sale_id)
            if sale is None or not sale.customer_email:
                logger.info("expiration_email_skipped", sale_id=sale_id)
                return

            await asyncio.wait_for(
                self.notifier.send_order_expired(_order_payload(sale)),
                self.notification_timeout_seconds,
            )
        except Exception as e:
            logger.error(
                "expiration_email_failed",
                sale_id=sale_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_side_effect_failure("expiration_email")
            return

        logger.info("expiration_email_sent", sale_id=sale_id)
