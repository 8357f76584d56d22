"""
Payment confirmation orchestration.

Shared by the webhook gateway and the admin routes:

1. Guarded transition + stock decrement, committed as one unit (ledger)
2. ``sale.confirmed`` event
3. Side effects scheduled in the background

Steps 2 and 3 happen only after the commit and cannot undo it or turn a
successful confirmation into an error.
"""
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from ..monitoring.metrics import metrics
from .domain import Initiator, Sale, utcnow
from .events import SALE_CONFIRMED
from .exceptions import SaleReconcilerError
from .ledger import SaleLedger, TransitionResult
from .ports import EventPublisher
from .side_effects import SideEffectOrchestrator, TaskTracker

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConfirmationResult:
    sale: Sale
    already_approved: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sale_id": self.sale.id,
            "status": self.sale.status.value,
            "already_approved": self.already_approved,
            "shipment_ref": self.sale.shipment_ref,
            "tracking_code": self.sale.tracking_code,
        }


class ReconciliationService:
    """Turns a payment confirmation into a committed sale transition."""

    def __init__(
        self,
        ledger: SaleLedger,
        events: EventPublisher,
        side_effects: SideEffectOrchestrator,
        tasks: Optional[TaskTracker] = None,
    ):
        """
        Initialize reconciliation service.

        Args:
            ledger: Sale state machine and stock ledger
            events: Event publisher for ``sale.confirmed``
            side_effects: Post-commit best-effort actions
            tasks: Tracker owning the background side-effect tasks
        """
        self.ledger = ledger
        self.events = events
        self.side_effects = side_effects
        self.tasks = tasks or TaskTracker()

    async def confirm_payment(
        self,
        sale_id: int,
        note: Optional[str] = None,
        actor: str = "system",
        initiator: Initiator = Initiator.ADMIN,
    ) -> ConfirmationResult:
        """
        Confirm payment of a sale.

        Args:
            sale_id: Sale to confirm
            note: Optional note appended to the sale
            actor: Who requested the confirmation (audited)
            initiator: What triggered it (webhook, admin)

        Returns:
            ConfirmationResult: Sale after the call; ``already_approved`` for no-ops

        Raises:
            SaleNotFound: Unknown sale
            InvalidTransition: Sale is cancelado or vencido
            InsufficientStock: Stock does not cover the sale
        """
        logger.info(
            "confirming_sale_payment",
            sale_id=sale_id,
            actor=actor,
            initiator=initiator.value,
        )
        result = await self._transition(
            self.ledger.confirm(sale_id, actor=actor, initiator=initiator, note=note),
            sale_id,
            initiator,
        )
        return self._finish(result)

    async def approve_from_expired(
        self, sale_id: int, actor: str, note: Optional[str] = None
    ) -> ConfirmationResult:
        """
        Approve a sale that already expired (admin recovery).

        Runs the same stock, event and side-effect pipeline as a normal
        confirmation.

        Raises:
            SaleNotFound: Unknown sale
            InvalidTransition: Sale is not vencido
            InsufficientStock: Stock no longer covers the sale
        """
        logger.info("approving_expired_sale", sale_id=sale_id, actor=actor)
        kwargs: Dict[str, Any] = {"actor": actor}
        if note:
            kwargs["note"] = note
        result = await self._transition(
            self.ledger.approve_from_expired(sale_id, **kwargs),
            sale_id,
            Initiator.ADMIN,
        )
        return self._finish(result)

    async def _transition(self, operation, sale_id: int, initiator: Initiator) -> TransitionResult:
        start = time.perf_counter()
        try:
            result = await operation
        except SaleReconcilerError as e:
            metrics.record_confirmation(e.error_code, initiator.value)
            logger.warning(
                "sale_confirmation_rejected",
                sale_id=sale_id,
                error_code=e.error_code,
                error=e.message,
            )
            raise

        outcome = "approved" if result.changed else "already_approved"
        metrics.record_confirmation(outcome, initiator.value, time.perf_counter() - start)
        if result.changed:
            await self._publish(result.sale)
        return result

    def _finish(self, result: TransitionResult) -> ConfirmationResult:
        if result.changed:
            self.tasks.spawn(
                self.side_effects.run(result.sale), name=f"side-effects-{result.sale.id}"
            )
        return ConfirmationResult(sale=result.sale, already_approved=not result.changed)

    async def _publish(self, sale: Sale) -> None:
        payload = {
            "sale_id": sale.id,
            "status": sale.status.value,
            "timestamp": utcnow().isoformat(),
        }
        try:
            await self.events.emit(SALE_CONFIRMED, payload)
        except Exception as e:
            logger.error("sale_confirmed_event_failed", sale_id=sale.id, error=str(e))
