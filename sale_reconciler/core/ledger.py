"""
Sale state machine and stock ledger.

Owns every status transition of a sale and the only write path to product
stock. Each operation runs in a single unit of work:

    pendiente --confirm--> aprobado
    pendiente --expire---> vencido
    vencido --approve_from_expired--> aprobado   (admin recovery, audited)

Status changes are compare-and-set on the expected prior status, so a sale
can never be both confirmed and expired: whichever update commits first
wins and the other observes zero affected rows. Stock is decremented with a
conditional update inside the same transaction as the status change, so a
lost race on either side rolls the whole unit back.
"""
import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Dict, FrozenSet, List, Optional, Sequence, TypeVar

import structlog

from .domain import (
    ACTION_SALE_CONFIRMED,
    ACTION_SALE_EXPIRED,
    ACTION_SALE_EXPIRED_APPROVED,
    AuditEntry,
    Initiator,
    Sale,
    SaleStatus,
    as_utc,
    utcnow,
)
from .exceptions import InsufficientStock, InvalidTransition, SaleNotFound, StockShortage
from .ports import UnitOfWork, UnitOfWorkFactory

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSITIONS: Dict[SaleStatus, FrozenSet[SaleStatus]] = {
    SaleStatus.PENDIENTE: frozenset(
        {SaleStatus.APROBADO, SaleStatus.CANCELADO, SaleStatus.VENCIDO}
    ),
    SaleStatus.VENCIDO: frozenset({SaleStatus.APROBADO}),
    SaleStatus.APROBADO: frozenset(),
    SaleStatus.CANCELADO: frozenset(),
}


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a transition request. ``changed`` is False for idempotent no-ops."""

    sale: Sale
    changed: bool


class _LostRace(Exception):
    """The guarded status update matched no row."""


def _append_note(existing: Optional[str], note: Optional[str]) -> Optional[str]:
    if not note:
        return existing
    line = f"[Pago confirmado] {note}"
    return f"{existing}\n{line}" if existing else line


class SaleLedger:
    """State machine and stock ledger over a unit-of-work factory."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Initialize the ledger.

        Args:
            uow_factory: Callable returning a fresh unit of work
            timeout_seconds: Upper bound for one single-sale transaction
        """
        self.uow_factory = uow_factory
        self.timeout_seconds = timeout_seconds

    async def _bounded(self, operation: Awaitable[T]) -> T:
        if self.timeout_seconds is None:
            return await operation
        return await asyncio.wait_for(operation, self.timeout_seconds)

    async def get_sale(self, sale_id: int) -> Sale:
        """Load a sale or raise SaleNotFound."""
        async with self.uow_factory() as uow:
            sale = await uow.sales.get(sale_id)
        if sale is None:
            raise SaleNotFound(sale_id)
        return sale

    async def confirm(
        self,
        sale_id: int,
        *,
        actor: str = "system",
        initiator: Initiator = Initiator.SYSTEM,
        note: Optional[str] = None,
    ) -> TransitionResult:
        """
        Approve a pending sale, decrementing stock for every line.

        Already-approved sales succeed as a no-op without touching stock.

        Raises:
            SaleNotFound: Unknown sale
            InvalidTransition: Sale is cancelado or vencido
            InsufficientStock: Any line exceeds current stock (nothing is decremented)
        """
        return await self._approve(
            sale_id,
            source=SaleStatus.PENDIENTE,
            action=ACTION_SALE_CONFIRMED,
            actor=actor,
            initiator=initiator,
            note=note,
        )

    async def approve_from_expired(
        self,
        sale_id: int,
        *,
        actor: str,
        note: Optional[str] = "Aprobada desde estado vencido (admin)",
    ) -> TransitionResult:
        """
        Recovery edge: approve a sale that already expired.

        Raises:
            SaleNotFound: Unknown sale
            InvalidTransition: Sale is not vencido
            InsufficientStock: Stock no longer covers the sale
        """
        sale = await self.get_sale(sale_id)
        if sale.status != SaleStatus.VENCIDO:
            raise InvalidTransition(sale_id, sale.status.value, SaleStatus.APROBADO.value)

        return await self._approve(
            sale_id,
            source=SaleStatus.VENCIDO,
            action=ACTION_SALE_EXPIRED_APPROVED,
            actor=actor,
            initiator=Initiator.ADMIN,
            note=note,
        )

    async def _approve(
        self,
        sale_id: int,
        source: SaleStatus,
        action: str,
        actor: str,
        initiator: Initiator,
        note: Optional[str],
    ) -> TransitionResult:
        try:
            return await self._bounded(
                self._approve_once(sale_id, source, action, actor, initiator, note)
            )
        except _LostRace:
            # Another transaction changed the status between our read and write
            sale = await self.get_sale(sale_id)
            if sale.status == SaleStatus.APROBADO:
                logger.info("sale_confirm_raced_already_approved", sale_id=sale_id)
                return TransitionResult(sale=sale, changed=False)
            raise InvalidTransition(sale_id, sale.status.value, SaleStatus.APROBADO.value)

    async def _approve_once(
        self,
        sale_id: int,
        source: SaleStatus,
        action: str,
        actor: str,
        initiator: Initiator,
        note: Optional[str],
    ) -> TransitionResult:
        async with self.uow_factory() as uow:
            sale = await uow.sales.get(sale_id)
            if sale is None:
                raise SaleNotFound(sale_id)

            if sale.status == SaleStatus.APROBADO:
                logger.info("sale_already_approved", sale_id=sale_id, action=action)
                return TransitionResult(sale=sale, changed=False)

            if sale.status != source or SaleStatus.APROBADO not in TRANSITIONS[sale.status]:
                raise InvalidTransition(sale_id, sale.status.value, SaleStatus.APROBADO.value)

            requested = sale.quantities_by_product()
            await self._validate_stock(uow, sale.id, requested)

            # Claim the sale before touching stock: a concurrent confirmation
            # loses here and never decrements
            notes = _append_note(sale.notes, note)
            patch: Dict[str, Any] = {"notes": notes} if notes != sale.notes else {}
            rows = await uow.sales.update_status(sale_id, source, SaleStatus.APROBADO, patch)
            if rows == 0:
                raise _LostRace()

            decremented = await self._decrement_stock(uow, sale.id, requested)

            await uow.audit.append(
                AuditEntry(
                    actor=actor,
                    action=action,
                    before=sale.snapshot(),
                    after={
                        "sale_id": sale_id,
                        "status": SaleStatus.APROBADO.value,
                        "stock_decremented": {str(k): v for k, v in decremented.items()},
                    },
                    sale_id=sale_id,
                    initiator=initiator,
                    note=note,
                )
            )
            await uow.commit()

        logger.info(
            "sale_approved",
            sale_id=sale_id,
            previous_status=source.value,
            action=action,
            initiator=initiator.value,
        )
        return TransitionResult(
            sale=replace(sale.with_status(SaleStatus.APROBADO), notes=notes),
            changed=True,
        )

    async def _validate_stock(
        self, uow: UnitOfWork, sale_id: int, requested: Dict[int, int]
    ) -> None:
        """Report every short line at once, before anything is written."""
        if not requested:
            return

        available = await uow.stock.available(requested.keys())
        shortages = [
            StockShortage(product_id, quantity, available.get(product_id, 0))
            for product_id, quantity in sorted(requested.items())
            if available.get(product_id, 0) < quantity
        ]
        if shortages:
            logger.warning(
                "stock_validation_failed",
                sale_id=sale_id,
                shortages=[s.to_dict() for s in shortages],
            )
            raise InsufficientStock(shortages, sale_id=sale_id)

    async def _decrement_stock(
        self, uow: UnitOfWork, sale_id: int, requested: Dict[int, int]
    ) -> Dict[int, int]:
        # Fixed product order keeps concurrent transactions from deadlocking
        for product_id, quantity in sorted(requested.items()):
            try:
                await uow.stock.decrement(product_id, quantity)
            except InsufficientStock as e:
                logger.warning(
                    "stock_decrement_conflict",
                    sale_id=sale_id,
                    product_id=product_id,
                    quantity=quantity,
                )
                raise InsufficientStock(e.shortages, sale_id=sale_id) from e

        return requested

    async def expire(
        self,
        sale_id: int,
        threshold: timedelta,
        *,
        now: Optional[datetime] = None,
        actor: str = "system",
        initiator: Initiator = Initiator.SCHEDULER,
    ) -> bool:
        """
        Expire one sale if it is pending and at least ``threshold`` old.

        Returns:
            bool: True if the sale transitioned, False if not applicable
        """
        now = now or utcnow()

        async def _run() -> bool:
            async with self.uow_factory() as uow:
                sale = await uow.sales.get(sale_id)
                if sale is None:
                    raise SaleNotFound(sale_id)
                if sale.status != SaleStatus.PENDIENTE or as_utc(sale.created_at) > now - threshold:
                    logger.info(
                        "sale_expire_not_applicable",
                        sale_id=sale_id,
                        status=sale.status.value,
                    )
                    return False
                transitioned = await self._expire_in(uow, sale_id, actor, initiator)
                await uow.commit()
                return transitioned

        return await self._bounded(_run())

    async def expire_all(
        self,
        threshold: timedelta,
        *,
        now: Optional[datetime] = None,
        payment_methods: Optional[Sequence[str]] = None,
        actor: str = "system",
        initiator: Initiator = Initiator.SCHEDULER,
    ) -> List[int]:
        """
        Expire every pending sale created at least ``threshold`` ago.

        Args:
            threshold: Minimum sale age
            now: Reference time (defaults to current UTC time)
            payment_methods: Restrict candidates to these payment methods

        Returns:
            List[int]: Ids of the sales that actually transitioned
        """
        cutoff = (now or utcnow()) - threshold
        expired: List[int] = []

        async with self.uow_factory() as uow:
            candidates = await uow.sales.find_expirable(cutoff, payment_methods)
            for sale_id in candidates:
                if await self._expire_in(uow, sale_id, actor, initiator):
                    expired.append(sale_id)
            await uow.commit()

        logger.info(
            "sales_expired",
            cutoff=cutoff.isoformat(),
            candidates=len(candidates),
            expired=len(expired),
        )
        return expired

    async def _expire_in(
        self, uow: UnitOfWork, sale_id: int, actor: str, initiator: Initiator
    ) -> bool:
        rows = await uow.sales.update_status(
            sale_id, SaleStatus.PENDIENTE, SaleStatus.VENCIDO
        )
        if rows == 0:
            logger.info("sale_expire_lost_race", sale_id=sale_id)
            return False

        await uow.audit.append(
            AuditEntry(
                actor=actor,
                action=ACTION_SALE_EXPIRED,
                before={"sale_id": sale_id, "status": SaleStatus.PENDIENTE.value},
                after={"sale_id": sale_id, "status": SaleStatus.VENCIDO.value},
                sale_id=sale_id,
                initiator=initiator,
            )
        )
        return True
