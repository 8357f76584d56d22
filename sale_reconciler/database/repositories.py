"""
SQLAlchemy implementations of the storage contracts in ``core.ports``.

Every repository works on the session owned by ``SqlAlchemyUnitOfWork``;
nothing commits on its own. Status and stock writes are single conditional
UPDATE statements whose rowcount tells the caller whether the guard held.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core import domain
from ..core.exceptions import InsufficientStock, StockShortage
from .models import AuditEntry as AuditEntryModel
from .models import Product
from .models import Sale as SaleModel
from .models import SaleDetail as SaleDetailModel
from .models import WebhookRecord as WebhookRecordModel

logger = structlog.get_logger(__name__)


def _sale_to_domain(row: SaleModel) -> domain.Sale:
    return domain.Sale(
        id=row.id,
        status=domain.SaleStatus(row.status),
        total=row.total,
        created_at=domain.as_utc(row.created_at),
        updated_at=domain.as_utc(row.updated_at),
        items=tuple(
            domain.SaleDetail(
                product_id=d.product_id,
                quantity=d.quantity,
                unit_price=d.unit_price,
                discount=d.discount,
                product_name=d.product_name,
            )
            for d in row.details
        ),
        payment_method=row.payment_method,
        fulfillment_type=domain.FulfillmentType(row.fulfillment_type),
        customer_email=row.customer_email,
        customer_name=row.customer_name,
        notes=row.notes,
        shipment_ref=row.shipment_ref,
        tracking_code=row.tracking_code,
    )


def _webhook_to_domain(row: WebhookRecordModel) -> domain.WebhookRecord:
    return domain.WebhookRecord(
        id=row.id,
        gateway_event_id=row.gateway_event_id,
        resource_id=row.resource_id,
        topic=row.topic,
        signature_valid=row.signature_valid,
        processing_status=domain.WebhookStatus(row.processing_status),
        retry_count=row.retry_count,
        last_error=row.last_error,
        payload=row.payload,
        sale_id=row.sale_id,
        received_at=domain.as_utc(row.received_at),
        updated_at=domain.as_utc(row.updated_at) if row.updated_at else None,
    )


def _column_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v.value if isinstance(v, Enum) else v for k, v in fields.items()}


class SqlAlchemySaleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, sale_id: int) -> Optional[domain.Sale]:
        result = await self.session.execute(
            select(SaleModel)
            .where(SaleModel.id == sale_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _sale_to_domain(row) if row is not None else None

    async def add(self, sale: domain.Sale) -> None:
        row = SaleModel(
            id=sale.id,
            status=sale.status.value,
            total=sale.total,
            payment_method=sale.payment_method,
            fulfillment_type=sale.fulfillment_type.value,
            customer_email=sale.customer_email,
            customer_name=sale.customer_name,
            notes=sale.notes,
            created_at=sale.created_at,
            updated_at=sale.updated_at,
            details=[
                SaleDetailModel(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    discount=item.discount,
                    product_name=item.product_name,
                )
                for item in sale.items
            ],
        )
        self.session.add(row)
        await self.session.flush()

    async def update_status(
        self,
        sale_id: int,
        expected: domain.SaleStatus,
        new: domain.SaleStatus,
        patch: Optional[Dict[str, Any]] = None,
    ) -> int:
        result = await self.session.execute(
            update(SaleModel)
            .where(SaleModel.id == sale_id, SaleModel.status == expected.value)
            .values(status=new.value, updated_at=domain.utcnow(), **_column_values(patch or {}))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def find_expirable(
        self, cutoff: datetime, payment_methods: Optional[Sequence[str]] = None
    ) -> List[int]:
        query = select(SaleModel.id).where(
            SaleModel.status == domain.SaleStatus.PENDIENTE.value,
            SaleModel.created_at <= cutoff,
        )
        if payment_methods:
            query = query.where(SaleModel.payment_method.in_(list(payment_methods)))

        result = await self.session.execute(query.order_by(SaleModel.id))
        return list(result.scalars().all())

    async def set_shipment(
        self, sale_id: int, shipment_ref: str, tracking_code: Optional[str]
    ) -> None:
        await self.session.execute(
            update(SaleModel)
            .where(SaleModel.id == sale_id)
            .values(
                shipment_ref=shipment_ref,
                tracking_code=tracking_code,
                updated_at=domain.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )


class SqlAlchemyStockRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def available(self, product_ids: Iterable[int]) -> Dict[int, int]:
        ids = list(product_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(Product.id, Product.stock).where(Product.id.in_(ids))
        )
        return {product_id: stock for product_id, stock in result.all()}

    async def decrement(self, product_id: int, quantity: int) -> None:
        """
        Conditional decrement: ``stock = stock - q WHERE stock >= q``.

        Raises:
            InsufficientStock: No row matched (stock moved below ``quantity``)
        """
        result = await self.session.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = await self.session.scalar(
                select(Product.stock).where(Product.id == product_id)
            )
            raise InsufficientStock([StockShortage(product_id, quantity, current or 0)])


class SqlAlchemyAuditRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, entry: domain.AuditEntry) -> None:
        self.session.add(
            AuditEntryModel(
                actor=entry.actor,
                action=entry.action,
                initiator=entry.initiator.value,
                sale_id=entry.sale_id,
                before=entry.before,
                after=entry.after,
                note=entry.note,
                created_at=entry.timestamp,
            )
        )
        await self.session.flush()

    async def list_for_sale(self, sale_id: int) -> List[domain.AuditEntry]:
        result = await self.session.execute(
            select(AuditEntryModel)
            .where(AuditEntryModel.sale_id == sale_id)
            .order_by(AuditEntryModel.id)
        )
        return [
            domain.AuditEntry(
                actor=row.actor,
                action=row.action,
                before=row.before,
                after=row.after,
                sale_id=row.sale_id,
                initiator=domain.Initiator(row.initiator),
                note=row.note,
                timestamp=domain.as_utc(row.created_at),
            )
            for row in result.scalars().all()
        ]


class SqlAlchemyWebhookRecordRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, record: domain.WebhookRecord) -> domain.WebhookRecord:
        row = WebhookRecordModel(
            gateway_event_id=record.gateway_event_id,
            resource_id=record.resource_id,
            topic=record.topic,
            signature_valid=record.signature_valid,
            processing_status=record.processing_status.value,
            retry_count=record.retry_count,
            last_error=record.last_error,
            payload=record.payload,
            sale_id=record.sale_id,
            received_at=record.received_at,
        )
        self.session.add(row)
        await self.session.flush()
        record.id = row.id
        return record

    async def update(self, record_id: int, **fields: Any) -> None:
        values = _column_values(fields)
        values.setdefault("updated_at", domain.utcnow())
        await self.session.execute(
            update(WebhookRecordModel)
            .where(WebhookRecordModel.id == record_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def get(self, record_id: int) -> Optional[domain.WebhookRecord]:
        result = await self.session.execute(
            select(WebhookRecordModel)
            .where(WebhookRecordModel.id == record_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _webhook_to_domain(row) if row is not None else None

    async def list_failed(self, limit: int = 100) -> List[domain.WebhookRecord]:
        result = await self.session.execute(
            select(WebhookRecordModel)
            .where(WebhookRecordModel.processing_status == domain.WebhookStatus.FAILED.value)
            .order_by(WebhookRecordModel.received_at.desc(), WebhookRecordModel.id.desc())
            .limit(limit)
        )
        return [_webhook_to_domain(row) for row in result.scalars().all()]


class SqlAlchemyUnitOfWork:
    """
    One ``AsyncSession`` transaction exposed through the repository contracts.

    Example:
        async with SqlAlchemyUnitOfWork(session_factory) as uow:
            sale = await uow.sales.get(100)
            ...
            await uow.commit()
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.session: AsyncSession | None = None

    async def __aenter__(self) -> "SqlAlchemyUnitOfWork":
        self.session = self.session_factory()
        self.sales = SqlAlchemySaleRepository(self.session)
        self.stock = SqlAlchemyStockRepository(self.session)
        self.audit = SqlAlchemyAuditRepository(self.session)
        self.webhooks = SqlAlchemyWebhookRecordRepository(self.session)
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        try:
            # No-op after a successful commit
            await self.rollback()
        finally:
            await self.session.close()
            self.session = None

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()


def unit_of_work_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Bind a session factory into a zero-argument unit-of-work factory."""

    def factory() -> SqlAlchemyUnitOfWork:
        return SqlAlchemyUnitOfWork(session_factory)

    return factory
