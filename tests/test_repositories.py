"""
Integration tests for the SQLAlchemy storage layer.

Runs against a throwaway SQLite file through aiosqlite, so no server is
needed.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable

import pytest
import pytest_asyncio
from sqlalchemy import select

from sale_reconciler.core.domain import (
    ACTION_SALE_CONFIRMED,
    AuditEntry,
    Initiator,
    Sale,
    SaleDetail,
    SaleStatus,
    WebhookRecord,
    WebhookStatus,
    utcnow,
)
from sale_reconciler.core.exceptions import InsufficientStock
from sale_reconciler.core.ledger import SaleLedger
from sale_reconciler.database.connection import (
    create_engine_for,
    create_session_factory,
    init_db,
)
from sale_reconciler.database.models import Product
from sale_reconciler.database.repositories import unit_of_work_factory

pytestmark = pytest.mark.integration


@pytest_asyncio.fixture
async def session_factory(test_settings, tmp_path) -> AsyncGenerator[Any, Any]:
    """Fresh SQLite database per test."""
    settings = test_settings.model_copy(
        update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'sales.db'}"}
    )
    engine = create_engine_for(settings)
    await init_db(engine)

    factory = create_session_factory(engine)
    async with factory() as session:
        session.add_all(
            [
                Product(id=7, name="Yerba 1kg", stock=10, price=Decimal("100.00")),
                Product(id=8, name="Mate", stock=2, price=Decimal("100.00")),
            ]
        )
        await session.commit()

    yield factory

    await engine.dispose()


@pytest.fixture
def sql_uow(session_factory) -> Callable[[], Any]:
    return unit_of_work_factory(session_factory)


def pending_sale(sale_id: int, product_id: int = 7, quantity: int = 2, **extra: Any) -> Sale:
    return Sale.create(
        sale_id,
        [
            SaleDetail(
                product_id=product_id,
                quantity=quantity,
                unit_price=Decimal("100.00"),
                product_name=f"Producto {product_id}",
            )
        ],
        payment_method=extra.pop("payment_method", "transferencia"),
        customer_email=f"cliente{sale_id}@example.com",
        **extra,
    )


async def stock_of(session_factory, product_id: int) -> int:
    async with session_factory() as session:
        return await session.scalar(select(Product.stock).where(Product.id == product_id))


class TestSaleRepository:
    @pytest.mark.asyncio
    async def test_add_and_get(self, sql_uow) -> None:
        async with sql_uow() as uow:
            await uow.sales.add(pending_sale(100))
            await uow.commit()

        async with sql_uow() as uow:
            sale = await uow.sales.get(100)

        assert sale.status == SaleStatus.PENDIENTE
        assert sale.total == Decimal("200.00")
        assert sale.quantities_by_product() == {7: 2}
        assert sale.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_missing_sale(self, sql_uow) -> None:
        async with sql_uow() as uow:
            assert await uow.sales.get(999) is None

    @pytest.mark.asyncio
    async def test_update_status_is_guarded(self, sql_uow) -> None:
        async with sql_uow() as uow:
            await uow.sales.add(pending_sale(100))
            await uow.commit()

        async with sql_uow() as uow:
            first = await uow.sales.update_status(
                100, SaleStatus.PENDIENTE, SaleStatus.APROBADO, {"notes": "pagado"}
            )
            second = await uow.sales.update_status(
                100, SaleStatus.PENDIENTE, SaleStatus.VENCIDO
            )
            await uow.commit()

        assert (first, second) == (1, 0)
        async with sql_uow() as uow:
            sale = await uow.sales.get(100)
        assert sale.status == SaleStatus.APROBADO
        assert sale.notes == "pagado"

    @pytest.mark.asyncio
    async def test_uncommitted_work_is_rolled_back(self, sql_uow) -> None:
        async with sql_uow() as uow:
            await uow.sales.add(pending_sale(100))

        async with sql_uow() as uow:
            assert await uow.sales.get(100) is None

    @pytest.mark.asyncio
    async def test_find_expirable(self, sql_uow) -> None:
        old = utcnow() - timedelta(days=5)
        async with sql_uow() as uow:
            await uow.sales.add(pending_sale(1, created_at=old))
            await uow.sales.add(pending_sale(2))
            await uow.sales.add(pending_sale(3, created_at=old, payment_method="mercadopago"))
            await uow.commit()

        cutoff = utcnow() - timedelta(days=3)
        async with sql_uow() as uow:
            filtered = await uow.sales.find_expirable(cutoff, ["efectivo", "transferencia"])
            unfiltered = await uow.sales.find_expirable(cutoff)

        assert filtered == [1]
        assert unfiltered == [1, 3]

    @pytest.mark.asyncio
    async def test_set_shipment(self, sql_uow) -> None:
        async with sql_uow() as uow:
            await uow.sales.add(pending_sale(100))
            await uow.sales.set_shipment(100, "SHP-100", "TRK-9")
            await uow.commit()

        async with sql_uow() as uow:
            sale = await uow.sales.get(100)
        assert (sale.shipment_ref, sale.tracking_code) == ("SHP-100", "TRK-9")


class TestStockRepository:
    @pytest.mark.asyncio
    async def test_available(self, sql_uow) -> None:
        async with sql_uow() as uow:
            assert await uow.stock.available([7, 8, 99]) == {7: 10, 8: 2}
            assert await uow.stock.available([]) == {}

    @pytest.mark.asyncio
    async def test_conditional_decrement(self, sql_uow, session_factory) -> None:
        async with sql_uow() as uow:
            await uow.stock.decrement(8, 2)
            with pytest.raises(InsufficientStock) as exc_info:
                await uow.stock.decrement(8, 1)
            await uow.commit()

        shortage = exc_info.value.shortages[0]
        assert (shortage.product_id, shortage.requested, shortage.available) == (8, 1, 0)
        assert await stock_of(session_factory, 8) == 0


class TestAuditAndWebhookRepositories:
    @pytest.mark.asyncio
    async def test_audit_round_trip(self, sql_uow) -> None:
        async with sql_uow() as uow:
            await uow.audit.append(
                AuditEntry(
                    actor="ana",
                    action=ACTION_SALE_CONFIRMED,
                    before={"status": "pendiente"},
                    after={"status": "aprobado"},
                    sale_id=100,
                    initiator=Initiator.ADMIN,
                )
            )
            await uow.commit()

        async with sql_uow() as uow:
            (entry,) = await uow.audit.list_for_sale(100)

        assert entry.actor == "ana"
        assert entry.initiator == Initiator.ADMIN
        assert entry.after == {"status": "aprobado"}

    @pytest.mark.asyncio
    async def test_webhook_records(self, sql_uow) -> None:
        async with sql_uow() as uow:
            ok = await uow.webhooks.create(
                WebhookRecord("1", "987", "payment", signature_valid=True, payload={"a": 1})
            )
            bad = await uow.webhooks.create(
                WebhookRecord("2", "988", "payment", signature_valid=True)
            )
            await uow.webhooks.update(
                bad.id,
                processing_status=WebhookStatus.FAILED,
                last_error="insufficient_stock: product 7",
            )
            await uow.commit()

        async with sql_uow() as uow:
            failed = await uow.webhooks.list_failed()
            stored = await uow.webhooks.get(ok.id)

        assert [r.id for r in failed] == [bad.id]
        assert failed[0].processing_status == WebhookStatus.FAILED
        assert stored.payload == {"a": 1}
        assert stored.processing_status == WebhookStatus.PENDING


class TestLedgerOnSql:
    """The ledger against real conditional UPDATE statements."""

    @pytest.mark.asyncio
    async def test_confirm_commits_status_stock_and_audit(self, sql_uow, session_factory) -> None:
        async with sql_uow() as uow:
            await uow.sales.add(pending_sale(100, quantity=3))
            await uow.commit()
        ledger = SaleLedger(sql_uow, timeout_seconds=5)

        result = await ledger.confirm(100, actor="admin", note="Pago #1")
        again = await ledger.confirm(100)

        assert result.changed is True
        assert again.changed is False
        assert result.sale.status == SaleStatus.APROBADO
        assert await stock_of(session_factory, 7) == 7
        async with sql_uow() as uow:
            actions = [e.action for e in await uow.audit.list_for_sale(100)]
            sale = await uow.sales.get(100)
        assert actions == [ACTION_SALE_CONFIRMED]
        assert "Pago #1" in sale.notes

    @pytest.mark.asyncio
    async def test_shortage_leaves_database_untouched(self, sql_uow, session_factory) -> None:
        async with sql_uow() as uow:
            await uow.sales.add(pending_sale(101, product_id=8, quantity=3))
            await uow.commit()
        ledger = SaleLedger(sql_uow)

        with pytest.raises(InsufficientStock):
            await ledger.confirm(101)

        assert await stock_of(session_factory, 8) == 2
        async with sql_uow() as uow:
            assert (await uow.sales.get(101)).status == SaleStatus.PENDIENTE
            assert await uow.audit.list_for_sale(101) == []

    @pytest.mark.asyncio
    async def test_expire_all(self, sql_uow) -> None:
        async with sql_uow() as uow:
            await uow.sales.add(pending_sale(1, created_at=utcnow() - timedelta(days=4)))
            await uow.commit()
        ledger = SaleLedger(sql_uow)

        ids = await ledger.expire_all(timedelta(days=3))

        assert ids == [1]
        async with sql_uow() as uow:
            assert (await uow.sales.get(1)).status == SaleStatus.VENCIDO
