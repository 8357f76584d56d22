"""
Race condition tests for concurrent sale transitions.

Concurrent tasks interleave at every repository call (see fakes), so these
exercise the guarded status update and the conditional stock decrement.
"""
import asyncio
from datetime import timedelta

import pytest

from sale_reconciler.core.domain import SaleStatus
from sale_reconciler.core.exceptions import InsufficientStock, InvalidTransition
from sale_reconciler.core.ledger import SaleLedger


@pytest.fixture
def ledger(uow_factory) -> SaleLedger:
    return SaleLedger(uow_factory)


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_two_sales_competing_for_last_units(self, ledger, store, make_sale) -> None:
        """
        Two 5-unit sales against stock 5.

        Exactly one confirmation succeeds; the other fails with
        InsufficientStock and stock ends at 0, never negative.
        """
        make_sale(200, [(9, 5, 5)])
        make_sale(201, [(9, 5, None)])

        results = await asyncio.gather(
            ledger.confirm(200), ledger.confirm(201), return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientStock)
        assert store.stock[9] == 0

        statuses = sorted(store.sales[i].status.value for i in (200, 201))
        assert statuses == ["aprobado", "pendiente"]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_confirmations_of_same_sale(self, ledger, store, make_sale) -> None:
        """Ten concurrent confirmations decrement stock once."""
        make_sale(202, [(9, 2, 10)])

        results = await asyncio.gather(*[ledger.confirm(202) for _ in range(10)])

        assert all(r.sale.status == SaleStatus.APROBADO for r in results)
        assert sum(1 for r in results if r.changed) == 1
        assert store.stock[9] == 8
        assert len(store.audit) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_confirm_and_expire_are_mutually_exclusive(
        self, ledger, store, make_sale, days_ago
    ) -> None:
        """Whichever transition wins, the sale ends in exactly one terminal state."""
        make_sale(203, [(9, 2, 10)], created_at=days_ago(10))

        confirm_result, expired_ids = await asyncio.gather(
            ledger.confirm(203),
            ledger.expire_all(timedelta(days=3)),
            return_exceptions=True,
        )

        status = store.sales[203].status
        if status == SaleStatus.APROBADO:
            assert not isinstance(confirm_result, Exception)
            assert expired_ids == []
            assert store.stock[9] == 8
        else:
            assert status == SaleStatus.VENCIDO
            assert isinstance(confirm_result, InvalidTransition)
            assert expired_ids == [203]
            assert store.stock[9] == 10
        assert len(store.audit) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_sales_sharing_product_never_oversell(self, ledger, store, make_sale) -> None:
        """Ten 1-unit sales against stock 3: three succeed."""
        for sale_id in range(300, 310):
            make_sale(sale_id, [(11, 1, 3 if sale_id == 300 else None)])

        results = await asyncio.gather(
            *[ledger.confirm(i) for i in range(300, 310)], return_exceptions=True
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 3
        assert all(isinstance(r, InsufficientStock) for r in results if isinstance(r, Exception))
        assert store.stock[11] == 0
