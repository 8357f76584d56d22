"""
Pytest configuration and fixtures.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from sale_reconciler.config import Settings
from sale_reconciler.container import ServiceContainer, wire_services
from sale_reconciler.core.domain import FulfillmentType, Sale, SaleDetail, utcnow

from .fakes import (
    FakeCarrier,
    FakeGatewayClient,
    FakeNotifier,
    InMemoryStore,
    InMemoryUnitOfWork,
    RecordingEventBus,
)


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: tests against a real database driver")
    config.addinivalue_line("markers", "race: concurrent transition tests")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url=None,
        webhook_secret="test-webhook-secret",
        webhook_max_age_seconds=300,
        admin_api_key="test-admin-key",
        app_name="sale-reconciler-test",
        app_env="test",
        log_level="DEBUG",
        storage_timeout_seconds=2.0,
        carrier_timeout_seconds=0.5,
        mail_timeout_seconds=0.5,
        sale_expiration_days=3,
        expiration_scheduler_enabled=False,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def uow_factory(store: InMemoryStore) -> Callable[[], InMemoryUnitOfWork]:
    return lambda: InMemoryUnitOfWork(store)


@pytest.fixture
def events() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def carrier() -> FakeCarrier:
    return FakeCarrier()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def gateway_client() -> FakeGatewayClient:
    return FakeGatewayClient()


@pytest.fixture
def container(
    test_settings: Settings,
    uow_factory: Callable[[], InMemoryUnitOfWork],
    events: RecordingEventBus,
    carrier: FakeCarrier,
    notifier: FakeNotifier,
    gateway_client: FakeGatewayClient,
) -> ServiceContainer:
    """Services wired around in-memory collaborators."""
    return wire_services(
        test_settings, uow_factory, events, carrier, notifier, gateway_client
    )


@pytest.fixture
def make_sale(store: InMemoryStore) -> Callable[..., Sale]:
    """
    Seed a pending sale and its products' stock.

    ``lines`` are ``(product_id, quantity, stock)`` tuples; ``stock`` sets the
    product counter when given.
    """

    def _make(
        sale_id: int,
        lines: List[Tuple[int, int, Optional[int]]],
        created_at: Optional[datetime] = None,
        **extra: Any,
    ) -> Sale:
        items = []
        for product_id, quantity, stock in lines:
            if stock is not None:
                store.stock[product_id] = stock
            items.append(
                SaleDetail(
                    product_id=product_id,
                    quantity=quantity,
                    unit_price=Decimal("100.00"),
                    product_name=f"Producto {product_id}",
                )
            )
        extra.setdefault("customer_email", f"cliente{sale_id}@example.com")
        extra.setdefault("payment_method", "transferencia")
        extra.setdefault("fulfillment_type", FulfillmentType.ENVIO)
        sale = Sale.create(sale_id, items, created_at=created_at, **extra)
        store.sales[sale_id] = sale
        return sale

    return _make


@pytest.fixture
def days_ago() -> Callable[[int], datetime]:
    return lambda days: utcnow() - timedelta(days=days)


@pytest.fixture
def sample_notification() -> Dict[str, Any]:
    """Body of a gateway payment notification."""
    return {
        "id": 12345678901,
        "type": "payment",
        "action": "payment.updated",
        "data": {"id": "987654321"},
    }
