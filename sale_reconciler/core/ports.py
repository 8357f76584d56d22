"""
Collaborator contracts consumed by the core services.

The core depends only on these protocols. ``database.repositories`` and the
``integrations`` clients provide the production implementations; tests
provide in-memory fakes. Nothing here imports a service module.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
)

from .domain import AuditEntry, Sale, SaleStatus, WebhookRecord

EventHandler = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


class SaleRepository(Protocol):
    async def get(self, sale_id: int) -> Optional[Sale]: ...

    async def add(self, sale: Sale) -> None: ...

    async def update_status(
        self,
        sale_id: int,
        expected: SaleStatus,
        new: SaleStatus,
        patch: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Compare-and-set on status. Returns affected rows (0 or 1)."""
        ...

    async def find_expirable(
        self, cutoff: datetime, payment_methods: Optional[Sequence[str]] = None
    ) -> List[int]: ...

    async def set_shipment(
        self, sale_id: int, shipment_ref: str, tracking_code: Optional[str]
    ) -> None: ...


class StockRepository(Protocol):
    async def available(self, product_ids: Iterable[int]) -> Dict[int, int]: ...

    async def decrement(self, product_id: int, quantity: int) -> None:
        """Subtract ``quantity``; raises InsufficientStock if the result would be negative."""
        ...


class AuditRepository(Protocol):
    async def append(self, entry: AuditEntry) -> None: ...

    async def list_for_sale(self, sale_id: int) -> List[AuditEntry]: ...


class WebhookRecordRepository(Protocol):
    async def create(self, record: WebhookRecord) -> WebhookRecord: ...

    async def update(self, record_id: int, **fields: Any) -> None: ...

    async def get(self, record_id: int) -> Optional[WebhookRecord]: ...

    async def list_failed(self, limit: int = 100) -> List[WebhookRecord]: ...


class UnitOfWork(Protocol):
    """One storage transaction. Leaving the context without commit() rolls back."""

    sales: SaleRepository
    stock: StockRepository
    audit: AuditRepository
    webhooks: WebhookRecordRepository

    async def __aenter__(self) -> "UnitOfWork": ...

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


UnitOfWorkFactory = Callable[[], UnitOfWork]


class EventPublisher(Protocol):
    async def emit(self, topic: str, payload: Dict[str, Any]) -> None: ...

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]: ...


@dataclass(frozen=True)
class PreShipment:
    shipment_ref: str
    tracking_code: Optional[str] = None


class CarrierClient(Protocol):
    async def create_pre_shipment(self, sale_id: int) -> PreShipment: ...


class NotificationClient(Protocol):
    async def send_order_confirmation(self, payload: Dict[str, Any]) -> None: ...

    async def send_order_expired(self, payload: Dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class GatewayPayment:
    resource_id: str
    status: str
    sale_id: Optional[int] = None

    @property
    def is_approved(self) -> bool:
        return self.status == "approved"


class PaymentGatewayClient(Protocol):
    async def fetch_payment(self, resource_id: str) -> GatewayPayment: ...
