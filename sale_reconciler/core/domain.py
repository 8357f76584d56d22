"""
Domain types for the sale payment lifecycle.

Plain dataclasses with no I/O. Persistence models convert to and from these
so services never hold ORM objects across transactions.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes coming back from storage as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SaleStatus(str, Enum):
    """Payment status of a sale."""

    PENDIENTE = "pendiente"
    APROBADO = "aprobado"
    CANCELADO = "cancelado"
    VENCIDO = "vencido"


class FulfillmentType(str, Enum):
    ENVIO = "envio"
    RETIRO = "retiro"  # store pickup


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class Initiator(str, Enum):
    """What triggered an audited transition."""

    WEBHOOK = "webhook"
    ADMIN = "admin"
    SCHEDULER = "scheduler"
    SYSTEM = "system"


@dataclass(frozen=True)
class SaleDetail:
    """One sale line. Immutable after creation."""

    product_id: int
    quantity: int
    unit_price: Decimal
    discount: Decimal = Decimal("0")
    product_name: Optional[str] = None

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError("quantity must be greater than 0")
        if self.unit_price < 0:
            raise ValueError("unit_price must not be negative")
        if self.discount < 0:
            raise ValueError("discount must not be negative")
        if self.discount > self.quantity * self.unit_price:
            raise ValueError("discount cannot exceed quantity * unit_price")

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.unit_price - self.discount


@dataclass(frozen=True)
class Sale:
    """Snapshot of a sale as read from storage."""

    id: int
    status: SaleStatus
    total: Decimal
    created_at: datetime
    updated_at: datetime
    items: Tuple[SaleDetail, ...] = ()
    payment_method: Optional[str] = None
    fulfillment_type: FulfillmentType = FulfillmentType.ENVIO
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    notes: Optional[str] = None
    shipment_ref: Optional[str] = None
    tracking_code: Optional[str] = None

    @classmethod
    def create(
        cls,
        sale_id: int,
        items: List[SaleDetail],
        created_at: Optional[datetime] = None,
        **extra: Any,
    ) -> "Sale":
        """Build a new pending sale whose total is the sum of its line subtotals."""
        if not items:
            raise ValueError("a sale needs at least one line")
        now = created_at or utcnow()
        return cls(
            id=sale_id,
            status=SaleStatus.PENDIENTE,
            total=sum((item.subtotal for item in items), Decimal("0")),
            created_at=now,
            updated_at=now,
            items=tuple(items),
            **extra,
        )

    @property
    def is_store_pickup(self) -> bool:
        return self.fulfillment_type == FulfillmentType.RETIRO

    def quantities_by_product(self) -> Dict[int, int]:
        """Requested units per product, lines for the same product summed."""
        totals: Dict[int, int] = {}
        for item in self.items:
            totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
        return totals

    def snapshot(self) -> Dict[str, Any]:
        return {"sale_id": self.id, "status": self.status.value}

    def with_status(self, status: SaleStatus, updated_at: Optional[datetime] = None) -> "Sale":
        return replace(self, status=status, updated_at=updated_at or utcnow())


@dataclass(frozen=True)
class AuditEntry:
    """Append-only audit trail entry."""

    actor: str
    action: str
    before: Optional[Dict[str, Any]]
    after: Optional[Dict[str, Any]]
    sale_id: Optional[int] = None
    initiator: Initiator = Initiator.SYSTEM
    note: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class WebhookRecord:
    """Stored inbound payment notification."""

    gateway_event_id: Optional[str]
    resource_id: Optional[str]
    topic: Optional[str]
    signature_valid: bool
    processing_status: WebhookStatus = WebhookStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    sale_id: Optional[int] = None
    received_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "gateway_event_id": self.gateway_event_id,
            "resource_id": self.resource_id,
            "topic": self.topic,
            "signature_valid": self.signature_valid,
            "processing_status": self.processing_status.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "sale_id": self.sale_id,
            "received_at": self.received_at.isoformat(),
        }


# Audit actions
ACTION_SALE_CONFIRMED = "SALE_PAYMENT_CONFIRMED"
ACTION_SALE_EXPIRED = "SALE_EXPIRED"
ACTION_SALE_EXPIRED_APPROVED = "SALE_EXPIRED_APPROVED"
ACTION_EXPIRATION_JOB = "SALES_EXPIRATION_JOB"
