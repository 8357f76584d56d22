"""
Exception taxonomy for the sale reconciler.

Every error carries a stable ``error_code`` for API clients and the HTTP
status it maps to. Transition-guard and stock failures are raised to the
caller; side-effect failures never leave their boundary.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class SaleReconcilerError(Exception):
    """Base exception for all reconciler errors."""

    http_status: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class ValidationError(SaleReconcilerError):
    """Malformed input."""

    http_status = 400
    error_code = "validation_error"


class AuthenticationError(SaleReconcilerError):
    """Signature or credential check failed."""

    http_status = 401
    error_code = "authentication_failed"


class NotFoundError(SaleReconcilerError):
    """Referenced entity does not exist."""

    http_status = 404
    error_code = "not_found"


class ConflictError(SaleReconcilerError):
    """Requested change conflicts with current state."""

    http_status = 409
    error_code = "conflict"


class TransientInfraError(SaleReconcilerError):
    """
    Timeout or outage in an outbound collaborator (carrier, mail, gateway).

    Only raised inside side-effect and webhook processing boundaries.
    """

    http_status = 503
    error_code = "transient_infrastructure_error"


# Sale lifecycle

class SaleNotFound(NotFoundError):
    error_code = "sale_not_found"

    def __init__(self, sale_id: int):
        super().__init__(f"Sale {sale_id} not found", sale_id=sale_id)
        self.sale_id = sale_id


class InvalidTransition(ConflictError):
    error_code = "invalid_transition"

    def __init__(self, sale_id: int, current: str, target: str):
        super().__init__(
            f"Sale {sale_id} cannot move from '{current}' to '{target}'",
            sale_id=sale_id,
            current=current,
            target=target,
        )
        self.sale_id = sale_id
        self.current = current
        self.target = target


@dataclass(frozen=True)
class StockShortage:
    """Per-product detail of a failed stock validation."""

    product_id: int
    requested: int
    available: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "product_id": self.product_id,
            "requested": self.requested,
            "available": self.available,
        }


class InsufficientStock(ConflictError):
    error_code = "insufficient_stock"

    def __init__(self, shortages: List[StockShortage], sale_id: Optional[int] = None):
        detail = ", ".join(
            f"product {s.product_id}: requested {s.requested}, available {s.available}"
            for s in shortages
        )
        super().__init__(f"Insufficient stock ({detail})", sale_id=sale_id)
        self.shortages = shortages
        self.sale_id = sale_id

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["error"]["shortages"] = [s.to_dict() for s in self.shortages]
        return body


# Webhook ingestion

class SignatureFormatInvalid(AuthenticationError):
    error_code = "signature_format_invalid"


class SignatureInvalid(AuthenticationError):
    error_code = "signature_invalid"


class TimestampExpired(AuthenticationError):
    error_code = "timestamp_expired"

    def __init__(self, age_seconds: int, max_age_seconds: int):
        super().__init__(
            f"Notification is {age_seconds}s old (max {max_age_seconds}s)",
            age=age_seconds,
            max_age=max_age_seconds,
        )
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds


class ResourceIdMissing(ValidationError):
    error_code = "resource_id_missing"


class WebhookRecordNotFound(NotFoundError):
    error_code = "webhook_record_not_found"

    def __init__(self, record_id: int):
        super().__init__(f"Webhook record {record_id} not found", record_id=record_id)
        self.record_id = record_id
