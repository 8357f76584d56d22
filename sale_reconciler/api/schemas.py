"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ConfirmPaymentRequest(BaseModel):
    """Request schema for a manual payment confirmation."""

    note: Optional[str] = Field(
        default=None, max_length=500, description="Note appended to the sale"
    )

    @field_validator("note")
    @classmethod
    def strip_note(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    model_config = {
        "json_schema_extra": {"examples": [{"note": "Transferencia recibida 12/03"}]}
    }


class ApproveExpiredRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500)


class SaleConfirmationResponse(BaseModel):
    """Result of a confirmation or recovery approval."""

    sale_id: int = Field(..., description="Sale ID")
    status: str = Field(..., description="Sale status after the call")
    already_approved: bool = Field(
        ..., description="True when the sale was already approved (no-op)"
    )
    shipment_ref: Optional[str] = None
    tracking_code: Optional[str] = None


class ExpirationResponse(BaseModel):
    """Result of one expiration run."""

    count: int = Field(..., description="Sales moved to vencido")
    ids: List[int] = Field(default_factory=list, description="Expired sale IDs")
    duration_ms: int = Field(..., description="Run duration in milliseconds")


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment gateway."""

    received: bool = True
    record_id: Optional[int] = None
    outcome: str = Field(..., description="processed, ignored or failed")
    sale_id: Optional[int] = None


class WebhookRecordResponse(BaseModel):
    id: Optional[int]
    gateway_event_id: Optional[str]
    resource_id: Optional[str]
    topic: Optional[str]
    signature_valid: bool
    processing_status: str
    retry_count: int
    last_error: Optional[str]
    sale_id: Optional[int]
    received_at: str


class FailedWebhooksResponse(BaseModel):
    count: int
    records: List[WebhookRecordResponse]


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = None
