"""
API routes for payment reconciliation.

Domain errors propagate to the application's exception handler, which
renders ``SaleReconcilerError.to_dict()`` with the error's HTTP status.
"""
import hmac
import json
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..container import ServiceContainer
from ..core.domain import Initiator
from ..core.exceptions import AuthenticationError, InvalidTransition
from ..monitoring.health import HealthCheck
from ..monitoring.logging import bind_request_context
from .schemas import (
    ApproveExpiredRequest,
    ConfirmPaymentRequest,
    ExpirationResponse,
    FailedWebhooksResponse,
    HealthCheckResponse,
    SaleConfirmationResponse,
    WebhookAckResponse,
    WebhookRecordResponse,
)

logger = structlog.get_logger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
sales_router = APIRouter(prefix="/sales", tags=["sales"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def require_admin(
    request: Request, container: ServiceContainer = Depends(get_container)
) -> str:
    """
    Check the admin API key and return the acting admin's name.

    Raises:
        AuthenticationError: Key missing, wrong, or not configured
    """
    settings = container.settings
    if not settings.admin_api_key:
        raise AuthenticationError("Admin API key is not configured")

    provided = request.headers.get(settings.api_key_header, "")
    if not hmac.compare_digest(provided.encode(), settings.admin_api_key.encode()):
        raise AuthenticationError("Invalid or missing API key")

    actor = request.headers.get(settings.actor_header) or "admin"
    bind_request_context(actor=actor)
    return actor


# Webhooks


@webhook_router.post(
    "/payment",
    response_model=WebhookAckResponse,
    summary="Payment gateway notification",
    description="Signed notification endpoint. Returns 200 once the notification is recorded.",
)
async def receive_payment_webhook(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else {}
    except ValueError:
        logger.warning("webhook_body_not_json", size=len(raw))
        body = {}
    if not isinstance(body, dict):
        body = {}

    receipt = await container.webhook_gateway.receive(
        headers=dict(request.headers),
        body=body,
        query=dict(request.query_params),
    )
    return receipt.to_dict()


@webhook_router.get("/failed", response_model=FailedWebhooksResponse)
async def list_failed_webhooks(
    limit: int = Query(default=100, ge=1, le=1000),
    actor: str = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Failed notifications, newest first."""
    records = await container.webhook_gateway.list_failed(limit)
    return {"count": len(records), "records": [r.to_dict() for r in records]}


@webhook_router.post("/retry/{record_id}", response_model=WebhookAckResponse)
async def retry_webhook(
    record_id: int,
    actor: str = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    logger.info("api_webhook_retry", record_id=record_id, actor=actor)
    receipt = await container.webhook_gateway.retry(record_id)
    return receipt.to_dict()


@webhook_router.post("/reset/{record_id}", response_model=WebhookRecordResponse)
async def reset_webhook(
    record_id: int,
    actor: str = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    logger.info("api_webhook_reset", record_id=record_id, actor=actor)
    record = await container.webhook_gateway.reset(record_id)
    return record.to_dict()


# Sales


@sales_router.post(
    "/{sale_id}/confirm-payment",
    response_model=SaleConfirmationResponse,
    summary="Confirm payment manually",
    description="Approve a pending sale and decrement stock. Idempotent for approved sales.",
)
async def confirm_payment(
    sale_id: int,
    body: ConfirmPaymentRequest | None = None,
    actor: str = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.reconciliation.confirm_payment(
        sale_id,
        note=body.note if body else None,
        actor=actor,
        initiator=Initiator.ADMIN,
    )
    return result.to_dict()


@sales_router.post("/expire", response_model=ExpirationResponse)
async def expire_sales(
    actor: str = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Run the expiration job now (admin or external cron)."""
    report = await container.expiration_job.run(actor=actor, initiator=Initiator.ADMIN)
    return report.to_dict()


@sales_router.post(
    "/{sale_id}/approve-from-expired",
    response_model=SaleConfirmationResponse,
    responses={400: {"description": "Sale is not vencido"}},
)
async def approve_from_expired(
    sale_id: int,
    body: ApproveExpiredRequest | None = None,
    actor: str = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Any:
    """Recovery: approve a sale that expired before its payment was confirmed."""
    try:
        result = await container.reconciliation.approve_from_expired(
            sale_id, actor=actor, note=body.note if body else None
        )
    except InvalidTransition as e:
        # Caller error on this route: only vencido sales can be recovered
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=e.to_dict())
    return result.to_dict()


# Monitoring


def _health(container: ServiceContainer) -> HealthCheck:
    return container.health or HealthCheck(container.settings)


@monitoring_router.get("/health", response_model=HealthCheckResponse)
async def health(container: ServiceContainer = Depends(get_container)) -> Any:
    result = await _health(container).check_all()
    code = status.HTTP_200_OK if result["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=result)


@monitoring_router.get("/health/live", response_model=HealthCheckResponse)
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return await _health(container).liveness()


@monitoring_router.get("/health/ready", response_model=HealthCheckResponse)
async def readiness(container: ServiceContainer = Depends(get_container)) -> Any:
    result = await _health(container).readiness()
    code = status.HTTP_200_OK if result["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=result)


@monitoring_router.get("/metrics")
async def prometheus_metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
