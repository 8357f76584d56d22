"""
Payment webhook ingestion with signature verification.

Implements:
- ``x-signature: ts=<unix>,v1=<hex>`` verification over the manifest
  ``id:<resource>;request-id:<x-request-id>;ts:<ts>;``
- Replay window on the signed timestamp
- A durable WebhookRecord for every call, rejected ones included
- Resolution of the payment through the gateway API and confirmation of
  the referenced sale
- Operator retry/reset of failed records
"""
import hashlib
import hmac
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import structlog

from ..core.domain import Initiator, WebhookRecord, WebhookStatus, utcnow
from ..core.exceptions import (
    ConflictError,
    ResourceIdMissing,
    SaleReconcilerError,
    SignatureFormatInvalid,
    SignatureInvalid,
    TimestampExpired,
    ValidationError,
    WebhookRecordNotFound,
)
from ..core.ports import PaymentGatewayClient, UnitOfWorkFactory
from ..core.reconciliation import ReconciliationService
from ..monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYMENT_TOPIC = "payment"
OTHER_TOPIC = "other"

_HEX_DIGEST = re.compile(r"[0-9a-fA-F]+")


@dataclass(frozen=True)
class WebhookSignature:
    ts: str
    v1: str


def parse_signature_header(value: Optional[str]) -> WebhookSignature:
    """
    Parse ``ts=<unix>,v1=<hex>``.

    Raises:
        SignatureFormatInvalid: Header missing, ``ts`` not ASCII digits or
            ``v1`` not a hex digest
    """
    if not value:
        raise SignatureFormatInvalid("Missing x-signature header")

    parts: Dict[str, str] = {}
    for part in value.split(","):
        key, _, part_value = part.partition("=")
        parts[key.strip()] = part_value.strip()

    ts, v1 = parts.get("ts"), parts.get("v1")
    if not ts or not v1:
        raise SignatureFormatInvalid("x-signature must contain ts and v1")
    if not (ts.isascii() and ts.isdigit()):
        raise SignatureFormatInvalid("x-signature ts must be a unix timestamp")
    if not _HEX_DIGEST.fullmatch(v1):
        raise SignatureFormatInvalid("x-signature v1 must be a hex digest")
    return WebhookSignature(ts=ts, v1=v1)


def build_manifest(resource_id: Optional[str], request_id: Optional[str], ts: Optional[str]) -> str:
    """Signed manifest; empty parts are left out."""
    manifest = ""
    if resource_id:
        manifest += f"id:{resource_id};"
    if request_id:
        manifest += f"request-id:{request_id};"
    if ts:
        manifest += f"ts:{ts};"
    return manifest


def compute_signature(secret: str, manifest: str) -> str:
    return hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()


def extract_resource_id(body: Mapping[str, Any], query: Mapping[str, Any]) -> Optional[str]:
    """Resource id from body ``data.id``, then query ``data.id``, then query ``id``."""
    data = body.get("data")
    if isinstance(data, Mapping) and data.get("id") not in (None, ""):
        return str(data["id"])
    for key in ("data.id", "id"):
        if query.get(key):
            return str(query[key])
    return None


def extract_topic(body: Mapping[str, Any], query: Mapping[str, Any]) -> Optional[str]:
    for source in (body, query):
        for key in ("type", "topic"):
            if source.get(key):
                return str(source[key])
    return None


@dataclass(frozen=True)
class WebhookReceipt:
    """Accepted notification and what processing made of it."""

    record: WebhookRecord
    outcome: str  # processed, ignored, failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": True,
            "record_id": self.record.id,
            "outcome": self.outcome,
            "sale_id": self.record.sale_id,
        }


class WebhookGateway:
    """
    Verifies, records and processes payment notifications.

    Callers only ever see success once the record is stored, or a reject
    reason. Processing failures are kept on the record for operators.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        reconciliation: ReconciliationService,
        gateway_client: PaymentGatewayClient,
        secret: str,
        max_age_seconds: int = 300,
        strict: bool = False,
        relaxed_topics: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the gateway.

        Args:
            uow_factory: Storage for webhook records
            reconciliation: Confirms sales for approved payments
            gateway_client: Payment lookup (source of truth)
            secret: Pre-shared HMAC secret
            max_age_seconds: Replay window of the signed timestamp
            strict: Reject stale notifications (production) instead of warning
            relaxed_topics: Topics accepted unsigned when not strict
            clock: Current unix time
        """
        self.uow_factory = uow_factory
        self.reconciliation = reconciliation
        self.gateway_client = gateway_client
        self.secret = secret
        self.max_age_seconds = max_age_seconds
        self.strict = strict
        self.relaxed_topics = frozenset(relaxed_topics)
        self.clock = clock

    def metric_topic(self, topic: Optional[str]) -> str:
        """Collapse caller-supplied topics to a bounded metric label."""
        if topic in (None, PAYMENT_TOPIC):
            return PAYMENT_TOPIC
        if topic in self.relaxed_topics:
            return topic
        return OTHER_TOPIC

    def verify(self, headers: Mapping[str, str], resource_id: Optional[str]) -> None:
        """
        Check signature and freshness of a notification.

        Raises:
            SignatureFormatInvalid: Malformed or missing x-signature
            ResourceIdMissing: No resource id to sign over
            SignatureInvalid: HMAC mismatch
            TimestampExpired: Signed ts older than the window (strict only)
        """
        signature = parse_signature_header(headers.get("x-signature"))
        if not resource_id:
            raise ResourceIdMissing("Notification carries no data.id")

        manifest = build_manifest(resource_id, headers.get("x-request-id"), signature.ts)
        expected = compute_signature(self.secret, manifest)
        if not hmac.compare_digest(expected.encode(), signature.v1.lower().encode()):
            raise SignatureInvalid("Signature does not match notification")

        age = int(self.clock()) - int(signature.ts)
        if age > self.max_age_seconds:
            if self.strict:
                raise TimestampExpired(age, self.max_age_seconds)
            logger.warning(
                "webhook_timestamp_stale",
                resource_id=resource_id,
                age_seconds=age,
                max_age_seconds=self.max_age_seconds,
            )

    async def receive(
        self,
        headers: Mapping[str, str],
        body: Mapping[str, Any],
        query: Optional[Mapping[str, Any]] = None,
    ) -> WebhookReceipt:
        """
        Handle one inbound notification.

        Args:
            headers: Request headers (any case)
            body: Parsed JSON body ({} when absent)
            query: Query parameters

        Returns:
            WebhookReceipt: Stored record and processing outcome

        Raises:
            SignatureFormatInvalid, ResourceIdMissing, SignatureInvalid,
            TimestampExpired: Notification rejected (still recorded)
        """
        headers = {k.lower(): v for k, v in headers.items()}
        query = query or {}
        topic = extract_topic(body, query)
        resource_id = extract_resource_id(body, query)
        event_id = str(body["id"]) if body.get("id") else headers.get("x-request-id")

        log = logger.bind(topic=topic, resource_id=resource_id, gateway_event_id=event_id)
        log.info("webhook_received")

        relaxed = not self.strict and topic in self.relaxed_topics
        if relaxed:
            log.warning("webhook_signature_skipped_relaxed_topic")
        else:
            try:
                self.verify(headers, resource_id)
            except SaleReconcilerError as e:
                await self._store(
                    WebhookRecord(
                        gateway_event_id=event_id,
                        resource_id=resource_id,
                        topic=topic,
                        signature_valid=False,
                        processing_status=WebhookStatus.FAILED,
                        last_error=f"{e.error_code}: {e.message}",
                        payload=dict(body),
                    )
                )
                metrics.record_webhook(self.metric_topic(topic), "rejected")
                log.warning("webhook_rejected", error_code=e.error_code, error=e.message)
                raise

        record = await self._store(
            WebhookRecord(
                gateway_event_id=event_id,
                resource_id=resource_id,
                topic=topic,
                signature_valid=not relaxed,
                payload=dict(body),
            )
        )
        return await self._process(record)

    async def _store(self, record: WebhookRecord) -> WebhookRecord:
        async with self.uow_factory() as uow:
            record = await uow.webhooks.create(record)
            await uow.commit()
        return record

    async def _process(self, record: WebhookRecord) -> WebhookReceipt:
        start = time.perf_counter()
        try:
            outcome, sale_id = await self._apply(record)
        except Exception as e:
            # Recorded, so the caller still gets 200; operators retry from the record
            error = f"{e.error_code}: {e.message}" if isinstance(e, SaleReconcilerError) else str(e)
            logger.error(
                "webhook_processing_failed",
                record_id=record.id,
                resource_id=record.resource_id,
                error=error,
                error_type=type(e).__name__,
            )
            await self._mark(record, WebhookStatus.FAILED, last_error=error)
            metrics.record_webhook(
                self.metric_topic(record.topic), "failed", time.perf_counter() - start
            )
            return WebhookReceipt(record=record, outcome="failed")

        await self._mark(record, WebhookStatus.PROCESSED, last_error=None, sale_id=sale_id)
        metrics.record_webhook(
            self.metric_topic(record.topic), outcome, time.perf_counter() - start
        )
        logger.info(
            "webhook_processed",
            record_id=record.id,
            outcome=outcome,
            sale_id=sale_id,
        )
        return WebhookReceipt(record=record, outcome=outcome)

    async def _apply(self, record: WebhookRecord) -> tuple[str, Optional[int]]:
        if record.topic not in (None, PAYMENT_TOPIC):
            return "ignored", None
        if not record.resource_id:
            raise ResourceIdMissing("Notification carries no data.id")

        payment = await self.gateway_client.fetch_payment(record.resource_id)
        if not payment.is_approved:
            logger.info(
                "webhook_payment_not_approved",
                resource_id=record.resource_id,
                status=payment.status,
                sale_id=payment.sale_id,
            )
            return "ignored", payment.sale_id

        if payment.sale_id is None:
            raise ValidationError(
                f"Approved payment {record.resource_id} references no sale",
                resource_id=record.resource_id,
            )

        await self.reconciliation.confirm_payment(
            payment.sale_id,
            note=f"Pago #{record.resource_id}",
            actor="payment-gateway",
            initiator=Initiator.WEBHOOK,
        )
        return "processed", payment.sale_id

    async def _mark(self, record: WebhookRecord, status: WebhookStatus, **fields: Any) -> None:
        async with self.uow_factory() as uow:
            await uow.webhooks.update(record.id, processing_status=status, **fields)
            await uow.commit()

        record.processing_status = status
        record.updated_at = utcnow()
        for key, value in fields.items():
            setattr(record, key, value)

    async def list_failed(self, limit: int = 100) -> List[WebhookRecord]:
        async with self.uow_factory() as uow:
            return await uow.webhooks.list_failed(limit)

    async def _get(self, record_id: int) -> WebhookRecord:
        async with self.uow_factory() as uow:
            record = await uow.webhooks.get(record_id)
        if record is None:
            raise WebhookRecordNotFound(record_id)
        return record

    async def retry(self, record_id: int) -> WebhookReceipt:
        """
        Re-run processing of a stored notification.

        Raises:
            WebhookRecordNotFound: Unknown record
            ConflictError: Record was never authenticated or is already processed
        """
        record = await self._get(record_id)
        if not record.signature_valid:
            raise ConflictError(
                "Unauthenticated notifications cannot be retried", record_id=record_id
            )
        if record.processing_status == WebhookStatus.PROCESSED:
            raise ConflictError("Notification already processed", record_id=record_id)

        record.retry_count += 1
        async with self.uow_factory() as uow:
            await uow.webhooks.update(record_id, retry_count=record.retry_count)
            await uow.commit()

        logger.info("webhook_retry", record_id=record_id, retry_count=record.retry_count)
        return await self._process(record)

    async def reset(self, record_id: int) -> WebhookRecord:
        """Put a record back to pending with a clean retry history."""
        record = await self._get(record_id)
        async with self.uow_factory() as uow:
            await uow.webhooks.update(
                record_id,
                processing_status=WebhookStatus.PENDING,
                retry_count=0,
                last_error=None,
            )
            await uow.commit()

        record.processing_status = WebhookStatus.PENDING
        record.retry_count = 0
        record.last_error = None
        logger.info("webhook_reset", record_id=record_id)
        return record
