"""
Expiration of unpaid sales.

``ExpirationJob`` is what both the daily scheduler and ``POST /sales/expire``
run: expire every eligible pending sale, audit the run, then publish
``sale.expired`` and queue the customer notices.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import structlog

from ..monitoring.metrics import metrics
from .domain import ACTION_EXPIRATION_JOB, AuditEntry, Initiator, SaleStatus, utcnow
from .events import SALE_EXPIRED
from .ledger import SaleLedger
from .ports import EventPublisher, UnitOfWorkFactory
from .side_effects import SideEffectOrchestrator, TaskTracker

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ExpirationReport:
    count: int
    ids: List[int] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "ids": list(self.ids), "duration_ms": self.duration_ms}


class ExpirationJob:
    """Expires pending sales older than the configured threshold."""

    def __init__(
        self,
        ledger: SaleLedger,
        uow_factory: UnitOfWorkFactory,
        events: EventPublisher,
        side_effects: SideEffectOrchestrator,
        threshold: timedelta = timedelta(days=3),
        payment_methods: Optional[Sequence[str]] = None,
        tasks: Optional[TaskTracker] = None,
    ):
        """
        Initialize the job.

        Args:
            ledger: Owner of the guarded pendiente -> vencido update
            uow_factory: Used to append the job's own audit entry
            events: Publisher for ``sale.expired``
            side_effects: Sends expiration notices
            threshold: Minimum age of a sale before it expires
            payment_methods: Only these methods expire (None/empty = all)
            tasks: Tracker owning the background notice tasks
        """
        self.ledger = ledger
        self.uow_factory = uow_factory
        self.events = events
        self.side_effects = side_effects
        self.threshold = threshold
        self.payment_methods = list(payment_methods) if payment_methods else None
        self.tasks = tasks or TaskTracker()

    async def run(
        self,
        actor: str = "system",
        initiator: Initiator = Initiator.SCHEDULER,
        now: Optional[datetime] = None,
    ) -> ExpirationReport:
        """
        Run one expiration pass.

        Returns:
            ExpirationReport: ``{count, ids, duration_ms}`` of this run
        """
        start = time.perf_counter()
        logger.info(
            "expiration_job_started",
            threshold_days=self.threshold.days,
            payment_methods=self.payment_methods,
            initiator=initiator.value,
        )

        ids = await self.ledger.expire_all(
            self.threshold,
            now=now,
            payment_methods=self.payment_methods,
            actor=actor,
            initiator=initiator,
        )
        duration_seconds = time.perf_counter() - start
        report = ExpirationReport(
            count=len(ids), ids=ids, duration_ms=int(duration_seconds * 1000)
        )

        # Expirations are already committed; announce them before anything else can fail
        for sale_id in ids:
            await self._publish(sale_id)
            self.tasks.spawn(
                self.side_effects.notify_expired(sale_id), name=f"expired-notice-{sale_id}"
            )

        metrics.record_expiration_run(report.count, duration_seconds)
        await self._audit_run(report, actor, initiator)
        logger.info("expiration_job_completed", **report.to_dict())
        return report

    async def _audit_run(self, report: ExpirationReport, actor: str, initiator: Initiator) -> None:
        try:
            async with self.uow_factory() as uow:
                await uow.audit.append(
                    AuditEntry(
                        actor=actor,
                        action=ACTION_EXPIRATION_JOB,
                        before=None,
                        after=report.to_dict(),
                        initiator=initiator,
                    )
                )
                await uow.commit()
        except Exception as e:
            logger.error(
                "expiration_job_audit_failed",
                count=report.count,
                ids=report.ids,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _publish(self, sale_id: int) -> None:
        try:
            await self.events.emit(
                SALE_EXPIRED,
                {
                    "sale_id": sale_id,
                    "status": SaleStatus.VENCIDO.value,
                    "timestamp": utcnow().isoformat(),
                },
            )
        except Exception as e:
            logger.error("sale_expired_event_failed", sale_id=sale_id, error=str(e))
