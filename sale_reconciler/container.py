"""
Service wiring.

Everything is constructed here and injected; no module holds a service
singleton. ``wire_services`` takes already-built collaborators (the test
suite passes fakes), ``build_container`` builds the production ones.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, List, Optional

import structlog

from .config import Settings
from .core.expiration import ExpirationJob
from .core.ledger import SaleLedger
from .core.ports import (
    CarrierClient,
    EventPublisher,
    NotificationClient,
    PaymentGatewayClient,
    UnitOfWorkFactory,
)
from .core.reconciliation import ReconciliationService
from .core.side_effects import SideEffectOrchestrator, TaskTracker
from .integrations.webhook_gateway import WebhookGateway
from .monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    uow_factory: UnitOfWorkFactory
    events: EventPublisher
    ledger: SaleLedger
    side_effects: SideEffectOrchestrator
    reconciliation: ReconciliationService
    webhook_gateway: WebhookGateway
    expiration_job: ExpirationJob
    tasks: TaskTracker
    health: Optional[HealthCheck] = None
    closers: List[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def close(self) -> None:
        """Let in-flight side effects finish, then release clients and connections."""
        await self.tasks.drain()
        for closer in reversed(self.closers):
            try:
                await closer()
            except Exception as e:
                logger.error("container_close_failed", closer=repr(closer), error=str(e))


def wire_services(
    settings: Settings,
    uow_factory: UnitOfWorkFactory,
    events: EventPublisher,
    carrier: CarrierClient,
    notifier: NotificationClient,
    gateway_client: PaymentGatewayClient,
    health: Optional[HealthCheck] = None,
) -> ServiceContainer:
    """Assemble the services around the given collaborators."""
    tasks = TaskTracker()
    ledger = SaleLedger(uow_factory, timeout_seconds=settings.storage_timeout_seconds)
    side_effects = SideEffectOrchestrator(
        uow_factory,
        carrier,
        notifier,
        carrier_timeout_seconds=settings.carrier_timeout_seconds,
        notification_timeout_seconds=settings.mail_timeout_seconds,
    )
    reconciliation = ReconciliationService(ledger, events, side_effects, tasks)
    webhook_gateway = WebhookGateway(
        uow_factory,
        reconciliation,
        gateway_client,
        secret=settings.webhook_secret,
        max_age_seconds=settings.webhook_max_age_seconds,
        strict=settings.is_production,
        relaxed_topics=settings.get_relaxed_topics(),
    )
    expiration_job = ExpirationJob(
        ledger,
        uow_factory,
        events,
        side_effects,
        threshold=timedelta(days=settings.sale_expiration_days),
        payment_methods=settings.get_expiration_payment_methods(),
        tasks=tasks,
    )
    return ServiceContainer(
        settings=settings,
        uow_factory=uow_factory,
        events=events,
        ledger=ledger,
        side_effects=side_effects,
        reconciliation=reconciliation,
        webhook_gateway=webhook_gateway,
        expiration_job=expiration_job,
        tasks=tasks,
        health=health,
    )


async def build_container(settings: Settings) -> ServiceContainer:
    """Build production collaborators (database, Redis, httpx clients) and wire them."""
    from .core.events import build_event_bus
    from .database.connection import close_db, get_engine, get_session_factory, init_db
    from .database.repositories import unit_of_work_factory
    from .integrations.carrier_client import HttpCarrierClient
    from .integrations.notification_client import HttpNotificationClient
    from .integrations.payment_gateway import HttpPaymentGatewayClient

    await init_db(get_engine(settings))
    session_factory = get_session_factory()

    events = await build_event_bus(settings)
    carrier = HttpCarrierClient.from_settings(settings)
    notifier = HttpNotificationClient.from_settings(settings)
    gateway_client = HttpPaymentGatewayClient.from_settings(settings)

    container = wire_services(
        settings,
        unit_of_work_factory(session_factory),
        events,
        carrier,
        notifier,
        gateway_client,
        health=HealthCheck(settings, session_factory),
    )
    container.closers.append(close_db)
    if hasattr(events, "close"):
        container.closers.append(events.close)
    container.closers.extend([carrier.close, notifier.close, gateway_client.close])

    logger.info(
        "services_built",
        event_bus=type(events).__name__,
        strict_webhooks=settings.is_production,
    )
    return container
