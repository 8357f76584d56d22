"""
Tests for the expiration job and its daily scheduler.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from sale_reconciler.core.domain import ACTION_EXPIRATION_JOB, Initiator, SaleStatus
from sale_reconciler.core.events import SALE_EXPIRED
from sale_reconciler.core.expiration import ExpirationJob, ExpirationReport
from sale_reconciler.workers.expiration_worker import (
    ExpirationScheduler,
    calculate_next_run_time,
)

from .fakes import InMemoryUnitOfWork

BUENOS_AIRES = "America/Argentina/Buenos_Aires"


class TestExpirationJob:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_expires_audits_and_notifies(
        self, container, store, events, notifier, make_sale, days_ago
    ) -> None:
        make_sale(1, [(7, 1, 10)], created_at=days_ago(5))
        make_sale(2, [(7, 1, None)], created_at=days_ago(1))
        make_sale(3, [(7, 1, None)], created_at=days_ago(4), payment_method="mercadopago")

        report = await container.expiration_job.run(actor="cron", initiator=Initiator.ADMIN)
        await container.tasks.drain()

        assert report.count == 1
        assert report.ids == [1]
        assert report.duration_ms >= 0
        assert store.sales[1].status == SaleStatus.VENCIDO
        assert store.sales[2].status == SaleStatus.PENDIENTE
        assert store.sales[3].status == SaleStatus.PENDIENTE

        job_entry = store.audit[-1]
        assert job_entry.action == ACTION_EXPIRATION_JOB
        assert job_entry.after == {"count": 1, "ids": [1], "duration_ms": report.duration_ms}
        assert job_entry.initiator == Initiator.ADMIN

        assert events.topics() == [SALE_EXPIRED]
        assert [n["sale_id"] for n in notifier.expirations] == [1]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_run_still_audited(self, container, store, events) -> None:
        report = await container.expiration_job.run()

        assert report.to_dict() == {"count": 0, "ids": [], "duration_ms": report.duration_ms}
        assert store.audit_actions() == [ACTION_EXPIRATION_JOB]
        assert events.emitted == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_threshold_and_methods_are_configurable(
        self, container, store, make_sale, days_ago
    ) -> None:
        make_sale(102, [(7, 1, 10)], created_at=days_ago(10), payment_method="mercadopago")
        job = ExpirationJob(
            container.ledger,
            container.uow_factory,
            container.events,
            container.side_effects,
            threshold=timedelta(days=7),
            payment_methods=None,
        )

        report = await job.run()

        assert report.ids == [102]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_notice_failure_does_not_fail_job(
        self, container, store, notifier, make_sale, days_ago
    ) -> None:
        notifier.fail = True
        make_sale(1, [(7, 1, 10)], created_at=days_ago(5))

        report = await container.expiration_job.run()
        await container.tasks.drain()

        assert report.ids == [1]
        assert store.sales[1].status == SaleStatus.VENCIDO

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_audit_failure_still_announces_expirations(
        self, container, store, events, notifier, make_sale, days_ago
    ) -> None:
        make_sale(1, [(7, 1, 10)], created_at=days_ago(5))

        def uow_with_failing_job_audit() -> InMemoryUnitOfWork:
            uow = InMemoryUnitOfWork(store)
            append = uow.audit.append

            async def failing_append(entry) -> None:
                if entry.action == ACTION_EXPIRATION_JOB:
                    raise ConnectionError("audit table locked")
                await append(entry)

            uow.audit.append = failing_append
            return uow

        default_job = container.expiration_job
        job = ExpirationJob(
            container.ledger,
            uow_with_failing_job_audit,
            container.events,
            container.side_effects,
            threshold=default_job.threshold,
            payment_methods=default_job.payment_methods,
            tasks=container.tasks,
        )

        report = await job.run()
        await container.tasks.drain()

        assert report.ids == [1]
        assert store.sales[1].status == SaleStatus.VENCIDO
        assert ACTION_EXPIRATION_JOB not in store.audit_actions()
        assert events.topics() == [SALE_EXPIRED]
        assert [n["sale_id"] for n in notifier.expirations] == [1]


class TestNextRunTime:
    @pytest.mark.unit
    def test_later_today(self) -> None:
        now = datetime(2024, 3, 10, 1, 30, tzinfo=ZoneInfo(BUENOS_AIRES))

        next_run, seconds = calculate_next_run_time(2, 0, BUENOS_AIRES, now=now)

        assert next_run == datetime(2024, 3, 10, 2, 0, tzinfo=ZoneInfo(BUENOS_AIRES))
        assert seconds == 30 * 60

    @pytest.mark.unit
    def test_tomorrow_when_time_passed(self) -> None:
        now = datetime(2024, 3, 10, 2, 0, tzinfo=ZoneInfo(BUENOS_AIRES))

        next_run, seconds = calculate_next_run_time(2, 0, BUENOS_AIRES, now=now)

        assert next_run.date() == datetime(2024, 3, 11).date()
        assert seconds == 24 * 3600

    @pytest.mark.unit
    def test_reference_time_in_other_timezone(self) -> None:
        # 04:00 UTC is 01:00 in Buenos Aires (UTC-3)
        now = datetime(2024, 3, 10, 4, 0, tzinfo=timezone.utc)

        next_run, seconds = calculate_next_run_time(2, 0, BUENOS_AIRES, now=now)

        assert next_run.hour == 2
        assert seconds == 3600

    @pytest.mark.unit
    def test_daylight_saving_change(self) -> None:
        # Madrid springs forward on 2024-03-31: 02:00 local does not repeat normally
        now = datetime(2024, 3, 30, 12, 0, tzinfo=ZoneInfo("Europe/Madrid"))

        next_run, seconds = calculate_next_run_time(12, 0, "Europe/Madrid", now=now)

        assert next_run.day == 31
        assert seconds == 23 * 3600


class TestExpirationScheduler:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_once_swallows_job_errors(self) -> None:
        job = AsyncMock()
        job.run.side_effect = RuntimeError("db down")
        scheduler = ExpirationScheduler(job)

        await scheduler.run_once()

        job.run.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        job = AsyncMock()
        job.run.return_value = ExpirationReport(count=0)
        scheduler = ExpirationScheduler(job, poll_seconds=0.01)

        task = scheduler.start()
        await asyncio.sleep(0.05)
        assert not task.done()

        await scheduler.stop()
        assert task.done()
        assert scheduler.running is False

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "enabled, workers, debug, expected",
        [
            (True, 1, False, True),
            (True, 4, False, False),
            (True, 4, True, True),
            (False, 1, False, False),
        ],
    )
    def test_embedded_only_with_a_single_api_worker(
        self, test_settings, enabled, workers, debug, expected
    ) -> None:
        settings = test_settings.model_copy(
            update={
                "expiration_scheduler_enabled": enabled,
                "api_workers": workers,
                "debug": debug,
            }
        )

        assert settings.embedded_scheduler_active() is expected
