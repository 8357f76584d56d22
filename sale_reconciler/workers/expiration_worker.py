"""
Sale expiration background worker.

Runs the expiration job once a day at a wall-clock time in the business
timezone (default 02:00 America/Argentina/Buenos_Aires). Runs embedded in
the API process via ``ExpirationScheduler`` or standalone:

    python -m sale_reconciler.workers.expiration_worker --hour 2
"""
import asyncio
import signal
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from typing import Any, Optional, Tuple
from zoneinfo import ZoneInfo

import structlog

from ..core.domain import Initiator
from ..core.expiration import ExpirationJob

logger = structlog.get_logger(__name__)


def calculate_next_run_time(
    hour: int,
    minute: int = 0,
    timezone: str = "America/Argentina/Buenos_Aires",
    now: Optional[datetime] = None,
) -> Tuple[datetime, float]:
    """
    Calculate the next scheduled run.

    Args:
        hour: Hour of day in ``timezone`` (24-hour format)
        minute: Minute of the hour
        timezone: IANA timezone name
        now: Reference instant (aware); defaults to the current time

    Returns:
        Tuple[datetime, float]: Next run (aware, in ``timezone``) and seconds until it
    """
    tz = ZoneInfo(timezone)
    local_now = (now or datetime.now(tz)).astimezone(tz)
    next_run = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    # If we've passed today's run time, schedule for tomorrow
    if local_now >= next_run:
        next_run = (next_run + timedelta(days=1)).replace(hour=hour, minute=minute)

    # Same-tzinfo subtraction ignores offset changes, so subtract in UTC
    seconds_until = (
        next_run.astimezone(dt_timezone.utc) - local_now.astimezone(dt_timezone.utc)
    ).total_seconds()
    return next_run, seconds_until


class ExpirationScheduler:
    """Daily trigger for ``ExpirationJob``."""

    def __init__(
        self,
        job: ExpirationJob,
        hour: int = 2,
        minute: int = 0,
        timezone: str = "America/Argentina/Buenos_Aires",
        poll_seconds: float = 60.0,
    ):
        """
        Initialize scheduler.

        Args:
            job: Expiration job to run
            hour: Run hour in ``timezone``
            minute: Run minute
            timezone: IANA timezone of the schedule
            poll_seconds: Longest single sleep, bounds shutdown latency
        """
        self.job = job
        self.hour = hour
        self.minute = minute
        self.timezone = timezone
        self.poll_seconds = poll_seconds
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> None:
        """Run the job, logging instead of raising so the schedule survives."""
        try:
            report = await self.job.run(actor="scheduler", initiator=Initiator.SCHEDULER)
        except Exception as e:
            logger.error("expiration_execution_error", error=str(e), exc_info=True)
            return

        if report.count:
            logger.info("scheduled_expiration_expired_sales", count=report.count, ids=report.ids)

    async def run_forever(self) -> None:
        self.running = True
        logger.info(
            "expiration_scheduler_started",
            hour=self.hour,
            minute=self.minute,
            timezone=self.timezone,
        )
        try:
            while self.running:
                next_run, seconds_until = calculate_next_run_time(
                    self.hour, self.minute, self.timezone
                )
                logger.info(
                    "expiration_next_run_scheduled",
                    next_run=next_run.isoformat(),
                    seconds_until=seconds_until,
                )

                while seconds_until > 0 and self.running:
                    sleep_time = min(seconds_until, self.poll_seconds)
                    await asyncio.sleep(sleep_time)
                    seconds_until -= sleep_time

                if not self.running:
                    break

                await self.run_once()
        finally:
            logger.info("expiration_scheduler_stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="expiration-scheduler")
        return self._task

    async def stop(self) -> None:
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


async def start_expiration_worker(hour: Optional[int] = None) -> None:
    """
    Run the scheduler standalone until SIGINT/SIGTERM.

    Args:
        hour: Override of the configured run hour
    """
    from ..config import get_settings
    from ..container import build_container
    from ..monitoring.logging import setup_logging

    settings = get_settings()
    setup_logging(settings)
    container = await build_container(settings)

    scheduler = ExpirationScheduler(
        container.expiration_job,
        hour=settings.expiration_hour if hour is None else hour,
        minute=settings.expiration_minute,
        timezone=settings.expiration_timezone,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("expiration_worker_shutdown_signal_received", signal=sig)
        scheduler.running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await scheduler.run_forever()
    finally:
        await container.close()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Sale expiration worker")
    parser.add_argument("--hour", type=int, default=None, help="Hour of day to run (0-23)")
    args = parser.parse_args()

    asyncio.run(start_expiration_worker(hour=args.hour))


if __name__ == "__main__":
    main()
