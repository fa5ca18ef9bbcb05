"""
EventSwap Platform - Background Sweeps
Recurring jobs that apply the wall-clock deadlines the request path only
checks lazily:

  - auto-release of TRANSFER_PENDING transactions whose window elapsed
  - expiry of overdue PENDING offers
  - cancellation of transactions whose payment deadline passed

Each sweep is idempotent per entity, so overlapping with user actions is
safe; max_instances=1 keeps a slow sweep from stacking up.
"""
import logging
from typing import Awaitable, Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from eventswap.config import Settings, get_settings
from eventswap.services.escrow import EscrowService
from eventswap.services.offers import OfferService

logger = logging.getLogger("eventswap.scheduler")


def _sweep(name: str, job: Callable[[], Awaitable[int]]) -> Callable[[], Awaitable[None]]:
    async def run() -> None:
        try:
            affected = await job()
        except Exception as exc:
            logger.error("❌ Sweep %s failed: %s", name, exc)
            return
        if affected:
            logger.info("🧹 Sweep %s touched %d record(s)", name, affected)

    run.__name__ = f"sweep_{name}"
    return run


class SweepScheduler:
    """Owns the AsyncIOScheduler; started and stopped by the app lifespan."""

    def __init__(
        self,
        escrow: EscrowService,
        offers: OfferService,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self._scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
            timezone="UTC",
        )
        self.jobs = {
            "auto_release": _sweep("auto_release", escrow.run_auto_release),
            "offer_expiry": _sweep("offer_expiry", offers.expire_stale_offers),
            "payment_deadline": _sweep("payment_deadline", escrow.expire_unpaid),
        }

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return

        interval = IntervalTrigger(minutes=self.settings.SWEEP_INTERVAL_MINUTES)
        for job_id, func in self.jobs.items():
            self._scheduler.add_job(
                func,
                trigger=interval,
                id=job_id,
                name=job_id,
                replace_existing=True,
            )
        self._scheduler.start()
        logger.info(
            "⏱️  Scheduler started: %d sweeps every %d min",
            len(self.jobs), self.settings.SWEEP_INTERVAL_MINUTES,
        )

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler shut down (wait=%s)", wait)

    async def run_all_once(self) -> None:
        """Run every sweep immediately (startup catch-up and tests)."""
        for func in self.jobs.values():
            await func()
