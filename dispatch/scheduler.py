"""
Async Scheduler — runs the dispatch system in a single AsyncIO event loop.

Scheduled tasks (times in TARGET_TIMEZONE):
  • dispatch tick         every DISPATCH_INTERVAL_MINUTES (first one at startup)
  • credential health     daily at HEALTH_SWEEP_HOUR
  • daily summary         daily when the sending window closes
  • review queue cleanup  weekly, Sunday 02:00
  • heartbeat             every 5 minutes

Ticks never overlap: a tick that finds the previous one still running is
skipped. Each tick is bounded by BATCH_TIMEOUT_SECONDS.

Graceful shutdown on SIGTERM / SIGINT.
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytz

import config
from config import ConfigurationError
from database import HEARTBEAT, get_db
from dispatch.alerts import (
    alert_configuration_error,
    alert_credentials_deactivated,
    alert_pool_exhausted,
    send_daily_summary,
)
from dispatch.blacklist import Blacklist
from dispatch.clock import Clock, as_utc, to_storage, utc_now
from dispatch.credential_pool import CredentialPool
from dispatch.duplicate_guard import DuplicateGuard
from dispatch.ledger import SendLedger
from dispatch.orchestrator import BatchSummary, DispatchOrchestrator, SkipReason
from dispatch.rate_limiter import SendingWindow
from dispatch.recipients import RecipientStore
from dispatch.renderer import TemplateRenderer
from dispatch.retry import RetryPolicy
from dispatch.review_queue import ReviewQueue
from dispatch.transport import SmtpTransport

logger = logging.getLogger("outreach.scheduler")

HEARTBEAT_INTERVAL = 300
CLEANUP_WEEKDAY = 6  # Sunday
CLEANUP_HOUR = 2


@dataclass
class Services:
    db: object
    pool: CredentialPool
    ledger: SendLedger
    blacklist: Blacklist
    recipients: RecipientStore
    review: ReviewQueue
    window: SendingWindow
    orchestrator: DispatchOrchestrator


def build_services(db=None, transport=None, renderer=None, clock: Clock = utc_now) -> Services:
    """Wire every component from config.py against one database handle."""
    db = db if db is not None else get_db()
    pool = CredentialPool(db)
    ledger = SendLedger(db)
    blacklist = Blacklist(db)
    recipients = RecipientStore(db)
    review = ReviewQueue(db)
    window = SendingWindow()
    orchestrator = DispatchOrchestrator(
        pool=pool,
        ledger=ledger,
        guard=DuplicateGuard(ledger, blacklist),
        retry=RetryPolicy(ledger),
        review=review,
        recipients=recipients,
        renderer=renderer or TemplateRenderer(db),
        transport=transport or SmtpTransport(),
        window=window,
        blacklist=blacklist,
        clock=clock,
    )
    return Services(db, pool, ledger, blacklist, recipients, review, window, orchestrator)


class AsyncScheduler:
    """
    Lifecycle:
        scheduler = AsyncScheduler(build_services())
        await scheduler.start()   # blocks until SIGTERM/SIGINT
    """

    def __init__(self, services: Services, clock: Clock = utc_now, loop_interval: float = 60):
        self.services = services
        self.clock = clock
        self.loop_interval = loop_interval
        self.tz = pytz.timezone(config.TARGET_TIMEZONE)
        self.dispatch_interval = timedelta(minutes=config.DISPATCH_INTERVAL_MINUTES)

        self._tick_lock = asyncio.Lock()
        self._last_dispatch_at: Optional[datetime] = None
        self._last_run: Dict[str, str] = {}
        self._pool_alerted_on: Optional[str] = None
        self.last_summary: Optional[BatchSummary] = None

        # Shutdown handling
        self._shutdown = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Set up signal handlers, start the loops, run until a shutdown signal."""
        logger.info("=" * 60)
        logger.info("Outreach Dispatch — Starting")
        logger.info("=" * 60)
        logger.info(f"Timezone: {config.TARGET_TIMEZONE}")
        logger.info(f"Sending window: {self.services.window}")
        logger.info(f"Dispatch every {config.DISPATCH_INTERVAL_MINUTES} min, batch ≤ {config.MAX_BATCH_SIZE}")
        logger.info(f"Concurrency: {config.SEND_CONCURRENCY} workers")
        logger.info(f"Cooldown: {config.COOLDOWN_DAYS} days")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

        for status in self.services.pool.get_all_status(self.clock()):
            logger.info(
                f"  {status['name']}: {status['sent_today']}/{status['daily_limit']} sent, "
                f"{'ACTIVE' if status['active'] else 'INACTIVE'}"
            )

        self._tasks = [
            asyncio.create_task(self._scheduler_loop(), name="scheduler_loop"),
            asyncio.create_task(self._heartbeat_loop(), name="heartbeat"),
        ]
        logger.info(f"Workers launched: {[t.get_name() for t in self._tasks]}")

        await self._shutdown.wait()
        await self._graceful_shutdown()

    # ── scheduled work ───────────────────────────────────────────────

    async def run_dispatch(self) -> Optional[BatchSummary]:
        """One dispatch tick. Returns None when skipped (overlap, config error, timeout)."""
        if self._tick_lock.locked():
            logger.warning("tick_skipped: previous tick still running")
            return None

        async with self._tick_lock:
            try:
                summary = await asyncio.wait_for(
                    self.services.orchestrator.run_tick(self.clock()),
                    # the orchestrator bounds its own send phase; this is the backstop
                    timeout=config.BATCH_TIMEOUT_SECONDS + config.SEND_TIMEOUT_SECONDS,
                )
            except ConfigurationError as e:
                logger.error(f"tick_configuration_error: {e}")
                await alert_configuration_error(e)
                return None
            except asyncio.TimeoutError:
                logger.error("tick_timeout: dispatch tick exceeded its time budget")
                return None

        self.last_summary = summary
        if summary.aborted == SkipReason.NO_CREDENTIAL.value:
            await self._alert_pool_exhausted()
        return summary

    async def _alert_pool_exhausted(self):
        # once per local day
        today = as_utc(self.clock()).astimezone(self.tz).strftime("%Y-%m-%d")
        if self._pool_alerted_on == today:
            return
        self._pool_alerted_on = today
        await alert_pool_exhausted(self.services.pool.active_count())

    async def run_health_sweep(self) -> List[Dict]:
        deactivated = await asyncio.to_thread(self.services.pool.sweep_health, self.clock())
        if deactivated:
            await alert_credentials_deactivated(deactivated)
        return deactivated

    async def run_daily_summary(self):
        s = self.services
        return await send_daily_summary(s.ledger, s.pool, s.review, self.clock())

    async def run_review_cleanup(self) -> int:
        return await asyncio.to_thread(
            self.services.review.cleanup_old_entries, config.REVIEW_RETENTION_DAYS, self.clock()
        )

    def due_tasks(self, now: datetime) -> List[str]:
        """
        Names of the tasks that should start at `now`; marks them as run.
        Daily/weekly tasks fire once per local date.
        """
        local = as_utc(now).astimezone(self.tz)
        today = local.strftime("%Y-%m-%d")
        due = []

        if self._last_dispatch_at is None or now - self._last_dispatch_at >= self.dispatch_interval:
            self._last_dispatch_at = now
            due.append("dispatch")

        daily = [
            ("health_sweep", local.hour == config.HEALTH_SWEEP_HOUR),
            ("daily_summary", local.hour == config.SENDING_HOUR_END),
            ("review_cleanup", local.weekday() == CLEANUP_WEEKDAY and local.hour == CLEANUP_HOUR),
        ]
        for name, is_time in daily:
            key = f"{name}_{today}"
            if is_time and key not in self._last_run:
                self._last_run[key] = today
                due.append(name)

        # keep only today's run tracking
        self._last_run = {k: v for k, v in self._last_run.items() if v == today}
        return due

    async def _scheduler_loop(self):
        """Checks every `loop_interval` seconds what needs to run."""
        logger.info("Scheduler loop started")
        runners = {
            "dispatch": self.run_dispatch,
            "health_sweep": self.run_health_sweep,
            "daily_summary": self.run_daily_summary,
            "review_cleanup": self.run_review_cleanup,
        }

        while not self._shutdown.is_set():
            try:
                for name in self.due_tasks(self.clock()):
                    asyncio.create_task(self._guarded(name, runners[name]()), name=name)
            except Exception as e:
                logger.error(f"Scheduler loop error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.loop_interval)
                break
            except asyncio.TimeoutError:
                continue

        logger.info("Scheduler loop stopped")

    @staticmethod
    async def _guarded(name: str, coro):
        try:
            return await coro
        except Exception as e:
            logger.error(f"Scheduled task {name} failed: {e}", exc_info=True)

    async def _heartbeat_loop(self):
        """Write a heartbeat document every 5 minutes for health monitoring."""
        heartbeat = self.services.db[HEARTBEAT]

        while not self._shutdown.is_set():
            try:
                summary = self.last_summary.as_dict() if self.last_summary else None
                heartbeat.update_one(
                    {"_id": "dispatch_scheduler"},
                    {"$set": {
                        "last_heartbeat": to_storage(self.clock()),
                        "pid": os.getpid(),
                        "status": "running",
                        "last_summary": summary,
                    }},
                    upsert=True,
                )
            except Exception as e:
                logger.error(f"Heartbeat write failed: {e}")

            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=HEARTBEAT_INTERVAL)
                break
            except asyncio.TimeoutError:
                continue

    def _handle_signal(self, sig):
        logger.info(f"Received signal {sig.name} — initiating graceful shutdown")
        self._shutdown.set()

    def request_shutdown(self):
        self._shutdown.set()

    async def _graceful_shutdown(self):
        """
        1. Let the loops notice the shutdown flag
        2. Give an in-flight tick up to 15s to finish
        3. Write a final heartbeat
        """
        logger.info("── Graceful Shutdown ──")

        pending_tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        if self._tasks:
            done, pending = await asyncio.wait(
                self._tasks + [t for t in pending_tasks if t.get_name() == "dispatch"],
                timeout=15,
                return_when=asyncio.ALL_COMPLETED,
            )
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        try:
            self.services.db[HEARTBEAT].update_one(
                {"_id": "dispatch_scheduler"},
                {"$set": {"status": "stopped", "stopped_at": to_storage(self.clock())}},
            )
        except Exception as e:
            logger.error(f"Final heartbeat write failed: {e}")

        logger.info("Shutdown complete")
