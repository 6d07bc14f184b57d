"""
Dispatch Orchestrator — one scheduler tick turns eligible recipients into sends.

    summary = await orchestrator.run_tick()

Tick outline:
  1. no active credential at all      → ConfigurationError (nothing touched)
  2. sending window closed            → aborted "window-closed"
  3. capacity = min(remaining quota, MAX_BATCH_SIZE); 0 → aborted
     "no-credential-available"
  4. plan: approved review items first, then new candidates; each one goes
     through the Duplicate Guard and the Retry Policy. Candidates on sites
     that require review get a pending review item instead of a send.
  5. SEND_CONCURRENCY workers drain an asyncio.Queue of SendJobs. A worker
     acquires a credential only when it is about to send, so the quota is
     reserved atomically in the database and never over-spent.

Expected conditions (window closed, pool exhausted, suppression) are skip
reasons in the BatchSummary, never exceptions. A failure on one job is
written to the ledger and never aborts the batch.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

import config
from config import ConfigurationError
from dispatch.blacklist import Blacklist
from dispatch.clock import Clock, utc_now
from dispatch.credential_pool import CredentialPool
from dispatch.duplicate_guard import DuplicateGuard
from dispatch.ledger import SendLedger, SendStatus, email_domain
from dispatch.rate_limiter import SendingWindow
from dispatch.recipients import RecipientStore
from dispatch.renderer import RenderError
from dispatch.retry import RetryPolicy
from dispatch.review_queue import ReviewQueue, ReviewStatus

logger = logging.getLogger("outreach.orchestrator")


class SkipReason(Enum):
    WINDOW_CLOSED = "window-closed"
    NO_CREDENTIAL = "no-credential-available"
    DUPLICATE_SUPPRESSED = "duplicate-suppressed"
    SITE_COOLDOWN = "site-cooldown"
    DOMAIN_COOLDOWN = "domain-cooldown"
    BLACKLISTED = "blacklisted"
    REVIEW_PENDING = "review-pending"
    REVIEW_REJECTED = "review-rejected"
    RETRY_BACKOFF = "retry-backoff"
    RETRIES_EXHAUSTED = "retries-exhausted"


@dataclass
class BatchSummary:
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    capacity: int = 0
    enqueued: int = 0
    sent: int = 0
    failed: int = 0
    bounced: int = 0
    review_queued: int = 0
    retries_exhausted: int = 0
    skipped: Dict[str, int] = field(default_factory=dict)
    aborted: Optional[str] = None
    timed_out: bool = False

    def skip(self, reason: SkipReason, count: int = 1):
        if count > 0:
            self.skipped[reason.value] = self.skipped.get(reason.value, 0) + count

    def as_dict(self) -> Dict:
        return asdict(self)


@dataclass
class SendJob:
    recipient: Dict
    attempt: int = 1
    template_id: Optional[str] = None
    review_item: Optional[Dict] = None
    outcome_recorded: bool = False

    @property
    def email(self) -> str:
        return self.recipient.get("email", "")


class SendPacer:
    """Spaces consecutive sends of one batch, shared by all workers."""

    def __init__(self, clock: Clock, sleep: Callable[[float], Awaitable]):
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_at: Optional[datetime] = None

    async def wait_turn(self, delay: timedelta):
        async with self._lock:
            now = self._clock()
            if self._next_at is not None and now < self._next_at:
                await self._sleep((self._next_at - now).total_seconds())
                now = max(self._clock(), self._next_at)
            self._next_at = now + delay


class DispatchOrchestrator:

    def __init__(
        self,
        pool: CredentialPool,
        ledger: SendLedger,
        guard: DuplicateGuard,
        retry: RetryPolicy,
        review: ReviewQueue,
        recipients: RecipientStore,
        renderer,
        transport,
        window: SendingWindow,
        blacklist: Blacklist = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        max_batch_size: int = None,
        concurrency: int = None,
        send_timeout: float = None,
        batch_timeout: float = None,
        template_id: str = None,
        auto_blacklist: bool = None,
    ):
        self.pool = pool
        self.ledger = ledger
        self.guard = guard
        self.retry = retry
        self.review = review
        self.recipients = recipients
        self.renderer = renderer
        self.transport = transport
        self.window = window
        self.blacklist = blacklist
        self.clock = clock
        self.sleep = sleep
        self.max_batch_size = max_batch_size or config.MAX_BATCH_SIZE
        self.concurrency = concurrency or config.SEND_CONCURRENCY
        self.send_timeout = send_timeout or config.SEND_TIMEOUT_SECONDS
        self.batch_timeout = batch_timeout or config.BATCH_TIMEOUT_SECONDS
        self.template_id = template_id or config.DEFAULT_TEMPLATE_ID
        self.auto_blacklist = config.AUTO_BLACKLIST_BOUNCES if auto_blacklist is None else auto_blacklist

    # ── tick ─────────────────────────────────────────────────────────

    async def run_tick(self, now: datetime = None) -> BatchSummary:
        now = now or self.clock()
        summary = BatchSummary(started_at=now)

        if self.pool.active_count() == 0:
            raise ConfigurationError("no active sending credentials configured")

        is_open, reason = self.window.status(now)
        if not is_open:
            summary.aborted = SkipReason.WINDOW_CLOSED.value
            summary.finished_at = now
            next_open = self.window.next_eligible_instant(now)
            logger.info(f"tick_skipped: {reason}, next window opens {next_open:%Y-%m-%d %H:%M %Z}")
            return summary

        capacity = min(self.pool.remaining_capacity(now), self.max_batch_size)
        summary.capacity = max(capacity, 0)
        if capacity <= 0:
            waiting = len(self.review.get_dispatchable(self.max_batch_size)) + self.recipients.count_candidates()
            summary.aborted = SkipReason.NO_CREDENTIAL.value
            summary.skip(SkipReason.NO_CREDENTIAL, min(waiting, self.max_batch_size))
            summary.finished_at = now
            logger.warning(f"tick_skipped: all credentials at daily limit, {waiting} recipients waiting")
            return summary

        jobs = self.plan_batch(capacity, now, summary)
        logger.info(
            f"batch_planned: {len(jobs)} jobs, capacity={capacity}",
            extra={"review_queued": summary.review_queued, "skipped": dict(summary.skipped)},
        )
        if jobs:
            await self._run_workers(jobs, summary)

        summary.finished_at = self.clock()
        logger.info(
            f"tick_complete: sent={summary.sent} failed={summary.failed} bounced={summary.bounced}",
            extra={"summary": summary.as_dict()},
        )
        return summary

    # ── planning ─────────────────────────────────────────────────────

    def plan_batch(self, capacity: int, now: datetime, summary: BatchSummary) -> List[SendJob]:
        """Vet approved review items, then fresh candidates, until `capacity` jobs exist."""
        jobs: List[SendJob] = []
        planned_sites: Counter = Counter()
        planned_domains: Counter = Counter()
        seen = set()

        approved = self.review.get_dispatchable(self.max_batch_size)
        seen.update(item["recipient_id"] for item in approved)
        for item in approved:
            if len(jobs) >= capacity:
                break
            recipient = self.recipients.get(item["recipient_id"])
            if recipient is None:
                continue
            job = self._vet(recipient, now, summary, planned_sites, planned_domains)
            if job:
                job.review_item = item
                job.template_id = item.get("template_id")
                self._count_planned(recipient, planned_sites, planned_domains)
                jobs.append(job)

        if len(jobs) >= capacity:
            return jobs

        review_sites = self.recipients.review_required_site_ids()
        candidates = self.recipients.select_candidates(capacity - len(jobs), exclude_ids=seen)
        for recipient in candidates:
            job = self._vet(recipient, now, summary, planned_sites, planned_domains)
            if job is None:
                continue
            if recipient.get("site_id") in review_sites:
                self._hold_for_review(recipient, now, summary)
                continue
            self._count_planned(recipient, planned_sites, planned_domains)
            jobs.append(job)
        return jobs

    def _vet(self, recipient: Dict, now: datetime, summary: BatchSummary,
             planned_sites: Counter, planned_domains: Counter) -> Optional[SendJob]:
        """Guard + retry checks. Returns a job, or None after counting the skip reasons."""
        site_id = recipient.get("site_id")
        domain = email_domain(recipient.get("email") or "")
        site = self.recipients.get_site(site_id) if site_id is not None else None

        result = self.guard.is_eligible(
            recipient,
            now=now,
            site_domain=(site or {}).get("domain"),
            planned_site_sends=planned_sites[site_id],
            planned_domain_sends=planned_domains[domain],
        )
        reasons = [SkipReason(r) for r in result.reasons]

        allowed, retry_reason = self.retry.check(recipient, now)
        if not allowed:
            reasons.append(SkipReason(retry_reason))

        if reasons:
            for r in reasons:
                summary.skip(r)
            logger.info(
                f"recipient_skipped: {recipient.get('email')} ({', '.join(r.value for r in reasons)})",
                extra={"details": result.details},
            )
            return None

        return SendJob(
            recipient=recipient,
            attempt=self.retry.next_attempt(recipient),
            template_id=self.template_id,
        )

    @staticmethod
    def _count_planned(recipient: Dict, planned_sites: Counter, planned_domains: Counter):
        planned_sites[recipient.get("site_id")] += 1
        planned_domains[email_domain(recipient.get("email") or "")] += 1

    def _hold_for_review(self, recipient: Dict, now: datetime, summary: BatchSummary):
        entry = self.review.find_entry(recipient["_id"], self.template_id)
        if entry and entry["status"] == ReviewStatus.REJECTED.value:
            summary.skip(SkipReason.REVIEW_REJECTED)
            return
        if entry and (
            entry["status"] == ReviewStatus.PENDING.value
            or (entry["status"] == ReviewStatus.APPROVED.value and entry.get("dispatched_at") is None)
        ):
            summary.skip(SkipReason.REVIEW_PENDING)
            return

        try:
            content = self.renderer.render(recipient, self.template_id)
        except RenderError as e:
            self.ledger.record(
                recipient, SendStatus.FAILED, template_id=self.template_id,
                error=f"render failed: {e}", attempt=self.retry.next_attempt(recipient), now=now,
            )
            summary.failed += 1
            return

        self.review.create_entry(
            recipient,
            self.template_id,
            content["subject"],
            content["body"],
            priority=recipient.get("priority", 50),
            now=now,
        )
        summary.review_queued += 1

    # ── sending ──────────────────────────────────────────────────────

    async def _run_workers(self, jobs: List[SendJob], summary: BatchSummary):
        queue: asyncio.Queue = asyncio.Queue()
        for job in jobs:
            queue.put_nowait(job)
        summary.enqueued = len(jobs)

        pacer = SendPacer(self.clock, self.sleep)
        stop = asyncio.Event()
        workers = [
            asyncio.create_task(self._worker(n, queue, pacer, stop, summary))
            for n in range(min(self.concurrency, len(jobs)))
        ]
        try:
            await asyncio.wait_for(asyncio.gather(*workers), timeout=self.batch_timeout)
        except asyncio.TimeoutError:
            summary.timed_out = True
            logger.error(
                f"batch_timeout: {self.batch_timeout}s elapsed, {queue.qsize()} jobs not started"
            )
            return

        # the pool ran dry mid-batch: everything still queued waits for the next tick
        leftover = queue.qsize()
        if leftover:
            reason = SkipReason.WINDOW_CLOSED if not self.window.is_within_window(self.clock()) \
                else SkipReason.NO_CREDENTIAL
            summary.skip(reason, leftover)

    async def _worker(self, n: int, queue: asyncio.Queue, pacer: SendPacer,
                      stop: asyncio.Event, summary: BatchSummary):
        while not stop.is_set():
            try:
                job = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._process_job(job, queue, pacer, stop, summary)
            except Exception as e:
                logger.error(f"worker_{n}_job_error: {job.email}: {e}", exc_info=True)
                if job.outcome_recorded:
                    continue
                self.ledger.record(
                    job.recipient, SendStatus.FAILED, template_id=job.template_id,
                    error=f"unexpected error: {e}", attempt=job.attempt,
                    retries_exhausted=self.retry.is_final_attempt(job.attempt), now=self.clock(),
                )
                summary.failed += 1
            finally:
                queue.task_done()

    async def _process_job(self, job: SendJob, queue: asyncio.Queue, pacer: SendPacer,
                           stop: asyncio.Event, summary: BatchSummary):
        delay = self.window.suggested_inter_send_delay(queue.qsize() + 1, self.clock())
        await pacer.wait_turn(delay)

        now = self.clock()
        if not self.window.is_within_window(now):
            summary.skip(SkipReason.WINDOW_CLOSED)
            stop.set()
            return

        credential = self.pool.acquire_credential(now)
        if credential is None:
            summary.skip(SkipReason.NO_CREDENTIAL)
            stop.set()
            return

        try:
            content = self._content_for(job)
        except RenderError as e:
            self.pool.release_credential(credential)
            self._record_failed(job, None, None, f"render failed: {e}", summary)
            return
        except BaseException:
            # nothing was sent with this credential
            self.pool.release_credential(credential)
            raise

        try:
            result = await asyncio.wait_for(
                self.transport.send(
                    credential,
                    job.email,
                    to_name=job.recipient.get("name"),
                    subject=content["subject"],
                    body=content["body"],
                ),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            result = {
                "success": False,
                "error": f"send timed out after {self.send_timeout}s",
                "error_code": None,
                "permanent": False,
            }
        except BaseException:
            # cancelled (batch timeout) or transport bug: the slot was never used
            self.pool.release_credential(credential)
            raise

        self._record_outcome(job, credential, content["subject"], result, summary)

    def _content_for(self, job: SendJob) -> Dict[str, str]:
        if job.review_item is not None:
            return {"subject": job.review_item["subject"], "body": job.review_item["body"]}
        return self.renderer.render(job.recipient, job.template_id)

    def _record_outcome(self, job: SendJob, credential: Dict, subject: str, result: Dict,
                        summary: BatchSummary):
        now = self.clock()
        recipient = job.recipient
        review_item_id = job.review_item["_id"] if job.review_item else None

        if result.get("success"):
            record_id = self.ledger.record(
                recipient, SendStatus.SENT, credential=credential, template_id=job.template_id,
                subject=subject, review_item_id=review_item_id, attempt=job.attempt, now=now,
            )
            job.outcome_recorded = True
            summary.sent += 1
            self.pool.record_success(credential, now)
            self.recipients.mark_contacted(recipient["_id"], now)
            if review_item_id is not None:
                self.review.mark_dispatched(review_item_id, record_id, now)
            return

        error = result.get("error") or "unknown error"
        if result.get("permanent"):
            self.ledger.record(
                recipient, SendStatus.BOUNCED, credential=credential, template_id=job.template_id,
                subject=subject, error=error, review_item_id=review_item_id, attempt=job.attempt, now=now,
            )
            job.outcome_recorded = True
            summary.bounced += 1
            self.pool.record_failure(credential, now)
            self.recipients.mark_bounced(recipient["_id"], error, now)
            if self.auto_blacklist and self.blacklist is not None:
                self.blacklist.blacklist_bounce(job.email)
            return

        self._record_failed(job, credential, subject, error, summary)
        self.pool.record_failure(credential, now)

    def _record_failed(self, job: SendJob, credential: Optional[Dict], subject: Optional[str],
                       error: str, summary: BatchSummary):
        final = self.retry.is_final_attempt(job.attempt)
        self.ledger.record(
            job.recipient, SendStatus.FAILED, credential=credential, template_id=job.template_id,
            subject=subject, error=error,
            review_item_id=job.review_item["_id"] if job.review_item else None,
            attempt=job.attempt, retries_exhausted=final, now=self.clock(),
        )
        job.outcome_recorded = True
        summary.failed += 1
        if final:
            summary.retries_exhausted += 1
            logger.warning(
                f"retries_exhausted: {job.email} failed {job.attempt} attempts, giving up ({error[:120]})"
            )
