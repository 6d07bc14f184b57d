"""
Retry policy for transient send failures.

The ledger is the only state: a recipient's retry position is the number of
consecutive `failed` records since its last non-failed one. After the n-th
failure the next attempt waits RETRY_BACKOFF_MINUTES[n-1] (the last value
repeats). Once MAX_SEND_ATTEMPTS attempts have failed the recipient is no
longer retried automatically.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Tuple

import config
from dispatch.clock import as_utc, utc_now
from dispatch.ledger import SendLedger

logger = logging.getLogger("outreach.retry")

RETRY_BACKOFF = "retry-backoff"
RETRIES_EXHAUSTED = "retries-exhausted"


class RetryPolicy:

    def __init__(self, ledger: SendLedger, max_attempts: int = None, backoff_minutes: List[int] = None):
        self.ledger = ledger
        self.max_attempts = config.MAX_SEND_ATTEMPTS if max_attempts is None else max_attempts
        self.backoff_minutes = list(backoff_minutes or config.RETRY_BACKOFF_MINUTES)

    def backoff_after(self, failures: int) -> timedelta:
        if failures <= 0:
            return timedelta(0)
        index = min(failures, len(self.backoff_minutes)) - 1
        return timedelta(minutes=self.backoff_minutes[index])

    def check(self, recipient: Dict, now: datetime = None) -> Tuple[bool, str]:
        """
        (True, "") when the recipient may be attempted now, otherwise
        (False, RETRY_BACKOFF | RETRIES_EXHAUSTED).
        """
        now = now or utc_now()
        history = self.ledger.failure_history(recipient["_id"])
        failures = history["consecutive_failures"]
        if failures == 0:
            return True, ""

        if failures >= self.max_attempts:
            logger.warning(
                f"retries_exhausted: {recipient.get('email')} failed {failures} times, not retrying"
            )
            return False, RETRIES_EXHAUSTED

        retry_at = as_utc(history["last_failed_at"]) + self.backoff_after(failures)
        if as_utc(now) < retry_at:
            logger.debug(
                f"retry_backoff: {recipient.get('email')} until {retry_at:%H:%M:%S}",
                extra={"failures": failures},
            )
            return False, RETRY_BACKOFF
        return True, ""

    def next_attempt(self, recipient: Dict) -> int:
        """1-based number of the attempt about to be made."""
        return self.ledger.failure_history(recipient["_id"])["consecutive_failures"] + 1

    def is_final_attempt(self, attempt: int) -> bool:
        return attempt >= self.max_attempts
