"""
Unit tests for dispatch/duplicate_guard.py and dispatch/retry.py

Tests cover:
- Cooldown boundaries (89 vs 91 days)
- Site and domain caps, including sends planned in the current batch
- Blacklist reasons
- Every applicable reason is reported
- Retry backoff schedule and exhaustion
"""

import unittest
from datetime import datetime, timedelta
import sys
import os

import mongomock
import pytz

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dispatch.blacklist import Blacklist
from dispatch.duplicate_guard import (
    BLACKLISTED, DOMAIN_COOLDOWN, DUPLICATE_SUPPRESSED, SITE_COOLDOWN, DuplicateGuard,
)
from dispatch.ledger import SendLedger, SendStatus
from dispatch.retry import RETRIES_EXHAUSTED, RETRY_BACKOFF, RetryPolicy

NOW = pytz.UTC.localize(datetime(2024, 3, 13, 15, 0))


def make_guard(db, **kwargs):
    params = dict(cooldown_days=90, site_suppression=True, site_max_sends=1,
                  domain_suppression=False, domain_max_sends=2)
    params.update(kwargs)
    return DuplicateGuard(SendLedger(db), blacklist=Blacklist(db), **params)


class TestCooldown(unittest.TestCase):

    def setUp(self):
        self.db = mongomock.MongoClient().db
        self.ledger = SendLedger(self.db)
        # site suppression off so only the per-recipient cooldown is in play
        self.guard = make_guard(self.db, site_suppression=False)
        self.recipient = {"_id": "r1", "email": "jane@acme.com", "site_id": "s1"}

    def test_never_contacted_is_eligible(self):
        result = self.guard.is_eligible(self.recipient, now=NOW)
        self.assertTrue(result.eligible)
        self.assertEqual(result.reasons, [])

    def test_contacted_89_days_ago_is_suppressed(self):
        self.ledger.record(self.recipient, SendStatus.SENT, now=NOW - timedelta(days=89))
        result = self.guard.is_eligible(self.recipient, now=NOW)
        self.assertFalse(result.eligible)
        self.assertEqual(result.reasons, [DUPLICATE_SUPPRESSED])
        self.assertIn("cooldown 90d", result.details[DUPLICATE_SUPPRESSED])

    def test_contacted_91_days_ago_is_eligible(self):
        self.ledger.record(self.recipient, SendStatus.SENT, now=NOW - timedelta(days=91))
        self.assertTrue(self.guard.is_eligible(self.recipient, now=NOW).eligible)

    def test_cooldown_override(self):
        self.ledger.record(self.recipient, SendStatus.SENT, now=NOW - timedelta(days=20))
        self.assertTrue(self.guard.is_eligible(self.recipient, cooldown_days=14, now=NOW).eligible)

    def test_failed_attempts_do_not_suppress(self):
        self.ledger.record(self.recipient, SendStatus.FAILED, now=NOW - timedelta(days=1))
        self.ledger.record(self.recipient, SendStatus.BOUNCED, now=NOW - timedelta(days=1))
        self.assertTrue(self.guard.is_eligible(self.recipient, now=NOW).eligible)

    def test_same_address_under_other_id_is_suppressed(self):
        self.ledger.record({"_id": "old", "email": "JANE@acme.com"}, SendStatus.DELIVERED,
                           now=NOW - timedelta(days=3))
        self.assertEqual(self.guard.is_eligible(self.recipient, now=NOW).reasons, [DUPLICATE_SUPPRESSED])


class TestSiteAndDomainCaps(unittest.TestCase):

    def setUp(self):
        self.db = mongomock.MongoClient().db
        self.ledger = SendLedger(self.db)
        self.r1 = {"_id": "r1", "email": "a@acme.com", "site_id": "s1"}
        self.r2 = {"_id": "r2", "email": "b@acme.com", "site_id": "s1"}

    def test_site_cap_reached(self):
        guard = make_guard(self.db)
        self.ledger.record(self.r1, SendStatus.SENT, now=NOW - timedelta(days=2))
        result = guard.is_eligible(self.r2, now=NOW)
        self.assertEqual(result.reasons, [SITE_COOLDOWN])
        self.assertEqual(result.details[SITE_COOLDOWN], "1/1 sends to this site")

    def test_planned_site_sends_count(self):
        guard = make_guard(self.db)
        self.assertTrue(guard.is_eligible(self.r2, now=NOW).eligible)
        self.assertEqual(guard.is_eligible(self.r2, now=NOW, planned_site_sends=1).reasons, [SITE_COOLDOWN])

    def test_site_suppression_disabled(self):
        guard = make_guard(self.db, site_suppression=False)
        self.ledger.record(self.r1, SendStatus.SENT, now=NOW)
        self.assertTrue(guard.is_eligible(self.r2, now=NOW).eligible)

    def test_domain_cap(self):
        guard = make_guard(self.db, site_suppression=False, domain_suppression=True, domain_max_sends=2)
        self.ledger.record(self.r1, SendStatus.SENT, now=NOW)
        self.assertTrue(guard.is_eligible(self.r2, now=NOW).eligible)
        self.assertEqual(
            guard.is_eligible(self.r2, now=NOW, planned_domain_sends=1).reasons, [DOMAIN_COOLDOWN]
        )

    def test_domain_cap_off_by_default_in_helper(self):
        guard = make_guard(self.db, site_suppression=False)
        for i in range(5):
            self.ledger.record({"_id": f"x{i}", "email": f"x{i}@acme.com"}, SendStatus.SENT, now=NOW)
        self.assertTrue(guard.is_eligible(self.r2, now=NOW).eligible)


class TestBlacklistAndReasons(unittest.TestCase):

    def setUp(self):
        self.db = mongomock.MongoClient().db
        self.guard = make_guard(self.db)
        self.blacklist = Blacklist(self.db)

    def test_blacklisted_address(self):
        self.blacklist.blacklist_email("no@acme.com", "asked to be removed")
        result = self.guard.is_eligible({"_id": "r1", "email": "no@acme.com", "site_id": "s1"}, now=NOW)
        self.assertEqual(result.reasons, [BLACKLISTED])
        self.assertIn("email address", result.details[BLACKLISTED])

    def test_blacklisted_site_domain(self):
        self.blacklist.blacklist_domain("acme.com", "competitor")
        result = self.guard.is_eligible({"_id": "r1", "email": "ceo@gmail.com", "site_id": "s1"},
                                        now=NOW, site_domain="acme.com")
        self.assertEqual(result.reasons, [BLACKLISTED])

    def test_all_reasons_reported(self):
        guard = make_guard(self.db, domain_suppression=True, domain_max_sends=1)
        ledger = SendLedger(self.db)
        recipient = {"_id": "r1", "email": "jane@acme.com", "site_id": "s1"}
        ledger.record(recipient, SendStatus.SENT, now=NOW - timedelta(days=1))
        self.blacklist.blacklist_email("jane@acme.com", "complaint")

        result = guard.is_eligible(recipient, now=NOW)
        self.assertFalse(result.eligible)
        self.assertEqual(result.reasons, [DUPLICATE_SUPPRESSED, SITE_COOLDOWN, DOMAIN_COOLDOWN, BLACKLISTED])
        self.assertEqual(set(result.details), set(result.reasons))


class TestRetryPolicy(unittest.TestCase):

    def setUp(self):
        self.db = mongomock.MongoClient().db
        self.ledger = SendLedger(self.db)
        self.policy = RetryPolicy(self.ledger, max_attempts=4, backoff_minutes=[1, 5, 15])
        self.recipient = {"_id": "r1", "email": "jane@acme.com"}

    def fail_at(self, when):
        self.ledger.record(self.recipient, SendStatus.FAILED, error="451 try later", now=when)

    def test_backoff_schedule_repeats_last_value(self):
        self.assertEqual(self.policy.backoff_after(0), timedelta(0))
        self.assertEqual(self.policy.backoff_after(1), timedelta(minutes=1))
        self.assertEqual(self.policy.backoff_after(2), timedelta(minutes=5))
        self.assertEqual(self.policy.backoff_after(3), timedelta(minutes=15))
        self.assertEqual(self.policy.backoff_after(7), timedelta(minutes=15))

    def test_no_failures(self):
        self.assertEqual(self.policy.check(self.recipient, NOW), (True, ""))
        self.assertEqual(self.policy.next_attempt(self.recipient), 1)

    def test_backoff_after_first_failure(self):
        self.fail_at(NOW)
        self.assertEqual(self.policy.check(self.recipient, NOW + timedelta(seconds=59)), (False, RETRY_BACKOFF))
        self.assertEqual(self.policy.check(self.recipient, NOW + timedelta(minutes=1)), (True, ""))
        self.assertEqual(self.policy.next_attempt(self.recipient), 2)

    def test_backoff_grows(self):
        self.fail_at(NOW - timedelta(minutes=10))
        self.fail_at(NOW)
        self.assertEqual(self.policy.check(self.recipient, NOW + timedelta(minutes=4)), (False, RETRY_BACKOFF))
        self.assertEqual(self.policy.check(self.recipient, NOW + timedelta(minutes=5)), (True, ""))

    def test_exhausted(self):
        for minutes in (60, 40, 20, 0):
            self.fail_at(NOW - timedelta(minutes=minutes))
        self.assertEqual(self.policy.check(self.recipient, NOW + timedelta(days=1)), (False, RETRIES_EXHAUSTED))

    def test_success_resets_count(self):
        self.fail_at(NOW - timedelta(minutes=30))
        self.ledger.record(self.recipient, SendStatus.SENT, now=NOW - timedelta(minutes=20))
        self.assertEqual(self.policy.check(self.recipient, NOW), (True, ""))
        self.assertEqual(self.policy.next_attempt(self.recipient), 1)

    def test_final_attempt(self):
        self.assertFalse(self.policy.is_final_attempt(3))
        self.assertTrue(self.policy.is_final_attempt(4))


if __name__ == "__main__":
    unittest.main()
