"""
Unit tests for dispatch/review_queue.py and dispatch/renderer.py
"""

import unittest
from datetime import datetime, timedelta
import sys
import os

import mongomock
import pytz
from bson import ObjectId

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dispatch.recipients import RecipientStore
from dispatch.renderer import RenderError, TemplateRenderer
from dispatch.review_queue import InvalidReviewTransition, ReviewQueue, ReviewStatus

NOW = pytz.UTC.localize(datetime(2024, 3, 13, 15, 0))


class ReviewTestCase(unittest.TestCase):

    def setUp(self):
        self.db = mongomock.MongoClient().db
        self.queue = ReviewQueue(self.db)
        self.store = RecipientStore(self.db)
        site = self.store.upsert_site("acme.com", qualifies=True, review_required=True)
        self.recipient = self.store.get(self.store.upsert_recipient("jane@acme.com", site, name="Jane Doe"))

    def create(self, recipient=None, priority=50, now=NOW):
        return self.queue.create_entry(recipient or self.recipient, "default", "Hi Jane", "Hello there",
                                       priority=priority, now=now)


class TestCreateEntry(ReviewTestCase):

    def test_create_pending(self):
        item = self.create()
        self.assertEqual(item["status"], "pending")
        self.assertEqual(item["recipient_id"], self.recipient["_id"])
        self.assertIsNone(item["dispatched_at"])

    def test_create_is_idempotent_while_pending(self):
        first = self.create()
        second = self.create()
        self.assertEqual(first["_id"], second["_id"])
        self.assertEqual(self.queue.get_statistics()["total_entries"], 1)

    def test_priority_clamped(self):
        self.assertEqual(self.create(priority=150)["priority"], 100)


class TestTransitions(ReviewTestCase):

    def test_approve(self):
        item = self.create()
        approved = self.queue.approve(item["_id"], "alice", notes="fine", now=NOW)
        self.assertEqual(approved["status"], ReviewStatus.APPROVED.value)
        self.assertEqual(approved["reviewer_id"], "alice")
        self.assertEqual(approved["notes"], "fine")
        self.assertEqual(approved["reviewed_at"], NOW.replace(tzinfo=None))

    def test_approve_with_modifications(self):
        item = self.create()
        approved = self.queue.approve(item["_id"], "alice", modifications={"subject": "Better subject"})
        self.assertEqual(approved["subject"], "Better subject")
        self.assertEqual(approved["body"], "Hello there")

    def test_reject_is_terminal(self):
        item = self.create()
        self.queue.reject(item["_id"], "bob", notes="off-topic")
        with self.assertRaises(InvalidReviewTransition) as ctx:
            self.queue.approve(item["_id"], "alice")
        self.assertEqual(ctx.exception.current_status, "rejected")
        self.assertEqual(self.queue.get(item["_id"])["status"], "rejected")

    def test_approve_twice_fails(self):
        item = self.create()
        self.queue.approve(item["_id"], "alice")
        with self.assertRaises(InvalidReviewTransition):
            self.queue.approve(item["_id"], "bob")

    def test_unknown_item(self):
        with self.assertRaises(InvalidReviewTransition) as ctx:
            self.queue.reject(ObjectId(), "bob")
        self.assertIn("not found", str(ctx.exception))

    def test_new_entry_after_decision(self):
        item = self.create()
        self.queue.reject(item["_id"], "bob")
        self.assertNotEqual(self.create()["_id"], item["_id"])

    def test_bulk_approve_reports_failures(self):
        a = self.create()
        other = self.store.get(self.store.upsert_recipient("bob@acme.com", self.recipient["site_id"]))
        b = self.create(other)
        self.queue.reject(b["_id"], "bob")

        result = self.queue.bulk_approve([a["_id"], b["_id"]], "alice")
        self.assertEqual(result["approved"], 1)
        self.assertEqual(result["failed"], 1)
        self.assertTrue(result["errors"][0].startswith(f"Entry {b['_id']}:"))

    def test_bulk_reject(self):
        item = self.create()
        self.assertEqual(self.queue.bulk_reject([item["_id"]], "bob")["rejected"], 1)


class TestDispatchSide(ReviewTestCase):

    def test_dispatchable_only_approved_and_undispatched(self):
        item = self.create()
        self.assertEqual(self.queue.get_dispatchable(10), [])
        self.queue.approve(item["_id"], "alice")
        self.assertEqual([i["_id"] for i in self.queue.get_dispatchable(10)], [item["_id"]])

        self.assertTrue(self.queue.mark_dispatched(item["_id"], "record-1", NOW))
        self.assertFalse(self.queue.mark_dispatched(item["_id"], "record-2", NOW))
        self.assertEqual(self.queue.get_dispatchable(10), [])
        self.assertEqual(self.queue.get(item["_id"])["send_record_id"], "record-1")

    def test_dispatchable_skips_contacted_recipients(self):
        item = self.create()
        self.queue.approve(item["_id"], "alice")
        self.store.mark_contacted(self.recipient["_id"], NOW)
        self.assertEqual(self.queue.get_dispatchable(10), [])

    def test_dispatchable_order_and_limit(self):
        site = self.recipient["site_id"]
        low = self.create(priority=10)
        high = self.create(self.store.get(self.store.upsert_recipient("b@acme.com", site)), priority=90)
        for item in (low, high):
            self.queue.approve(item["_id"], "alice")
        self.assertEqual([i["_id"] for i in self.queue.get_dispatchable(10)], [high["_id"], low["_id"]])
        self.assertEqual(len(self.queue.get_dispatchable(1)), 1)
        self.assertEqual(self.queue.get_dispatchable(0), [])

    def test_find_entry(self):
        item = self.create()
        self.assertEqual(self.queue.find_entry(self.recipient["_id"])["_id"], item["_id"])
        self.assertIsNone(self.queue.find_entry(self.recipient["_id"], status=ReviewStatus.APPROVED))


class TestAdmin(ReviewTestCase):

    def test_statistics(self):
        item = self.create(priority=80, now=NOW - timedelta(hours=2))
        stats = self.queue.get_statistics()
        self.assertEqual(stats["pending"], 1)
        self.assertEqual(stats["high_priority"], 1)
        self.assertEqual(stats["oldest_pending"], (NOW - timedelta(hours=2)).replace(tzinfo=None))

        self.queue.approve(item["_id"], "alice")
        stats = self.queue.get_statistics()
        self.assertEqual(stats["approved"], 1)
        self.assertEqual(stats["awaiting_dispatch"], 1)
        self.assertIsNone(stats["oldest_pending"])

    def test_update_priority(self):
        item = self.create()
        self.assertTrue(self.queue.update_priority(item["_id"], -5))
        self.assertEqual(self.queue.get(item["_id"])["priority"], 0)

    def test_cleanup_keeps_pending_and_recent(self):
        site = self.recipient["site_id"]
        old_pending = self.create(now=NOW - timedelta(days=200))
        old_rejected = self.create(self.store.get(self.store.upsert_recipient("b@acme.com", site)),
                                   now=NOW - timedelta(days=200))
        self.queue.reject(old_rejected["_id"], "bob")
        recent_rejected = self.create(self.store.get(self.store.upsert_recipient("c@acme.com", site)),
                                      now=NOW - timedelta(days=5))
        self.queue.reject(recent_rejected["_id"], "bob")

        self.assertEqual(self.queue.cleanup_old_entries(90, now=NOW), 1)
        self.assertIsNone(self.queue.get(old_rejected["_id"]))
        self.assertIsNotNone(self.queue.get(old_pending["_id"]))
        self.assertIsNotNone(self.queue.get(recent_rejected["_id"]))


class TestTemplateRenderer(unittest.TestCase):

    def setUp(self):
        self.db = mongomock.MongoClient().db
        self.renderer = TemplateRenderer(self.db)
        store = RecipientStore(self.db)
        site = store.upsert_site("acme.com", qualifies=True)
        self.recipient = store.get(store.upsert_recipient("jane@acme.com", site, name="Jane Doe"))
        self.db.templates.insert_one({
            "_id": "default",
            "subject": "Quick question, {{first_name}}",
            "body": "Hi {{ name }},\n\nI was looking at {{site_domain}}.",
        })

    def test_render(self):
        message = self.renderer.render(self.recipient, "default")
        self.assertEqual(message["subject"], "Quick question, Jane")
        self.assertEqual(message["body"], "Hi Jane Doe,\n\nI was looking at acme.com.")

    def test_missing_name_falls_back(self):
        variables = self.renderer.variables_for({"_id": "x", "email": "a@b.com"})
        self.assertEqual(variables["first_name"], "there")
        self.assertEqual(variables["email_domain"], "b.com")
        self.assertEqual(variables["site_domain"], "")

    def test_missing_template(self):
        with self.assertRaises(RenderError):
            self.renderer.render(self.recipient, "nope")

    def test_unknown_variable(self):
        self.db.templates.insert_one({"_id": "bad", "subject": "Hi {{company}}", "body": "x"})
        with self.assertRaises(RenderError) as ctx:
            self.renderer.render(self.recipient, "bad")
        self.assertIn("company", str(ctx.exception))

    def test_empty_output(self):
        self.db.templates.insert_one({"_id": "empty", "subject": "Hi", "body": "   "})
        with self.assertRaises(RenderError):
            self.renderer.render(self.recipient, "empty")


if __name__ == "__main__":
    unittest.main()
