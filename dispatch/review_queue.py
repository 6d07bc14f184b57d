"""
Review Gate — messages held for a human decision before they may be sent.

State machine: pending → approved | rejected. Both transitions are terminal
and are applied with a conditional update on `status == "pending"`, so two
reviewers racing on the same item cannot both win and a decided item can
never be re-decided. Approval does not send anything: the next dispatch
tick picks approved items up through get_dispatchable().
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import RECIPIENTS, REVIEW_QUEUE, get_db
from dispatch.clock import to_storage, utc_now

logger = logging.getLogger("outreach.review_queue")

HIGH_PRIORITY = 75


class ReviewStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class InvalidReviewTransition(Exception):
    """Raised when approving/rejecting an item that is not pending."""

    def __init__(self, item_id, current_status: Optional[str], target: ReviewStatus):
        self.item_id = item_id
        self.current_status = current_status
        self.target = target
        if current_status is None:
            msg = f"review item {item_id} not found"
        else:
            msg = f"review item {item_id} is {current_status}, cannot mark {target.value}"
        super().__init__(msg)


class ReviewQueue:

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._collection = db[REVIEW_QUEUE]
        self._recipients = db[RECIPIENTS]

    # ── creation / lookup ────────────────────────────────────────────

    def create_entry(
        self,
        recipient: Dict,
        template_id: str,
        subject: str,
        body: str,
        priority: int = 50,
        notes: str = None,
        now: datetime = None,
    ) -> Dict:
        """
        Hold a rendered message for review. Returns the pending item; if one
        already exists for the recipient/template pair, that one is returned.
        """
        existing = self.find_entry(recipient["_id"], template_id, ReviewStatus.PENDING)
        if existing:
            return existing

        doc = {
            "recipient_id": recipient["_id"],
            "site_id": recipient.get("site_id"),
            "template_id": template_id,
            "subject": subject,
            "body": body,
            "status": ReviewStatus.PENDING.value,
            "priority": max(0, min(100, priority)),
            "reviewer_id": None,
            "reviewed_at": None,
            "notes": notes,
            "created_at": to_storage(now or utc_now()),
            "dispatched_at": None,
            "send_record_id": None,
        }
        try:
            doc["_id"] = self._collection.insert_one(doc).inserted_id
        except DuplicateKeyError:
            return self.find_entry(recipient["_id"], template_id, ReviewStatus.PENDING)

        logger.info(
            f"review_entry_created: {recipient.get('email')} template={template_id}",
            extra={"entry_id": str(doc["_id"]), "priority": doc["priority"]},
        )
        return doc

    def get(self, item_id) -> Optional[Dict]:
        return self._collection.find_one({"_id": item_id})

    def find_entry(self, recipient_id, template_id: str = None, status: ReviewStatus = None) -> Optional[Dict]:
        """Most recent item for the recipient (optionally per template / status)."""
        query = {"recipient_id": recipient_id}
        if template_id is not None:
            query["template_id"] = template_id
        if status is not None:
            query["status"] = status.value
        return self._collection.find_one(query, sort=[("created_at", -1), ("_id", -1)])

    # ── transitions ──────────────────────────────────────────────────

    def _transition(self, item_id, target: ReviewStatus, reviewer_id, notes, extra: Dict, now: datetime) -> Dict:
        update = {
            "status": target.value,
            "reviewer_id": reviewer_id,
            "reviewed_at": to_storage(now or utc_now()),
        }
        if notes is not None:
            update["notes"] = notes
        update.update(extra)

        item = self._collection.find_one_and_update(
            {"_id": item_id, "status": ReviewStatus.PENDING.value},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        if item is None:
            current = self._collection.find_one({"_id": item_id}, {"status": 1})
            raise InvalidReviewTransition(item_id, current["status"] if current else None, target)

        logger.info(
            f"review_entry_{target.value}: {item_id} by {reviewer_id}",
            extra={"recipient_id": str(item["recipient_id"])},
        )
        return item

    def approve(self, item_id, reviewer_id, notes: str = None, modifications: Dict = None,
                now: datetime = None) -> Dict:
        """Approve a pending item, optionally replacing its subject and/or body."""
        extra = {}
        for key in ("subject", "body"):
            if modifications and modifications.get(key):
                extra[key] = modifications[key]
        return self._transition(item_id, ReviewStatus.APPROVED, reviewer_id, notes, extra, now)

    def reject(self, item_id, reviewer_id, notes: str = None, now: datetime = None) -> Dict:
        return self._transition(item_id, ReviewStatus.REJECTED, reviewer_id, notes, {}, now)

    def bulk_approve(self, item_ids: Iterable, reviewer_id, notes: str = None) -> Dict:
        results = {"approved": 0, "failed": 0, "errors": []}
        for item_id in item_ids:
            try:
                self.approve(item_id, reviewer_id, notes)
                results["approved"] += 1
            except InvalidReviewTransition as e:
                results["failed"] += 1
                results["errors"].append(f"Entry {item_id}: {e}")
        return results

    def bulk_reject(self, item_ids: Iterable, reviewer_id, notes: str = None) -> Dict:
        results = {"rejected": 0, "failed": 0, "errors": []}
        for item_id in item_ids:
            try:
                self.reject(item_id, reviewer_id, notes)
                results["rejected"] += 1
            except InvalidReviewTransition as e:
                results["failed"] += 1
                results["errors"].append(f"Entry {item_id}: {e}")
        return results

    # ── dispatch side ────────────────────────────────────────────────

    def get_pending_entries(self, limit: int = 50) -> List[Dict]:
        cursor = (
            self._collection.find({"status": ReviewStatus.PENDING.value})
            .sort([("priority", -1), ("created_at", 1)])
            .limit(limit)
        )
        return list(cursor)

    def get_dispatchable(self, limit: int) -> List[Dict]:
        """Approved, not yet dispatched, recipient still `new`; priority desc, oldest first."""
        if limit <= 0:
            return []
        approved = list(
            self._collection.find({"status": ReviewStatus.APPROVED.value, "dispatched_at": None})
            .sort([("priority", -1), ("created_at", 1), ("_id", 1)])
        )
        if not approved:
            return []
        new_ids = {
            r["_id"] for r in self._recipients.find(
                {"_id": {"$in": [a["recipient_id"] for a in approved]}, "state": "new"},
                {"_id": 1},
            )
        }
        return [a for a in approved if a["recipient_id"] in new_ids][:limit]

    def mark_dispatched(self, item_id, send_record_id, now: datetime = None) -> bool:
        result = self._collection.update_one(
            {"_id": item_id, "status": ReviewStatus.APPROVED.value, "dispatched_at": None},
            {"$set": {"dispatched_at": to_storage(now or utc_now()), "send_record_id": send_record_id}},
        )
        return result.modified_count > 0

    # ── admin ────────────────────────────────────────────────────────

    def update_priority(self, item_id, priority: int) -> bool:
        result = self._collection.update_one(
            {"_id": item_id},
            {"$set": {"priority": max(0, min(100, priority))}},
        )
        return result.matched_count > 0

    def get_statistics(self) -> Dict:
        count = self._collection.count_documents
        oldest = self._collection.find_one(
            {"status": ReviewStatus.PENDING.value}, sort=[("created_at", 1)]
        )
        return {
            "total_entries": count({}),
            "pending": count({"status": ReviewStatus.PENDING.value}),
            "approved": count({"status": ReviewStatus.APPROVED.value}),
            "rejected": count({"status": ReviewStatus.REJECTED.value}),
            "dispatched": count({"dispatched_at": {"$ne": None}}),
            "awaiting_dispatch": count({"status": ReviewStatus.APPROVED.value, "dispatched_at": None}),
            "high_priority": count({"status": ReviewStatus.PENDING.value, "priority": {"$gte": HIGH_PRIORITY}}),
            "oldest_pending": oldest["created_at"] if oldest else None,
        }

    def cleanup_old_entries(self, days_old: int = 90, now: datetime = None) -> int:
        """Delete rejected or already-dispatched items older than `days_old`. Pending items are kept."""
        cutoff = to_storage((now or utc_now()) - timedelta(days=days_old))
        result = self._collection.delete_many({
            "created_at": {"$lt": cutoff},
            "$or": [
                {"status": ReviewStatus.REJECTED.value},
                {"dispatched_at": {"$ne": None}},
            ],
        })
        if result.deleted_count:
            logger.info(f"review_cleanup: deleted {result.deleted_count} entries older than {days_old}d")
        return result.deleted_count
