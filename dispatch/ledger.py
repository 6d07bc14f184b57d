"""
Send Ledger — append-only record of every attempted send.

The source of truth for duplicate suppression, retry backoff and send
statistics. Records are never updated in place: a failed attempt is
followed by a new attempt record, and a late bounce notification is a new
`bounced` record.
"""

import logging
import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from database import SEND_LEDGER, get_db
from dispatch.clock import to_storage, utc_now

logger = logging.getLogger("outreach.ledger")


class SendStatus(Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    FAILED = "failed"


# Statuses that count as "this recipient has been messaged"
SUCCESS_STATUSES = [SendStatus.SENT.value, SendStatus.DELIVERED.value]


def email_domain(address: str) -> str:
    return address.rsplit("@", 1)[-1].strip().lower() if "@" in address else ""


class SendLedger:

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._collection = db[SEND_LEDGER]

    def record(
        self,
        recipient: Dict,
        status: SendStatus,
        credential: Dict = None,
        template_id: str = None,
        subject: str = None,
        error: str = None,
        review_item_id=None,
        attempt: int = 1,
        retries_exhausted: bool = False,
        now: datetime = None,
    ):
        """Append one attempt. Returns the new record id."""
        now = now or utc_now()
        doc = {
            "recipient_id": recipient["_id"],
            "site_id": recipient.get("site_id"),
            "credential_id": credential["_id"] if credential else None,
            "template_id": template_id,
            "review_item_id": review_item_id,
            "recipient_email": (recipient.get("email") or "").strip().lower(),
            "subject": subject,
            "status": status.value,
            "error": error,
            "attempt": attempt,
            "retries_exhausted": retries_exhausted,
            "sent_at": to_storage(now),
        }
        result = self._collection.insert_one(doc)
        log = logger.info if status is not SendStatus.FAILED else logger.warning
        log(
            f"ledger_{status.value}: {doc['recipient_email']} attempt={attempt}"
            + (f" error={error[:120]}" if error else "")
        )
        return result.inserted_id

    def record_bounce_notification(self, recipient: Dict, detail: str, credential_id=None, now: datetime = None):
        """A bounce reported after the fact (DSN, IMAP). Appends, never rewrites the sent record."""
        credential = {"_id": credential_id} if credential_id is not None else None
        return self.record(recipient, SendStatus.BOUNCED, credential=credential, error=detail, now=now)

    # ── suppression queries (always against committed state) ─────────

    def last_success(self, recipient_id, since: datetime, email: str = None) -> Optional[Dict]:
        """Most recent sent/delivered record for the recipient (by id, or the same address) since `since`."""
        who = [{"recipient_id": recipient_id}]
        if email:
            who.append({"recipient_email": email.strip().lower()})
        return self._collection.find_one(
            {
                "$or": who,
                "status": {"$in": SUCCESS_STATUSES},
                "sent_at": {"$gte": to_storage(since)},
            },
            sort=[("sent_at", -1)],
        )

    def count_site_successes(self, site_id, since: datetime) -> int:
        return self._collection.count_documents({
            "site_id": site_id,
            "status": {"$in": SUCCESS_STATUSES},
            "sent_at": {"$gte": to_storage(since)},
        })

    def count_domain_successes(self, domain: str, since: datetime) -> int:
        if not domain:
            return 0
        return self._collection.count_documents({
            "recipient_email": {"$regex": "@" + re.escape(domain.lower()) + "$"},
            "status": {"$in": SUCCESS_STATUSES},
            "sent_at": {"$gte": to_storage(since)},
        })

    def failure_history(self, recipient_id, lookback: int = 50) -> Dict:
        """
        Consecutive `failed` attempts since the last non-failed record.

        Returns {"consecutive_failures": n, "last_failed_at": datetime|None}.
        """
        records = self._collection.find(
            {"recipient_id": recipient_id},
            sort=[("sent_at", -1), ("_id", -1)],
            limit=lookback,
        )
        count = 0
        last_failed_at = None
        for r in records:
            if r["status"] != SendStatus.FAILED.value:
                break
            if last_failed_at is None:
                last_failed_at = r["sent_at"]
            count += 1
        return {"consecutive_failures": count, "last_failed_at": last_failed_at}

    # ── reporting ────────────────────────────────────────────────────

    def get_records_for_recipient(self, recipient_id) -> List[Dict]:
        return list(self._collection.find({"recipient_id": recipient_id}, sort=[("sent_at", 1), ("_id", 1)]))

    def get_statistics(self, since: datetime = None) -> Dict:
        """Counts by status, overall and per credential."""
        pipeline = []
        if since is not None:
            pipeline.append({"$match": {"sent_at": {"$gte": to_storage(since)}}})
        pipeline.append({
            "$group": {
                "_id": {"status": "$status", "credential_id": "$credential_id"},
                "count": {"$sum": 1},
            }
        })

        by_status = {s.value: 0 for s in SendStatus}
        by_credential: Dict = {}
        for row in self._collection.aggregate(pipeline):
            status = row["_id"]["status"]
            cred = row["_id"].get("credential_id")
            by_status[status] = by_status.get(status, 0) + row["count"]
            per_cred = by_credential.setdefault(cred, {s.value: 0 for s in SendStatus})
            per_cred[status] = per_cred.get(status, 0) + row["count"]

        total = sum(by_status.values())
        succeeded = by_status[SendStatus.SENT.value] + by_status[SendStatus.DELIVERED.value]
        return {
            "total": total,
            "by_status": by_status,
            "by_credential": by_credential,
            "success_rate": round(succeeded / total, 4) if total else None,
        }
