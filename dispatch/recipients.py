"""
Recipient and site reads for the dispatch path.

Recipients and sites are written by the crawler/extractor and the
qualification engine. The dispatcher only reads the fields it needs and
writes a recipient's outreach state after a terminal outcome.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from database import RECIPIENTS, SITES, get_db
from dispatch.clock import to_storage, utc_now

logger = logging.getLogger("outreach.recipients")


class RecipientState(Enum):
    NEW = "new"
    CONTACTED = "contacted"
    BOUNCED = "bounced"


class RecipientStore:

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._recipients = db[RECIPIENTS]
        self._sites = db[SITES]

    # ── upstream writes (extractor / qualification engine) ───────────

    def upsert_site(self, domain: str, qualifies: bool = False, review_required: bool = False):
        domain = domain.strip().lower()
        self._sites.update_one(
            {"domain": domain},
            {"$set": {"qualifies": qualifies, "review_required": review_required}},
            upsert=True,
        )
        return self._sites.find_one({"domain": domain})["_id"]

    def upsert_recipient(
        self,
        email: str,
        site_id,
        name: str = None,
        priority: int = 50,
        is_validated: bool = True,
        is_valid: bool = True,
    ):
        """Create or refresh a recipient; never resets its outreach state."""
        email = email.strip().lower()
        self._recipients.update_one(
            {"email": email},
            {
                "$set": {
                    "site_id": site_id,
                    "name": name,
                    "priority": max(0, min(100, priority)),
                    "is_validated": is_validated,
                    "is_valid": is_valid,
                },
                "$setOnInsert": {
                    "state": RecipientState.NEW.value,
                    "contact_count": 0,
                    "first_contacted_at": None,
                    "last_contacted_at": None,
                },
            },
            upsert=True,
        )
        return self._recipients.find_one({"email": email})["_id"]

    # ── reads ────────────────────────────────────────────────────────

    def get(self, recipient_id) -> Optional[Dict]:
        return self._recipients.find_one({"_id": recipient_id})

    def get_site(self, site_id) -> Optional[Dict]:
        return self._sites.find_one({"_id": site_id})

    def qualifying_site_ids(self) -> List:
        return [s["_id"] for s in self._sites.find({"qualifies": True}, {"_id": 1})]

    def review_required_site_ids(self) -> Set:
        return {s["_id"] for s in self._sites.find({"review_required": True}, {"_id": 1})}

    def _candidate_query(self, exclude_ids: Iterable = None) -> Dict:
        query = {
            "state": RecipientState.NEW.value,
            "is_validated": True,
            "is_valid": True,
            "site_id": {"$in": self.qualifying_site_ids()},
        }
        if exclude_ids:
            query["_id"] = {"$nin": list(exclude_ids)}
        return query

    def select_candidates(self, limit: int, exclude_ids: Iterable = None) -> List[Dict]:
        """
        Uncontacted, validated, valid recipients of qualifying sites.
        Highest priority first, then lowest id, so batches are deterministic.
        """
        if limit <= 0:
            return []
        cursor = (
            self._recipients.find(self._candidate_query(exclude_ids))
            .sort([("priority", -1), ("_id", 1)])
            .limit(limit)
        )
        return list(cursor)

    def count_candidates(self) -> int:
        return self._recipients.count_documents(self._candidate_query())

    def is_new(self, recipient_id) -> bool:
        return self._recipients.count_documents(
            {"_id": recipient_id, "state": RecipientState.NEW.value}
        ) > 0

    # ── terminal-outcome writes ──────────────────────────────────────

    def mark_contacted(self, recipient_id, now: datetime = None):
        now = to_storage(now or utc_now())
        self._recipients.update_one(
            {"_id": recipient_id},
            {
                "$set": {"state": RecipientState.CONTACTED.value, "last_contacted_at": now},
                "$inc": {"contact_count": 1},
            },
        )
        # first contact is stamped once
        self._recipients.update_one(
            {"_id": recipient_id, "first_contacted_at": None},
            {"$set": {"first_contacted_at": now}},
        )

    def mark_bounced(self, recipient_id, detail: str = None, now: datetime = None):
        self._recipients.update_one(
            {"_id": recipient_id},
            {"$set": {
                "state": RecipientState.BOUNCED.value,
                "bounced_at": to_storage(now or utc_now()),
                "bounce_detail": detail,
            }},
        )
        logger.info(f"recipient_bounced: {recipient_id}")

    def reopen(self, recipient_id) -> bool:
        """Operator action: make a contacted recipient selectable again (suppression still applies)."""
        result = self._recipients.update_one(
            {"_id": recipient_id, "state": RecipientState.CONTACTED.value},
            {"$set": {"state": RecipientState.NEW.value}},
        )
        return result.modified_count > 0
