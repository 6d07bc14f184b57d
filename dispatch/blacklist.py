"""
Blacklist — addresses and domains that must never be messaged.

Checked by the Duplicate Guard on every candidate. Hard bounces add the
address automatically (source "auto_bounce").
"""

import logging
import re
from datetime import datetime
from enum import Enum
from typing import Dict, List

from pymongo.errors import DuplicateKeyError

from database import BLACKLIST, get_db
from dispatch.clock import to_storage, utc_now
from dispatch.ledger import email_domain

logger = logging.getLogger("outreach.blacklist")

DOMAIN_RE = re.compile(r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9][a-z0-9-]{0,61}[a-z0-9]$", re.I)


class EntryType(Enum):
    EMAIL = "email"
    DOMAIN = "domain"


class Blacklist:

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._collection = db[BLACKLIST]

    def _is_listed(self, entry_type: EntryType, value: str) -> bool:
        return self._collection.count_documents({
            "type": entry_type.value,
            "value": value.strip().lower(),
            "active": True,
        }) > 0

    def is_email_blacklisted(self, email: str) -> bool:
        return self._is_listed(EntryType.EMAIL, email)

    def is_domain_blacklisted(self, domain: str) -> bool:
        return bool(domain) and self._is_listed(EntryType.DOMAIN, domain)

    def check(self, email: str, site_domain: str = None) -> List[str]:
        """Every reason the address is blocked; empty when it is not."""
        reasons = []
        if self.is_email_blacklisted(email):
            reasons.append("email address is blacklisted")
        if self.is_domain_blacklisted(email_domain(email)):
            reasons.append("email domain is blacklisted")
        if site_domain and self.is_domain_blacklisted(site_domain):
            reasons.append("site domain is blacklisted")
        return reasons

    def add(self, entry_type: EntryType, value: str, reason: str, source: str = "manual",
            now: datetime = None) -> Dict:
        """Add (or re-activate) an entry. Returns the stored entry."""
        value = value.strip().lower()
        if entry_type is EntryType.DOMAIN and not DOMAIN_RE.match(value):
            raise ValueError(f"not a domain: {value!r}")
        if entry_type is EntryType.EMAIL and "@" not in value:
            raise ValueError(f"not an email address: {value!r}")

        query = {"type": entry_type.value, "value": value}
        try:
            self._collection.update_one(
                query,
                {
                    "$set": {"active": True},
                    "$setOnInsert": {
                        "reason": reason,
                        "source": source,
                        "created_at": to_storage(now or utc_now()),
                    },
                },
                upsert=True,
            )
        except DuplicateKeyError:
            # lost an upsert race; the entry exists either way
            self._collection.update_one(query, {"$set": {"active": True}})
        logger.info(f"blacklist_added: {entry_type.value}={value} source={source}")
        return self._collection.find_one(query)

    def blacklist_email(self, email: str, reason: str, source: str = "manual") -> Dict:
        return self.add(EntryType.EMAIL, email, reason, source)

    def blacklist_domain(self, domain: str, reason: str, source: str = "manual") -> Dict:
        return self.add(EntryType.DOMAIN, domain, reason, source)

    def blacklist_bounce(self, email: str) -> Dict:
        return self.add(EntryType.EMAIL, email, "Auto-blacklisted due to hard bounce", "auto_bounce")

    def deactivate(self, entry_type: EntryType, value: str) -> bool:
        result = self._collection.update_one(
            {"type": entry_type.value, "value": value.strip().lower()},
            {"$set": {"active": False}},
        )
        return result.modified_count > 0

    def get_statistics(self) -> Dict:
        return {
            "total_entries": self._collection.count_documents({}),
            "active_entries": self._collection.count_documents({"active": True}),
            "email_entries": self._collection.count_documents({"type": EntryType.EMAIL.value}),
            "domain_entries": self._collection.count_documents({"type": EntryType.DOMAIN.value}),
            "auto_entries": self._collection.count_documents({"source": {"$in": ["auto_bounce", "auto_complaint"]}}),
        }
