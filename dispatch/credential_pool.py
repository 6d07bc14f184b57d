"""
Credential Pool — least-used rotation over sending accounts with health tracking.

Each credential document is the single source of truth for its daily quota
and its success/failure counters. Workers never keep in-process counters:

- acquire_credential() reserves one quota slot with a compare-and-swap on
  `sent_today` (findOneAndUpdate filtered on the value just read). Two
  workers can never both take the last slot; the loser re-reads and moves
  on to the next credential.
- record_success() confirms the reserved slot.
- record_failure() / release_credential() hand the slot back, so only
  confirmed sends count against `daily_limit`.

The daily reset is applied lazily before every selection, per credential,
using the calendar date in that credential's own timezone.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

import pytz
from pymongo import ReturnDocument

import config
from database import CREDENTIALS, get_db
from dispatch.clock import as_utc, to_storage, utc_now

logger = logging.getLogger("outreach.credential_pool")

# Full re-read rounds when every candidate was taken by another worker mid-claim
MAX_CLAIM_ROUNDS = 5


class CredentialPool:
    """Async-safe (and multi-process-safe) pool of sending credentials."""

    def __init__(
        self,
        db=None,
        min_sample: int = None,
        health_threshold: float = None,
        default_daily_limit: int = None,
        default_timezone: str = None,
    ):
        db = db if db is not None else get_db()
        self._collection = db[CREDENTIALS]
        self.min_sample = config.HEALTH_MIN_SAMPLE if min_sample is None else min_sample
        self.health_threshold = config.HEALTH_THRESHOLD if health_threshold is None else health_threshold
        self.default_daily_limit = default_daily_limit or config.DEFAULT_DAILY_LIMIT
        self.default_timezone = default_timezone or config.TARGET_TIMEZONE

    # ── admin ────────────────────────────────────────────────────────

    def add_credential(
        self,
        name: str,
        host: str,
        port: int,
        username: str,
        password: str,
        from_address: str = None,
        from_name: str = None,
        daily_limit: int = None,
        timezone: str = None,
        use_tls: bool = True,
        active: bool = True,
        now: datetime = None,
    ):
        now = now or utc_now()
        timezone = timezone or self.default_timezone
        doc = {
            "name": name,
            "host": host,
            "port": port,
            "username": username,
            "password": password,
            "use_tls": use_tls,
            "from_address": from_address or username,
            "from_name": from_name or "",
            "daily_limit": daily_limit if daily_limit is not None else self.default_daily_limit,
            "sent_today": 0,
            "reset_date": self._local_date(timezone, now),
            "timezone": timezone,
            "active": active,
            "success_count": 0,
            "failure_count": 0,
            "last_used_at": None,
            "deactivated_at": None,
            "deactivation_reason": None,
            "created_at": to_storage(now),
        }
        result = self._collection.insert_one(doc)
        logger.info(f"credential_added: {name} ({doc['from_address']}) limit={doc['daily_limit']}")
        return result.inserted_id

    def get(self, credential_id) -> Optional[Dict]:
        return self._collection.find_one({"_id": credential_id})

    def set_active(self, credential_id, active: bool, reset_health: bool = False) -> bool:
        """Manually (de)activate. Reactivating with reset_health clears the counters the sweep reads."""
        update = {"active": active}
        if active:
            update.update({"deactivated_at": None, "deactivation_reason": None})
            if reset_health:
                update.update({"success_count": 0, "failure_count": 0})
        result = self._collection.update_one({"_id": credential_id}, {"$set": update})
        logger.info(f"credential_set_active: {credential_id} active={active} reset_health={reset_health}")
        return result.matched_count > 0

    # ── rotation ─────────────────────────────────────────────────────

    def acquire_credential(self, now: datetime = None) -> Optional[Dict]:
        """
        Reserve one send on the least-used eligible credential.

        Returns the credential document (with the slot already counted in
        `sent_today`), or None when every credential is inactive or at its
        daily limit. None is a normal outcome, not an error.
        """
        now = now or utc_now()

        for _ in range(MAX_CLAIM_ROUNDS):
            self._apply_daily_reset(now)
            candidates = self._eligible()
            if not candidates:
                logger.info("no_credential_available")
                return None

            for cred in candidates:
                claimed = self._collection.find_one_and_update(
                    {
                        "_id": cred["_id"],
                        "active": True,
                        "sent_today": cred["sent_today"],
                        "daily_limit": cred["daily_limit"],
                        "reset_date": cred.get("reset_date"),
                    },
                    {"$inc": {"sent_today": 1}},
                    return_document=ReturnDocument.AFTER,
                )
                if claimed:
                    logger.info(
                        f"credential_acquired: {claimed.get('name')} "
                        f"{claimed['sent_today']}/{claimed['daily_limit']}"
                    )
                    return claimed

            logger.debug("credential_claim_contended", extra={"candidates": len(candidates)})

        logger.warning(f"credential_claim_gave_up after {MAX_CLAIM_ROUNDS} rounds")
        return None

    def record_success(self, credential: Dict, now: datetime = None):
        """Confirm the reserved slot: success_count +1, last_used_at = now."""
        now = now or utc_now()
        self._collection.update_one(
            {"_id": credential["_id"]},
            {"$inc": {"success_count": 1}, "$set": {"last_used_at": to_storage(now)}},
        )

    def record_failure(self, credential: Dict, now: datetime = None):
        """failure_count +1 and hand the reserved slot back."""
        self._collection.update_one({"_id": credential["_id"]}, {"$inc": {"failure_count": 1}})
        self.release_credential(credential)
        logger.info(f"credential_failure_recorded: {credential.get('name')}")

    def release_credential(self, credential: Dict):
        """
        Return a reserved slot without touching health counters.

        Only refunds against the same day's counter: if the daily reset ran
        in between, the reservation is already gone.
        """
        self._collection.update_one(
            {
                "_id": credential["_id"],
                "reset_date": credential.get("reset_date"),
                "sent_today": {"$gt": 0},
            },
            {"$inc": {"sent_today": -1}},
        )

    # ── health ───────────────────────────────────────────────────────

    @staticmethod
    def success_rate(credential: Dict) -> Optional[float]:
        total = credential.get("success_count", 0) + credential.get("failure_count", 0)
        if total == 0:
            return None
        return credential.get("success_count", 0) / total

    def is_healthy(self, credential: Dict) -> bool:
        total = credential.get("success_count", 0) + credential.get("failure_count", 0)
        if total == 0 or total < self.min_sample:
            return True  # not enough history yet
        return self.success_rate(credential) >= self.health_threshold

    def sweep_health(self, now: datetime = None) -> List[Dict]:
        """
        Deactivate every active credential whose success rate fell below the
        threshold once `min_sample` attempts exist. Idempotent.

        Returns one entry per credential deactivated by this call.
        """
        now = now or utc_now()
        deactivated = []

        for cred in self._collection.find({"active": True}):
            if self.is_healthy(cred):
                continue

            total = cred.get("success_count", 0) + cred.get("failure_count", 0)
            rate = self.success_rate(cred)
            reason = (
                f"success rate {rate:.0%} below {self.health_threshold:.0%} "
                f"over {total} attempts"
            )
            result = self._collection.update_one(
                {"_id": cred["_id"], "active": True},
                {"$set": {
                    "active": False,
                    "deactivated_at": to_storage(now),
                    "deactivation_reason": reason,
                }},
            )
            if result.modified_count:
                logger.warning(f"credential_auto_deactivated: {cred.get('name')} — {reason}")
                deactivated.append({
                    "credential_id": cred["_id"],
                    "name": cred.get("name"),
                    "success_rate": rate,
                    "attempts": total,
                    "reason": reason,
                })

        logger.info(f"health_sweep_complete: {len(deactivated)} deactivated")
        return deactivated

    # ── capacity / status ────────────────────────────────────────────

    def active_count(self) -> int:
        return self._collection.count_documents({"active": True})

    def remaining_capacity(self, now: datetime = None) -> int:
        """Sum of (daily_limit − sent_today) over active credentials."""
        now = now or utc_now()
        self._apply_daily_reset(now)
        return sum(
            max(0, c["daily_limit"] - c.get("sent_today", 0))
            for c in self._collection.find({"active": True})
        )

    def reset_daily_counters(self, now: datetime = None) -> int:
        return self._apply_daily_reset(now or utc_now())

    def get_all_status(self, now: datetime = None) -> List[Dict]:
        now = now or utc_now()
        self._apply_daily_reset(now)
        status = []
        for c in self._collection.find().sort("_id", 1):
            rate = self.success_rate(c)
            status.append({
                "id": c["_id"],
                "name": c.get("name"),
                "from_address": c.get("from_address"),
                "active": c.get("active", False),
                "sent_today": c.get("sent_today", 0),
                "daily_limit": c.get("daily_limit", 0),
                "remaining": max(0, c.get("daily_limit", 0) - c.get("sent_today", 0)),
                "success_count": c.get("success_count", 0),
                "failure_count": c.get("failure_count", 0),
                "success_rate": round(rate, 4) if rate is not None else None,
                "last_used_at": c.get("last_used_at"),
                "deactivation_reason": c.get("deactivation_reason"),
            })
        return status

    # ── internal helpers ─────────────────────────────────────────────

    @staticmethod
    def _local_date(timezone: str, now: datetime) -> str:
        return as_utc(now).astimezone(pytz.timezone(timezone)).date().isoformat()

    def _apply_daily_reset(self, now: datetime) -> int:
        """Zero `sent_today` on every credential whose stored reset date is not today."""
        reset = 0
        for cred in self._collection.find({}, {"timezone": 1, "reset_date": 1, "name": 1}):
            today = self._local_date(cred.get("timezone") or self.default_timezone, now)
            if cred.get("reset_date") == today:
                continue
            result = self._collection.update_one(
                {"_id": cred["_id"], "reset_date": cred.get("reset_date")},
                {"$set": {"sent_today": 0, "reset_date": today}},
            )
            if result.modified_count:
                reset += 1
                logger.info(f"credential_daily_reset: {cred.get('name')} → {today}")
        return reset

    def _eligible(self) -> List[Dict]:
        """Active and under limit, least-used first, lowest id on ties."""
        eligible = [
            c for c in self._collection.find({"active": True})
            if c.get("sent_today", 0) < c.get("daily_limit", 0)
        ]
        eligible.sort(key=lambda c: (c.get("sent_today", 0), c["_id"]))
        return eligible
