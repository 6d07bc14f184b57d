"""
Duplicate Guard — decides whether a recipient may be messaged right now.

All checks run against the Send Ledger's committed state and none of them
short-circuits, so a skipped candidate carries every reason that applies:

  duplicate-suppressed  the recipient (or the same address) already got a
                        sent/delivered message inside the cooldown
  site-cooldown         the recipient's site reached SITE_MAX_SENDS
  domain-cooldown       the email domain reached DOMAIN_MAX_SENDS
  blacklisted           the address or a domain it belongs to is blocked
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List

import config
from dispatch.blacklist import Blacklist
from dispatch.clock import utc_now
from dispatch.ledger import SendLedger, email_domain

logger = logging.getLogger("outreach.duplicate_guard")

DUPLICATE_SUPPRESSED = "duplicate-suppressed"
SITE_COOLDOWN = "site-cooldown"
DOMAIN_COOLDOWN = "domain-cooldown"
BLACKLISTED = "blacklisted"


@dataclass
class EligibilityResult:
    eligible: bool
    reasons: List[str] = field(default_factory=list)
    details: Dict[str, str] = field(default_factory=dict)


class DuplicateGuard:

    def __init__(
        self,
        ledger: SendLedger,
        blacklist: Blacklist = None,
        cooldown_days: int = None,
        site_suppression: bool = None,
        site_max_sends: int = None,
        domain_suppression: bool = None,
        domain_max_sends: int = None,
    ):
        self.ledger = ledger
        self.blacklist = blacklist
        self.cooldown_days = config.COOLDOWN_DAYS if cooldown_days is None else cooldown_days
        self.site_suppression = (
            config.SITE_SUPPRESSION_ENABLED if site_suppression is None else site_suppression
        )
        self.site_max_sends = config.SITE_MAX_SENDS if site_max_sends is None else site_max_sends
        self.domain_suppression = (
            config.DOMAIN_SUPPRESSION_ENABLED if domain_suppression is None else domain_suppression
        )
        self.domain_max_sends = config.DOMAIN_MAX_SENDS if domain_max_sends is None else domain_max_sends

    def is_eligible(
        self,
        recipient: Dict,
        cooldown_days: int = None,
        now: datetime = None,
        site_domain: str = None,
        planned_site_sends: int = 0,
        planned_domain_sends: int = 0,
    ) -> EligibilityResult:
        """
        `planned_*_sends` are sends already enqueued in the current batch but
        not yet in the ledger; they count towards the site/domain caps.
        """
        now = now or utc_now()
        days = self.cooldown_days if cooldown_days is None else cooldown_days
        since = now - timedelta(days=days)
        email = (recipient.get("email") or "").strip().lower()
        result = EligibilityResult(eligible=True)

        previous = self.ledger.last_success(recipient["_id"], since, email=email)
        if previous:
            result.reasons.append(DUPLICATE_SUPPRESSED)
            result.details[DUPLICATE_SUPPRESSED] = (
                f"last {previous['status']} at {previous['sent_at']:%Y-%m-%d %H:%M} "
                f"(cooldown {days}d)"
            )

        site_id = recipient.get("site_id")
        if self.site_suppression and site_id is not None:
            site_sends = self.ledger.count_site_successes(site_id, since) + planned_site_sends
            if site_sends >= self.site_max_sends:
                result.reasons.append(SITE_COOLDOWN)
                result.details[SITE_COOLDOWN] = f"{site_sends}/{self.site_max_sends} sends to this site"

        domain = email_domain(email)
        if self.domain_suppression and domain:
            domain_sends = self.ledger.count_domain_successes(domain, since) + planned_domain_sends
            if domain_sends >= self.domain_max_sends:
                result.reasons.append(DOMAIN_COOLDOWN)
                result.details[DOMAIN_COOLDOWN] = f"{domain_sends}/{self.domain_max_sends} sends to {domain}"

        if self.blacklist is not None and email:
            blocked = self.blacklist.check(email, site_domain=site_domain)
            if blocked:
                result.reasons.append(BLACKLISTED)
                result.details[BLACKLISTED] = "; ".join(blocked)

        result.eligible = not result.reasons
        if not result.eligible:
            logger.debug(
                f"recipient_suppressed: {email}",
                extra={"reasons": result.reasons},
            )
        return result
