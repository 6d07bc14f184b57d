#!/usr/bin/env python3
"""
Outreach Dispatch
=================

Usage:
    python main.py run                      # scheduler (blocks until SIGTERM)
    python main.py tick                     # one dispatch tick now
    python main.py sweep-health
    python main.py stats [--days 7]
    python main.py credentials list
    python main.py credentials add NAME --host H --port 587 --username U --password P
    python main.py credentials deactivate <id>
    python main.py review list
    python main.py review approve <id> [<id> ...] --reviewer alice
    python main.py review reject <id> --reviewer alice --notes "off-topic"
    python main.py blacklist add someone@example.com
    python main.py blacklist add example.com --domain
    python main.py reopen <recipient_id>
    python main.py bounce <recipient_id> --detail "550 mailbox gone"
    python main.py ensure-indexes
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

import config
from config import ConfigurationError
from database import ensure_indexes, get_db, ping
from dispatch.blacklist import EntryType
from dispatch.clock import utc_now
from dispatch.review_queue import InvalidReviewTransition
from dispatch.scheduler import AsyncScheduler, build_services
from utils.logging_utils import retry_with_backoff, setup_logging

logger = logging.getLogger("outreach.main")


def _log_retry(attempt, error, delay):
    logger.warning(f"Database not reachable (attempt {attempt}): {error} — retrying in {delay:.0f}s")


@retry_with_backoff(max_retries=3, initial_delay=2.0, exceptions=(PyMongoError,), on_retry=_log_retry)
def connect():
    if not config.DATABASE_URL:
        raise ConfigurationError("DATABASE_URL is not set")
    db = get_db()
    ping(db)
    return db


def _object_id(value: str):
    try:
        return ObjectId(value)
    except InvalidId:
        return value


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


# ── commands ─────────────────────────────────────────────────────────

def run_scheduler(services):
    scheduler = AsyncScheduler(services)
    asyncio.run(scheduler.start())


def run_tick(services):
    summary = asyncio.run(services.orchestrator.run_tick())
    print(f"\n📊 Tick: sent {summary.sent}, failed {summary.failed}, bounced {summary.bounced}, "
          f"review queued {summary.review_queued}")
    if summary.aborted:
        print(f"   Aborted: {summary.aborted}")
    for reason, count in sorted(summary.skipped.items()):
        print(f"   Skipped {reason}: {count}")
    if summary.timed_out:
        print("   ⚠️  Batch timed out")


def sweep_health(services):
    deactivated = services.pool.sweep_health()
    if not deactivated:
        print("\n✅ All active credentials are healthy")
    for d in deactivated:
        print(f"⛔ {d['name']}: {d['reason']}")


def show_stats(services, days: int):
    now = utc_now()
    stats = services.ledger.get_statistics(since=now - timedelta(days=days))
    print(f"\n📊 Last {days} day(s): {stats['total']} attempts")
    for status, count in stats["by_status"].items():
        print(f"   - {status.title()}: {count}")
    if stats["success_rate"] is not None:
        print(f"   Success rate: {stats['success_rate']:.1%}")
    print(f"\n   Remaining capacity today: {services.pool.remaining_capacity(now)}")
    print(f"   Candidates waiting: {services.recipients.count_candidates()}")
    print(f"\n📝 Review queue:")
    for key, value in services.review.get_statistics().items():
        print(f"   - {key.replace('_', ' ').title()}: {value}")
    print(f"\n⛔ Blacklist:")
    for key, value in services.blacklist.get_statistics().items():
        print(f"   - {key.replace('_', ' ').title()}: {value}")


def credentials_command(services, args):
    pool = services.pool
    if args.action == "list":
        status = pool.get_all_status()
        if not status:
            print("\n📭 No credentials yet. Add one with: python main.py credentials add ...")
            return
        for c in status:
            emoji = "✅" if c["active"] else "⛔"
            rate = f"{c['success_rate']:.0%}" if c["success_rate"] is not None else "n/a"
            print(f"{emoji} {c['name']} <{c['from_address']}>  [{c['id']}]")
            print(f"   {c['sent_today']}/{c['daily_limit']} today | success {rate} "
                  f"({c['success_count']} ok / {c['failure_count']} failed)")
            if c["deactivation_reason"]:
                print(f"   Deactivated: {c['deactivation_reason']}")
    elif args.action == "add":
        if not (args.host and args.username and args.password):
            raise SystemExit("credentials add needs --host, --username and --password")
        cred_id = pool.add_credential(
            name=args.name,
            host=args.host,
            port=args.port,
            username=args.username,
            password=args.password,
            from_address=args.from_address,
            from_name=args.from_name,
            daily_limit=args.daily_limit,
            timezone=args.timezone,
        )
        print(f"\n✅ Credential added: {cred_id}")
    elif args.action in ("activate", "deactivate"):
        ok = pool.set_active(_object_id(args.name), args.action == "activate", reset_health=args.reset_health)
        print("✅ Updated" if ok else f"❌ Credential not found: {args.name}")


def review_command(services, args):
    review = services.review
    if args.action == "list":
        entries = review.get_pending_entries(limit=args.limit)
        if not entries:
            print("\n📭 Nothing waiting for review.")
        for e in entries:
            print(f"[{e['_id']}] priority {e['priority']} — {e['subject']}")
        return

    ids = [_object_id(i) for i in args.ids]
    if args.action == "approve":
        modifications = {"subject": args.subject, "body": args.body}
        if len(ids) == 1 and (args.subject or args.body):
            review.approve(ids[0], args.reviewer, args.notes, modifications)
            result = {"approved": 1, "failed": 0, "errors": []}
        else:
            result = review.bulk_approve(ids, args.reviewer, args.notes)
    else:
        result = review.bulk_reject(ids, args.reviewer, args.notes)
    _print_json(result)


def blacklist_command(services, args):
    entry_type = EntryType.DOMAIN if args.domain else EntryType.EMAIL
    if args.action == "add":
        services.blacklist.add(entry_type, args.value, args.reason or "manual entry")
        print(f"⛔ Blacklisted {entry_type.value} {args.value}")
    else:
        ok = services.blacklist.deactivate(entry_type, args.value)
        print("✅ Removed" if ok else f"❌ Not on the blacklist: {args.value}")


def reopen_recipient(services, recipient_id: str):
    ok = services.recipients.reopen(_object_id(recipient_id))
    print("✅ Recipient reopened (cooldown still applies)" if ok else "❌ Recipient not found or not contacted")


def record_bounce(services, recipient_id: str, detail: str):
    recipient = services.recipients.get(_object_id(recipient_id))
    if not recipient:
        print(f"❌ Recipient not found: {recipient_id}")
        return
    services.ledger.record_bounce_notification(recipient, detail)
    services.recipients.mark_bounced(recipient["_id"], detail)
    if config.AUTO_BLACKLIST_BOUNCES:
        services.blacklist.blacklist_bounce(recipient["email"])
    print(f"📭 Bounce recorded for {recipient['email']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Outreach Dispatch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Run the scheduler (dispatch ticks, health sweep, summaries)")
    subparsers.add_parser("tick", help="Run one dispatch tick now")
    subparsers.add_parser("sweep-health", help="Deactivate unhealthy credentials")
    subparsers.add_parser("ensure-indexes", help="Create database indexes")

    stats_parser = subparsers.add_parser("stats", help="Send statistics")
    stats_parser.add_argument("--days", type=int, default=1)

    cred_parser = subparsers.add_parser("credentials", help="Manage sending credentials")
    cred_parser.add_argument("action", choices=["list", "add", "activate", "deactivate"])
    cred_parser.add_argument("name", nargs="?", help="Name (add) or id (activate/deactivate)")
    cred_parser.add_argument("--host")
    cred_parser.add_argument("--port", type=int, default=587)
    cred_parser.add_argument("--username")
    cred_parser.add_argument("--password")
    cred_parser.add_argument("--from-address")
    cred_parser.add_argument("--from-name")
    cred_parser.add_argument("--daily-limit", type=int)
    cred_parser.add_argument("--timezone")
    cred_parser.add_argument("--reset-health", action="store_true", help="Clear counters on activate")

    review_parser = subparsers.add_parser("review", help="Review held messages")
    review_parser.add_argument("action", choices=["list", "approve", "reject"])
    review_parser.add_argument("ids", nargs="*")
    review_parser.add_argument("--reviewer", default="cli")
    review_parser.add_argument("--notes")
    review_parser.add_argument("--subject", help="Replace the subject on approve")
    review_parser.add_argument("--body", help="Replace the body on approve")
    review_parser.add_argument("--limit", type=int, default=50)

    bl_parser = subparsers.add_parser("blacklist", help="Manage the blacklist")
    bl_parser.add_argument("action", choices=["add", "remove"])
    bl_parser.add_argument("value")
    bl_parser.add_argument("--domain", action="store_true", help="Value is a domain")
    bl_parser.add_argument("--reason")

    reopen_parser = subparsers.add_parser("reopen", help="Make a contacted recipient selectable again")
    reopen_parser.add_argument("recipient_id")

    bounce_parser = subparsers.add_parser("bounce", help="Record a bounce reported after delivery")
    bounce_parser.add_argument("recipient_id")
    bounce_parser.add_argument("--detail", default="bounce notification")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    setup_logging(config.LOG_LEVEL, config.LOG_FILE, structured=config.LOG_JSON)

    try:
        config.validate()
        db = connect()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    if args.command == "ensure-indexes":
        ensure_indexes(db)
        print("✅ Indexes created")
        return 0

    services = build_services(db)
    try:
        if args.command == "run":
            ensure_indexes(db)
            run_scheduler(services)
        elif args.command == "tick":
            run_tick(services)
        elif args.command == "sweep-health":
            sweep_health(services)
        elif args.command == "stats":
            show_stats(services, args.days)
        elif args.command == "credentials":
            credentials_command(services, args)
        elif args.command == "review":
            review_command(services, args)
        elif args.command == "blacklist":
            blacklist_command(services, args)
        elif args.command == "reopen":
            reopen_recipient(services, args.recipient_id)
        elif args.command == "bounce":
            record_bounce(services, args.recipient_id, args.detail)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except (InvalidReviewTransition, ValueError) as e:
        print(f"❌ {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
