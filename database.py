from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from typing import Optional

import config

_client: Optional[MongoClient] = None

# Collection names
CREDENTIALS = "credentials"
SEND_LEDGER = "send_ledger"
REVIEW_QUEUE = "review_queue"
BLACKLIST = "blacklist"
RECIPIENTS = "recipients"
SITES = "sites"
TEMPLATES = "templates"
HEARTBEAT = "heartbeat"


def get_db() -> Database:
    """Return the configured database, connecting on first use."""
    global _client
    if _client is None:
        _client = MongoClient(config.DATABASE_URL)
    return _client.get_database()


def ensure_indexes(db: Database = None):
    """Create the indexes the dispatch stores rely on. Safe to run repeatedly."""
    db = db if db is not None else get_db()

    db[CREDENTIALS].create_index([("active", ASCENDING), ("sent_today", ASCENDING)])

    db[SEND_LEDGER].create_index([("recipient_id", ASCENDING), ("status", ASCENDING), ("sent_at", DESCENDING)])
    db[SEND_LEDGER].create_index([("site_id", ASCENDING), ("status", ASCENDING), ("sent_at", DESCENDING)])
    db[SEND_LEDGER].create_index([("recipient_email", ASCENDING), ("sent_at", DESCENDING)])
    db[SEND_LEDGER].create_index([("credential_id", ASCENDING), ("sent_at", DESCENDING)])

    # At most one pending review item per recipient/template pair
    db[REVIEW_QUEUE].create_index(
        [("recipient_id", ASCENDING), ("template_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"status": "pending"},
        name="one_pending_per_recipient_template",
    )
    db[REVIEW_QUEUE].create_index([("status", ASCENDING), ("priority", DESCENDING), ("created_at", ASCENDING)])

    db[BLACKLIST].create_index([("type", ASCENDING), ("value", ASCENDING)], unique=True)

    db[RECIPIENTS].create_index([("state", ASCENDING), ("priority", DESCENDING)])
    db[RECIPIENTS].create_index("site_id")


def ping(db: Database = None):
    db = db if db is not None else get_db()
    db.command("ping")
