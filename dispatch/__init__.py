"""
Outreach Dispatch — rate-limited, deduplicated sending over a pool of credentials.

Modules:
    orchestrator.py    — Dispatch tick: plan batch, asyncio worker queue, outcomes
    credential_pool.py — Least-used rotation, atomic quota reservation, health sweep
    rate_limiter.py    — Sending window and inter-send pacing
    duplicate_guard.py — Cooldown / site / domain / blacklist suppression
    ledger.py          — Append-only send records (source of truth)
    retry.py           — Backoff for transient failures, derived from the ledger
    review_queue.py    — Held-for-review messages (pending → approved | rejected)
    recipients.py      — Recipient and site reads, terminal-outcome writes
    blacklist.py       — Blocked addresses and domains
    renderer.py        — {{variable}} templates
    transport.py       — Async SMTP sender (aiosmtplib)
    alerts.py          — Webhook alerting (Slack/Telegram/Discord)
    scheduler.py       — AsyncIO event loop, periodic tasks, heartbeat
    clock.py           — UTC helpers
"""
