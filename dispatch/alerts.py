"""
Alerting — webhook notifications (Slack, Discord, Telegram).

- Critical: configuration errors that stop dispatch, empty credential pool
- Warning: credentials auto-deactivated by the health sweep
- Info: daily summary

Configuration (config.py):
    ALERT_WEBHOOK_URL=https://hooks.slack.com/services/...
    ALERT_CHANNEL=slack  (or 'discord', 'telegram')
    DAILY_SUMMARY_ENABLED=true
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List

import aiohttp
import pytz

import config
from dispatch.clock import as_utc, utc_now

logger = logging.getLogger("outreach.alerts")


class AlertLevel:
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


async def send_alert(
    message: str,
    level: str = AlertLevel.INFO,
    title: str = None,
) -> bool:
    """
    Send an alert via the configured webhook.

    Returns True if the webhook accepted it. Never raises: a broken alert
    channel must not take dispatch down with it.
    """
    if not config.ALERT_WEBHOOK_URL:
        logger.debug(f"Alert skipped (no webhook): [{level}] {message[:80]}")
        return False

    emoji = {"critical": "🚨", "warning": "⚠️", "info": "ℹ️"}.get(level, "📢")
    heading = title or f"{emoji} Outreach Dispatch — {level.upper()}"
    channel = config.ALERT_CHANNEL

    if channel == "discord":
        payload = _build_discord_payload(heading, message, level)
    elif channel == "telegram":
        payload = _build_telegram_payload(heading, message)
    else:
        payload = _build_slack_payload(heading, message, level)

    url = config.ALERT_WEBHOOK_URL
    if channel == "telegram":
        url = f"https://api.telegram.org/bot{config.ALERT_WEBHOOK_URL}/sendMessage"

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                if resp.status in (200, 204):
                    logger.info(f"Alert sent: [{level}] {(title or message)[:60]}")
                    return True
                body = await resp.text()
                logger.error(f"Alert webhook returned {resp.status}: {body[:200]}")
                return False
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def _build_slack_payload(title: str, message: str, level: str) -> dict:
    color = {
        "critical": "#FF0000",
        "warning": "#FFA500",
        "info": "#36A64F",
    }.get(level, "#808080")

    return {
        "attachments": [
            {
                "color": color,
                "title": title,
                "text": message,
                "footer": "Outreach Dispatch",
                "ts": int(utc_now().timestamp()),
            }
        ]
    }


def _build_discord_payload(title: str, message: str, level: str) -> dict:
    color = {
        "critical": 0xFF0000,
        "warning": 0xFFA500,
        "info": 0x36A64F,
    }.get(level, 0x808080)

    return {
        "embeds": [
            {
                "title": title,
                "description": message,
                "color": color,
                "timestamp": utc_now().isoformat(),
            }
        ]
    }


def _build_telegram_payload(title: str, message: str) -> dict:
    return {
        "chat_id": config.TELEGRAM_CHAT_ID,
        "text": f"*{title}*\n\n{message}",
        "parse_mode": "Markdown",
    }


# ── Pre-built alerts ─────────────────────────────────────────────────


async def alert_configuration_error(error: Exception):
    await send_alert(
        message=(
            f"Dispatch tick refused to run: {error}\n"
            "No messages will be sent until this is fixed."
        ),
        level=AlertLevel.CRITICAL,
        title="🚨 Dispatch Configuration Error",
    )


async def alert_credentials_deactivated(deactivated: List[Dict]):
    if not deactivated:
        return
    lines = [f"• `{d.get('name')}`: {d.get('reason')}" for d in deactivated]
    await send_alert(
        message="Auto-deactivated by the health sweep:\n" + "\n".join(lines),
        level=AlertLevel.WARNING,
        title="⚠️ Credentials Deactivated",
    )


async def alert_pool_exhausted(active: int):
    await send_alert(
        message=(
            f"All {active} active credentials are at their daily limit.\n"
            "Remaining recipients wait for tomorrow's reset."
        ),
        level=AlertLevel.INFO,
        title="ℹ️ Daily Quota Used Up",
    )


def build_daily_summary(ledger, pool, review=None, now: datetime = None) -> str:
    """Text of the daily summary, from the ledger's last 24 hours and the pool status."""
    now = now or utc_now()
    local = as_utc(now).astimezone(pytz.timezone(config.TARGET_TIMEZONE))
    stats = ledger.get_statistics(since=now - timedelta(days=1))
    by_status = stats["by_status"]

    lines = [
        f"📅 Date: {local.strftime('%A, %B %d, %Y')}",
        "",
        "📊 **Sending Summary (last 24h)**",
        f"• Sent: {by_status.get('sent', 0) + by_status.get('delivered', 0)}",
        f"• Failed: {by_status.get('failed', 0)}",
        f"• Bounced: {by_status.get('bounced', 0)}",
    ]
    if stats["success_rate"] is not None:
        lines.append(f"• Success rate: {stats['success_rate']:.1%}")

    lines += ["", "📧 **Per-Credential**"]
    status = pool.get_all_status(now)
    for c in status:
        state = "active" if c["active"] else "inactive"
        lines.append(f"• {c['name']}: {c['sent_today']}/{c['daily_limit']} today ({state})")
    if not status:
        lines.append("• No credentials configured")

    if review is not None:
        rs = review.get_statistics()
        lines += [
            "",
            f"📝 Review queue: {rs['pending']} pending, {rs['awaiting_dispatch']} approved awaiting dispatch",
        ]
    return "\n".join(lines)


async def send_daily_summary(ledger, pool, review=None, now: datetime = None):
    """Generate and send the daily summary."""
    if not config.DAILY_SUMMARY_ENABLED:
        logger.debug("daily_summary_disabled")
        return False

    logger.info("daily_summary_generating")
    try:
        message = build_daily_summary(ledger, pool, review, now)
    except Exception as e:
        logger.error(f"Failed to generate daily summary: {e}", exc_info=True)
        return False
    return await send_alert(message, AlertLevel.INFO, "📋 Daily Dispatch Summary")
