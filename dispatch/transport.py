"""
SMTP transport — delivers one message with one credential via aiosmtplib.

Fresh connection per send. Never raises for delivery problems: the result
dict says what happened and whether the failure is permanent (the address
itself was rejected) or transient (network, timeout, auth, 4xx).
"""

import asyncio
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Dict, Optional

import aiosmtplib

import config

logger = logging.getLogger("outreach.transport")

# Reply codes that mean "this mailbox does not exist / is not accepted"
PERMANENT_CODES = {550, 551, 553}
IMPLICIT_TLS_PORT = 465


def text_to_html(text: str) -> str:
    """Convert a plain-text body to minimal HTML for the alternative part."""
    html = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    html = html.replace("\n\n", "</p><p>").replace("\n", "<br>")
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; font-size: 14px; line-height: 1.6; color: #333; }}
        p {{ margin: 0 0 1em 0; }}
    </style>
</head>
<body>
    <p>{html}</p>
</body>
</html>"""


def is_permanent_rejection(code: Optional[int], message: str = "") -> bool:
    if code in PERMANENT_CODES:
        return True
    return "5.1." in (message or "")


def build_message(credential: Dict, to_email: str, to_name: str, subject: str, body: str):
    from_email = credential.get("from_address") or credential["username"]
    msg = MIMEMultipart("alternative")
    msg.attach(MIMEText(body, "plain"))
    msg.attach(MIMEText(text_to_html(body), "html"))

    domain = from_email.split("@")[1] if "@" in from_email else "localhost"
    msg["Message-ID"] = make_msgid(domain=domain)
    msg["Subject"] = subject
    msg["From"] = formataddr((credential.get("from_name") or "", from_email))
    msg["To"] = formataddr((to_name, to_email)) if to_name else to_email
    msg["Reply-To"] = from_email
    return msg


class SmtpTransport:

    def __init__(self, timeout: int = None):
        self.timeout = timeout or config.SEND_TIMEOUT_SECONDS

    async def send(
        self,
        credential: Dict,
        to_email: str,
        to_name: str = None,
        subject: str = "",
        body: str = "",
    ) -> dict:
        """
        Returns {"success", "message_id", "error", "error_code", "permanent"}.
        """
        from_email = credential.get("from_address") or credential["username"]
        msg = build_message(credential, to_email, to_name, subject, body)
        message_id = msg["Message-ID"]

        port = int(credential.get("port") or 587)
        implicit_tls = port == IMPLICIT_TLS_PORT
        try:
            smtp = aiosmtplib.SMTP(
                hostname=credential["host"],
                port=port,
                timeout=self.timeout,
                use_tls=implicit_tls and credential.get("use_tls", True),
                start_tls=(not implicit_tls) and credential.get("use_tls", True),
            )
            logger.debug(f"Connecting to {credential['host']}:{port} as {credential['username']}")
            await smtp.connect()
            await smtp.login(credential["username"], credential["password"])
            await smtp.sendmail(from_email, [to_email], msg.as_string())
            await smtp.quit()

            logger.info(
                "smtp_transmitted",
                extra={"to": to_email, "from": from_email, "message_id": message_id[:40]},
            )
            return {
                "success": True,
                "message_id": message_id,
                "error": None,
                "error_code": None,
                "permanent": False,
            }

        except aiosmtplib.SMTPRecipientsRefused as e:
            refused = e.recipients[0] if e.recipients else None
            code = getattr(refused, "code", None)
            detail = getattr(refused, "message", "") or str(e)
            logger.warning(
                "smtp_recipient_refused",
                extra={"to": to_email, "from": from_email, "error_code": code, "error": detail[:200]},
            )
            return {
                "success": False,
                "message_id": None,
                "error": f"Recipient {to_email} refused: {detail}",
                "error_code": code,
                # the server named this address; 4xx here is still transient
                "permanent": code is None or code >= 500,
            }

        except aiosmtplib.SMTPException as e:
            error_code = getattr(e, "code", None)
            detail = getattr(e, "message", "") or str(e)
            logger.error(
                "smtp_error",
                extra={"to": to_email, "from": from_email, "error_code": error_code, "error": str(e)[:200]},
            )
            return {
                "success": False,
                "message_id": None,
                "error": f"SMTP error sending to {to_email}: {e}",
                "error_code": error_code,
                # a refused sender is the credential's problem, not the recipient's
                "permanent": (
                    not isinstance(e, aiosmtplib.SMTPSenderRefused)
                    and is_permanent_rejection(error_code, detail)
                ),
            }

        except (asyncio.TimeoutError, OSError) as e:
            return {
                "success": False,
                "message_id": None,
                "error": f"Connection timeout to {to_email}: {e}",
                "error_code": None,
                "permanent": False,
            }
