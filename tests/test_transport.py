"""
Unit tests for dispatch/transport.py

aiosmtplib.SMTP is replaced with an AsyncMock-backed fake; no network.
"""

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch
import sys
import os

import aiosmtplib

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dispatch.transport import SmtpTransport, build_message, is_permanent_rejection, text_to_html

CREDENTIAL = {
    "_id": "c1",
    "name": "primary",
    "host": "smtp.example.com",
    "port": 587,
    "username": "sender@example.com",
    "password": "secret",
    "from_address": "hello@example.com",
    "from_name": "Sam Sender",
}


def run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def fake_smtp(**errors):
    smtp = MagicMock()
    for step in ("connect", "login", "sendmail", "quit"):
        smtp_step = AsyncMock(side_effect=errors.get(step))
        setattr(smtp, step, smtp_step)
    return smtp


class TestHelpers(unittest.TestCase):

    def test_permanent_codes(self):
        self.assertTrue(is_permanent_rejection(550))
        self.assertTrue(is_permanent_rejection(553))
        self.assertTrue(is_permanent_rejection(None, "5.1.1 mailbox unavailable"))
        self.assertFalse(is_permanent_rejection(451, "try again later"))
        self.assertFalse(is_permanent_rejection(None))

    def test_text_to_html_escapes(self):
        html = text_to_html("a < b\n\nnext")
        self.assertIn("a &lt; b</p><p>next", html)

    def test_build_message_headers(self):
        msg = build_message(CREDENTIAL, "jane@acme.com", "Jane", "Hello", "Body")
        self.assertEqual(msg["Subject"], "Hello")
        self.assertEqual(msg["From"], "Sam Sender <hello@example.com>")
        self.assertEqual(msg["To"], "Jane <jane@acme.com>")
        self.assertEqual(msg["Reply-To"], "hello@example.com")
        self.assertTrue(msg["Message-ID"].endswith("@example.com>"))

    def test_build_message_falls_back_to_username(self):
        cred = dict(CREDENTIAL, from_address=None)
        msg = build_message(cred, "jane@acme.com", None, "Hello", "Body")
        self.assertIn("sender@example.com", msg["From"])
        self.assertEqual(msg["To"], "jane@acme.com")


class TestSmtpTransport(unittest.TestCase):

    def setUp(self):
        self.transport = SmtpTransport(timeout=5)

    def send(self, smtp, credential=CREDENTIAL):
        with patch("dispatch.transport.aiosmtplib.SMTP", return_value=smtp) as smtp_cls:
            result = run_async(self.transport.send(credential, "jane@acme.com", "Jane", "Hi", "Body"))
        return result, smtp_cls

    def test_success(self):
        smtp = fake_smtp()
        result, smtp_cls = self.send(smtp)
        self.assertTrue(result["success"])
        self.assertIsNotNone(result["message_id"])
        smtp.login.assert_awaited_once_with("sender@example.com", "secret")
        args = smtp.sendmail.await_args.args
        self.assertEqual(args[0], "hello@example.com")
        self.assertEqual(args[1], ["jane@acme.com"])
        kwargs = smtp_cls.call_args.kwargs
        self.assertTrue(kwargs["start_tls"])
        self.assertFalse(kwargs["use_tls"])
        self.assertEqual(kwargs["timeout"], 5)

    def test_implicit_tls_port(self):
        _, smtp_cls = self.send(fake_smtp(), dict(CREDENTIAL, port=465))
        kwargs = smtp_cls.call_args.kwargs
        self.assertTrue(kwargs["use_tls"])
        self.assertFalse(kwargs["start_tls"])

    def test_recipient_refused_is_permanent(self):
        refused = aiosmtplib.SMTPRecipientsRefused(
            [aiosmtplib.SMTPRecipientRefused(550, "5.1.1 user unknown", "jane@acme.com")]
        )
        result, _ = self.send(fake_smtp(sendmail=refused))
        self.assertFalse(result["success"])
        self.assertTrue(result["permanent"])
        self.assertEqual(result["error_code"], 550)
        self.assertIn("user unknown", result["error"])

    def test_recipient_greylisted_is_transient(self):
        refused = aiosmtplib.SMTPRecipientsRefused(
            [aiosmtplib.SMTPRecipientRefused(450, "greylisted, try later", "jane@acme.com")]
        )
        result, _ = self.send(fake_smtp(sendmail=refused))
        self.assertFalse(result["permanent"])
        self.assertEqual(result["error_code"], 450)

    def test_sender_refused_is_not_permanent(self):
        refused = aiosmtplib.SMTPSenderRefused(550, "sender not allowed", "hello@example.com")
        result, _ = self.send(fake_smtp(sendmail=refused))
        self.assertFalse(result["success"])
        self.assertFalse(result["permanent"])

    def test_auth_failure_is_transient(self):
        error = aiosmtplib.SMTPAuthenticationError(535, "bad credentials")
        result, _ = self.send(fake_smtp(login=error))
        self.assertFalse(result["success"])
        self.assertFalse(result["permanent"])
        self.assertEqual(result["error_code"], 535)

    def test_connection_error_is_transient(self):
        result, _ = self.send(fake_smtp(connect=ConnectionRefusedError("refused")))
        self.assertFalse(result["success"])
        self.assertFalse(result["permanent"])
        self.assertIn("Connection timeout", result["error"])

    def test_timeout_is_transient(self):
        result, _ = self.send(fake_smtp(connect=asyncio.TimeoutError()))
        self.assertFalse(result["permanent"])


if __name__ == "__main__":
    unittest.main()
