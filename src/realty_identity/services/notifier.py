"""
realty_identity/services/notifier.py — Verification and reset message dispatch.

``Notifier`` is the outbound seam for email and SMS. ``deliver()`` runs one
send under a deadline and turns the outcome into a ``DeliveryReport``; a
failure or timeout is recorded, never raised to the caller.

Implementations:
    • ``LoggingNotifier`` (development, tests) — writes messages to the log
    • ``realty_identity.adapters.notify_gateway.HttpNotifier`` — HTTP gateway
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Protocol

from realty_identity.exceptions import TransportError
from realty_identity.models.user import DeliveryReport

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send_email(self, to: str, subject: str, body: str) -> None: ...

    async def send_sms(self, to: str, body: str) -> None: ...


@dataclass(frozen=True)
class EmailMessage:
    subject: str
    body: str


# ═══════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═══════════════════════════════════════════════════════════════════════════


def verification_email(sender: str, base_url: str, name: str, token: str) -> EmailMessage:
    link = f"{base_url.rstrip('/')}/verify-email?token={token}"
    return EmailMessage(
        subject=f"Verify Your Email Address - {sender}",
        body=(
            f"Hello {name},\n\n"
            f"Please verify your email address by opening the link below:\n{link}\n\n"
            "If you didn't create an account, please ignore this email.\n"
        ),
    )


def verification_sms(sender: str, code: str) -> str:
    return f"Your verification code for {sender} is {code}. Do not share it with anyone."


def password_reset_email(
    sender: str, base_url: str, name: str, token: str, ttl_minutes: int
) -> EmailMessage:
    link = f"{base_url.rstrip('/')}/reset-password?token={token}"
    return EmailMessage(
        subject=f"Password Reset Request - {sender}",
        body=(
            f"Hello {name},\n\n"
            f"A password reset was requested for your account. Open the link below "
            f"within {ttl_minutes} minutes to choose a new password:\n{link}\n\n"
            "If you didn't request a reset, you can ignore this email; "
            "your password stays unchanged.\n"
        ),
    )


def agent_approved_email(sender: str, name: str) -> EmailMessage:
    return EmailMessage(
        subject=f"Welcome to {sender} - Agent Account Approved",
        body=(
            f"Hello {name},\n\n"
            "Your agent account has been approved. Once your email and phone are "
            "verified you can manage listings and enquiries.\n"
        ),
    )


def agent_account_created_email(
    sender: str, base_url: str, name: str, email: str, temp_password: str, token: str
) -> EmailMessage:
    link = f"{base_url.rstrip('/')}/verify-email?token={token}"
    return EmailMessage(
        subject=f"Your {sender} Agent Account",
        body=(
            f"Hello {name},\n\n"
            f"An administrator created an agent account for you.\n"
            f"Login: {email}\nTemporary password: {temp_password}\n\n"
            f"Verify your email address here:\n{link}\n\n"
            "Change the temporary password after your first login.\n"
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════
# DELIVERY
# ═══════════════════════════════════════════════════════════════════════════


async def deliver(channel: str, send: Awaitable[None], timeout: float) -> DeliveryReport:
    """Awaits ``send`` for at most ``timeout`` seconds and reports the outcome."""
    try:
        await asyncio.wait_for(send, timeout=timeout)
        return DeliveryReport(sent=True)
    except asyncio.TimeoutError:
        logger.warning("%s delivery timed out after %.1fs", channel, timeout)
        return DeliveryReport(sent=False, error=f"{channel} delivery timed out")
    except TransportError as exc:
        logger.warning("%s delivery failed: %s", channel, exc.message)
        return DeliveryReport(sent=False, error=exc.message)
    except Exception as exc:
        logger.warning("%s delivery failed: %s", channel, exc)
        return DeliveryReport(sent=False, error=str(exc) or type(exc).__name__)


class LoggingNotifier:
    """
    Writes messages to the log instead of sending them.

    Message bodies carry verification secrets, so they are logged only when
    ``reveal_secrets`` is set (development).
    """

    def __init__(self, reveal_secrets: bool = False):
        self.reveal_secrets = reveal_secrets

    async def send_email(self, to: str, subject: str, body: str) -> None:
        if self.reveal_secrets:
            logger.info("EMAIL to %s: %s\n%s", to, subject, body)
        else:
            logger.info("EMAIL to %s: %s", to, subject)

    async def send_sms(self, to: str, body: str) -> None:
        if self.reveal_secrets:
            logger.info("SMS to %s: %s", to, body)
        else:
            logger.info("SMS to %s queued", to)
