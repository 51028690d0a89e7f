"""
realty_identity/events.py — NATS event publisher.

Domain events of the identity service:
    • ``identity.user.registered`` — a user or agent registered
    • ``identity.user.verified``   — an email or phone channel was verified
    • ``identity.agent.approved``  — an agent registration was approved

Listings and enquiry services subscribe to these to unlock agent features.

Publishing is gated by ``nats_enabled``. If NATS is unreachable the event
is skipped with a warning; the business operation is never affected.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import nats
from nats.aio.client import Client as NATSClient

from realty_identity.config import get_settings

logger = logging.getLogger(__name__)

# ── Singleton NATS connection ─────────────────────────────────────────────

_nc: NATSClient | None = None


async def connect() -> NATSClient | None:
    """Connects to NATS unless disabled or already connected."""
    global _nc
    settings = get_settings()
    if not settings.nats_enabled:
        return None
    if _nc is not None and _nc.is_connected:
        return _nc
    try:
        _nc = await nats.connect(settings.nats_url)
        logger.info("NATS publisher connected: %s", settings.nats_url)
        return _nc
    except Exception as exc:
        logger.warning("NATS connect failed (events will be skipped): %s", exc)
        _nc = None
        return None


async def disconnect() -> None:
    global _nc
    if _nc and _nc.is_connected:
        await _nc.drain()
        logger.info("NATS publisher disconnected")
    _nc = None


# ── Publishing ────────────────────────────────────────────────────────────

async def publish(subject: str, data: dict[str, Any]) -> None:
    """
    Publishes a JSON event.

    Args:
        subject: NATS subject (e.g. ``identity.user.registered``).
        data: Payload, serialized to JSON.
    """
    nc = await connect()
    if nc is None:
        logger.debug("NATS unavailable, skipping event %s", subject)
        return
    try:
        payload = json.dumps(data, default=str).encode("utf-8")
        await nc.publish(subject, payload)
        logger.info("NATS event published: %s", subject)
    except Exception as exc:
        logger.warning("NATS publish failed for %s: %s", subject, exc)


# ── Identity domain helpers ───────────────────────────────────────────────

async def emit_user_registered(user_id: int, email: str, role: str) -> None:
    await publish("identity.user.registered", {
        "event": "user.registered",
        "user_id": user_id,
        "email": email,
        "role": role,
    })


async def emit_user_verified(user_id: int, channel: str, status: str) -> None:
    await publish("identity.user.verified", {
        "event": "user.verified",
        "user_id": user_id,
        "channel": channel,
        "status": status,
    })


async def emit_agent_approved(user_id: int, approval_id: int, reviewer_id: int) -> None:
    await publish("identity.agent.approved", {
        "event": "agent.approved",
        "user_id": user_id,
        "approval_id": approval_id,
        "reviewer_id": reviewer_id,
    })
