"""
realty_identity/services/audit_logger.py — Audit trail of the identity domain.

Events (``event_type``) emitted by the services:
    • user_registration, user_registration_failed
    • email_verified, phone_verified
    • login, login_failed, logout, token_refresh
    • password_reset_request, password_reset, password_change
    • agent_approve, agent_reject, forced_logout, user_suspend,
      user_reinstate, user_delete
    • request_failed (unexpected errors, severity derived from the status)

Sinks:
    • ``IdentityAuditLogger`` — PostgreSQL ``audit_log`` with an in-memory
      buffer fallback, plus NATS publication on ``identity.audit.<event_type>``
    • ``MemoryAuditSink`` — keeps events in a list (memory mode, tests)

Emission happens after the primary operation committed; ``record_event``
never lets a sink failure reach the caller.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from realty_identity.models.audit import AuditEvent, ClientContext, severity_for_event
from realty_identity.models.enums import Severity

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    async def emit(self, event: AuditEvent) -> None: ...


class IdentityAuditLogger:
    """
    Audit sink of the identity service.

    Writes to ``audit_log``; when the write fails the record is kept in a
    bounded buffer and retried by ``flush_buffer()``. NATS publication is
    best-effort.
    """

    def __init__(self, max_buffer_size: int = 10000, publish_nats: bool = True) -> None:
        self._buffer: list[AuditEvent] = []
        self._max_buffer = max_buffer_size
        self._publish_nats_enabled = publish_nats

    async def emit(self, event: AuditEvent) -> None:
        try:
            await self._write_to_db(event)
        except Exception as e:
            logger.warning("Identity audit DB write failed, buffering: %s", e)
            self._write_to_buffer(event)

        if self._publish_nats_enabled:
            try:
                await self._publish_nats(event)
            except Exception as e:
                logger.debug("Identity audit NATS publish failed: %s", e)

    async def _write_to_db(self, event: AuditEvent) -> None:
        from realty_identity.database import get_pool

        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO audit_log (event_type, user_id, ip, user_agent, severity, details, created_at)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
                """,
                event.event_type,
                event.user_id,
                event.ip,
                event.user_agent,
                event.severity.value,
                json.dumps(event.details, default=str),
                event.timestamp,
            )

    async def _publish_nats(self, event: AuditEvent) -> None:
        from realty_identity.events import publish

        await publish(f"identity.audit.{event.event_type}", event.model_dump(mode="json"))

    def _write_to_buffer(self, event: AuditEvent) -> None:
        if len(self._buffer) >= self._max_buffer:
            self._buffer.pop(0)
        self._buffer.append(event)

    async def flush_buffer(self) -> int:
        """Retries buffered events against the database; returns how many were written."""
        if not self._buffer:
            return 0
        flushed = 0
        remaining: list[AuditEvent] = []
        for event in self._buffer:
            try:
                await self._write_to_db(event)
                flushed += 1
            except Exception:
                remaining.append(event)
        self._buffer = remaining
        if flushed:
            logger.info("Flushed %d identity audit records from buffer", flushed)
        return flushed

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)


class MemoryAuditSink:
    """Keeps emitted events in memory."""

    def __init__(self, max_events: int = 10000) -> None:
        self.events: list[AuditEvent] = []
        self._max_events = max_events

    async def emit(self, event: AuditEvent) -> None:
        if len(self.events) >= self._max_events:
            self.events.pop(0)
        self.events.append(event)

    def of_type(self, event_type: str) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


async def record_event(
    sink: AuditSink,
    event_type: str,
    *,
    user_id: int | None = None,
    client: ClientContext | None = None,
    details: dict[str, Any] | None = None,
    severity: Severity | None = None,
) -> None:
    """Builds an ``AuditEvent`` and hands it to ``sink``; failures are only logged."""
    client = client or ClientContext()
    event = AuditEvent(
        event_type=event_type,
        user_id=user_id,
        ip=client.ip,
        user_agent=client.user_agent,
        severity=severity or severity_for_event(event_type),
        details=details or {},
    )
    try:
        await sink.emit(event)
    except Exception as e:
        logger.warning("Audit emission failed for %s: %s", event_type, e)
