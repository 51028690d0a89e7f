"""
realty_identity/api/responses.py — Response envelope of the portal API.

Success: ``{"success": true, "message": ..., "data": {...}}``
Failure: ``{"success": false, "error": <code>, "message": ..., "details": {...}, "retryAfter": ...}``
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def ok(message: str | None = None, data: Any = None) -> dict:
    body: dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = _plain(data)
    return body


def failure(
    error: str,
    message: str,
    details: dict | None = None,
    retry_after: str | None = None,
) -> dict:
    body: dict[str, Any] = {"success": False, "error": error, "message": message}
    if details:
        body["details"] = _plain(details)
    if retry_after is not None:
        body["retryAfter"] = retry_after
    return body
