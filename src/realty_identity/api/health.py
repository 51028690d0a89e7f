"""
realty_identity/api/health.py — Health check of the identity service.

GET /api/v1/health — reports whether the identity store answers.
"""

from fastapi import APIRouter, Request

from realty_identity.database import check_connection

router = APIRouter(tags=["health"])


@router.get("/health", summary="Health check of the identity service")
async def health(request: Request):
    """In memory mode the store is always available."""
    settings = request.app.state.container.settings
    if getattr(request.app.state, "memory_store", False):
        return {"status": "healthy", "store": "memory", "service": "identity"}
    db_ok = await check_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "store": settings.identity_store,
        "database": "connected" if db_ok else "disconnected",
        "service": "identity",
    }
