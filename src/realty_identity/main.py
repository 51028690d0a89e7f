"""
═══════════════════════════════════════════════════════════════════════════════
Realty Identity — Application entry point
═══════════════════════════════════════════════════════════════════════════════

Application factory of the listings-portal identity service: registration,
verification, login/lockout, sessions, password reset and agent approval.

Startup (lifespan):
    1. Identity store: PostgreSQL pool + migrations, or the in-memory store
       (``identity_store=memory`` or PostgreSQL unreachable).
    2. NATS publisher.
    3. SIGHUP handler that reloads the signing key.
    4. Bootstrap admin account (when configured).
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from datetime import timedelta

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from realty_identity import __version__
from realty_identity.api.responses import failure
from realty_identity.config import IdentitySettings, get_settings
from realty_identity.database import close_pool, get_pool
from realty_identity.dependencies import ServiceContainer, build_container, client_context
from realty_identity.exceptions import IdentityError, RateLimitedError, ValidationError
from realty_identity.models.audit import severity_for_status
from realty_identity.services.audit_logger import record_event
from realty_identity.services.rate_limiter import humanize_seconds

from realty_identity.api.admin import router as admin_router
from realty_identity.api.agents import router as agents_router
from realty_identity.api.auth import router as auth_router
from realty_identity.api.health import router as health_router

# ═══════════════════════════════════════════════════════════════════════════════
# Logging
# ═══════════════════════════════════════════════════════════════════════════════
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


STATUS_BY_CODE: dict[str, int] = {
    "IDENTITY_VALIDATION_ERROR": 400,
    "IDENTITY_TOKEN_INVALID": 400,
    "IDENTITY_RESET_TOKEN_EXPIRED": 400,
    "IDENTITY_AUTH_ERROR": 401,
    "IDENTITY_TOKEN_EXPIRED": 401,
    "IDENTITY_TOKEN_REVOKED": 401,
    "IDENTITY_AUTHZ_ERROR": 403,
    "IDENTITY_NOT_FOUND": 404,
    "IDENTITY_CONFLICT": 409,
    "IDENTITY_ALREADY_VERIFIED": 409,
    "IDENTITY_LOCKED": 423,
    "IDENTITY_RATE_LIMITED": 429,
    "IDENTITY_INTERNAL_ERROR": 500,
}

_AUDITED_FAILURES = (401, 403, 429)


# ═══════════════════════════════════════════════════════════════════════════════
# SQL migrations
# ═══════════════════════════════════════════════════════════════════════════════

async def _apply_migrations(pool) -> None:
    """Applies the SQL files of ``realty_identity/db/migrations/`` once each."""
    from pathlib import Path

    migrations_dir = Path(__file__).parent / "db" / "migrations"
    sql_files = sorted(migrations_dir.glob("*.sql")) if migrations_dir.is_dir() else []
    if not sql_files:
        logger.info("No SQL migration files found, skipping")
        return

    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS _applied_migrations (
                filename TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        rows = await conn.fetch("SELECT filename FROM _applied_migrations")
        applied = {row["filename"] for row in rows}

        for sql_file in sql_files:
            if sql_file.name in applied:
                continue
            logger.info("Applying migration: %s", sql_file.name)
            async with conn.transaction():
                await conn.execute(sql_file.read_text(encoding="utf-8"))
                await conn.execute(
                    "INSERT INTO _applied_migrations (filename) VALUES ($1)", sql_file.name
                )
            logger.info("Migration applied: %s", sql_file.name)

    logger.info("Identity migrations up to date (%d files checked)", len(sql_files))


# ═══════════════════════════════════════════════════════════════════════════════
# Signing key reload
# ═══════════════════════════════════════════════════════════════════════════════

def reload_signing_key(container: ServiceContainer) -> None:
    """Re-reads settings; a changed JWT_SECRET_KEY becomes current, the old one stays valid for the grace window."""
    get_settings.cache_clear()
    fresh = get_settings()
    container.signer.rotate(fresh.jwt_secret_key, timedelta(seconds=fresh.jwt_key_grace_seconds))


def _install_reload_handler(container: ServiceContainer) -> None:
    try:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGHUP, reload_signing_key, container)
        logger.info("SIGHUP reloads the signing key")
    except (AttributeError, NotImplementedError, RuntimeError, ValueError) as e:
        logger.info("Signing key reload via SIGHUP unavailable: %s", e)


# ═══════════════════════════════════════════════════════════════════════════════
# Lifespan
# ═══════════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    container: ServiceContainer = app.state.container
    settings = container.settings
    logger.info("Realty Identity v%s starting (store=%s)", __version__, settings.identity_store)

    pool = None
    if settings.identity_store == "memory":
        from realty_identity.memory_store import activate_identity_memory_store
        activate_identity_memory_store()
        app.state.memory_store = True
    else:
        try:
            pool = await get_pool()
            logger.info("Identity database pool initialized")
        except Exception as e:
            logger.warning("Identity DB not available, activating memory store: %s", e)
            from realty_identity.memory_store import activate_identity_memory_store
            activate_identity_memory_store()
            app.state.memory_store = True

    if pool is not None:
        try:
            await _apply_migrations(pool)
        except Exception as e:
            logger.warning("Identity migration apply failed (non-fatal): %s", e)

    if settings.nats_enabled:
        from realty_identity.events import connect as nats_connect
        await nats_connect()

    _install_reload_handler(container)

    if settings.bootstrap_admin_email:
        try:
            await container.registration.ensure_admin(
                "Administrator",
                settings.bootstrap_admin_email,
                settings.bootstrap_admin_phone,
                settings.bootstrap_admin_password,
            )
        except ValidationError as e:
            logger.error("BOOTSTRAP_ADMIN_* settings rejected: %s %s", e.message, e.details)
            raise

    yield

    await container.reset.wait_for_pending()
    close_notifier = getattr(container.notifier, "close", None)
    if close_notifier is not None:
        await close_notifier()
    if settings.nats_enabled:
        from realty_identity.events import disconnect as nats_disconnect
        await nats_disconnect()
    if pool is not None:
        await close_pool()
    logger.info("Realty Identity stopped")


# ═══════════════════════════════════════════════════════════════════════════════
# Exception handlers
# ═══════════════════════════════════════════════════════════════════════════════

async def _audit_failure(request: Request, status_code: int, code: str) -> None:
    container: ServiceContainer | None = getattr(request.app.state, "container", None)
    if container is None:
        return
    await record_event(
        container.audit, "request_failed", client=client_context(request),
        severity=severity_for_status(status_code),
        details={"path": request.url.path, "status": status_code, "error": code},
    )


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(IdentityError)
    async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
        status_code = STATUS_BY_CODE.get(exc.code, 500)
        headers = {}
        retry_after = None
        if isinstance(exc, RateLimitedError):
            headers["Retry-After"] = str(exc.retry_after)
            retry_after = humanize_seconds(exc.retry_after)
        elif status_code == 401:
            headers["WWW-Authenticate"] = "Bearer"
        if status_code in _AUDITED_FAILURES or status_code >= 500:
            await _audit_failure(request, status_code, exc.code)
        return JSONResponse(
            status_code=status_code,
            content=failure(exc.code, exc.message, exc.details, retry_after),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=failure("IDENTITY_VALIDATION_ERROR", "Validation failed", {"errors": errors}),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        await _audit_failure(request, 500, "IDENTITY_INTERNAL_ERROR")
        return JSONResponse(
            status_code=500,
            content=failure("IDENTITY_INTERNAL_ERROR", "Internal server error"),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Application factory
# ═══════════════════════════════════════════════════════════════════════════════

def create_app(
    settings: IdentitySettings | None = None,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """Creates and configures the identity FastAPI application."""
    settings = settings or get_settings()
    _is_production = settings.app_env == "production"

    app = FastAPI(
        redirect_slashes=False,
        title="Realty Identity",
        description=(
            "Authentication, registration and verification service of the "
            "real-estate listings portal."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url=None if _is_production else "/docs",
        redoc_url=None if _is_production else "/redoc",
        openapi_url=None if _is_production else "/api/v1/openapi.json",
    )
    app.state.container = container or build_container(settings)
    app.state.memory_store = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
        expose_headers=["Retry-After"],
    )

    v1_router = APIRouter(prefix="/api/v1")
    v1_router.include_router(auth_router)
    v1_router.include_router(admin_router)
    v1_router.include_router(agents_router)
    v1_router.include_router(health_router)
    app.include_router(v1_router)

    _register_exception_handlers(app)

    @app.get("/")
    async def root():
        return {
            "name": "Realty Identity",
            "version": __version__,
            "api": {
                "v1": {
                    "health": "/api/v1/health",
                    "register": "/api/v1/auth/register",
                    "login": "/api/v1/auth/login",
                    "me": "/api/v1/auth/me",
                },
            },
        }

    return app


# ═══════════════════════════════════════════════════════════════════════════════
# Module-level singleton
# ═══════════════════════════════════════════════════════════════════════════════
app = create_app()


def main() -> None:
    """Runs the identity service under Uvicorn."""
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info("Starting identity server on %s:%s", settings.api_host, settings.api_port)
    uvicorn.run(
        "realty_identity.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
