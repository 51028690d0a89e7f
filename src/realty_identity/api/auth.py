"""
realty_identity/api/auth.py — Authentication, registration and verification endpoints.

All routes live under ``/api/v1/auth``. Each one applies its rate-limit class
per caller IP before the service runs; routes naming an account also count
that email or phone on its own. Errors are rendered by the handlers in ``main``.
"""

from fastapi import APIRouter, Depends, Request, status

from realty_identity.api.responses import ok
from realty_identity.db.repositories import approval_repo, identity_repo
from realty_identity.dependencies import (
    ServiceContainer,
    client_context,
    get_container,
    get_current_identity,
)
from realty_identity.models.audit import ClientContext
from realty_identity.models.user import (
    ChangePasswordRequest,
    EmailRequest,
    EmailTokenRequest,
    LoginRequest,
    PhoneCodeRequest,
    PhoneRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserRead,
)
from realty_identity.services.rate_limiter import limit_subject, rate_limit

router = APIRouter(prefix="/auth", tags=["auth"])


async def _user_view(identity: dict) -> UserRead:
    return UserRead.from_row(identity, await approval_repo.get_latest_approval(identity["id"]))


# ═══════════════════════════════════════════════════════════════════════════
# REGISTRATION
# ═══════════════════════════════════════════════════════════════════════════


@router.post(
    "/register",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("auth"))],
    summary="Register a user or an agent",
)
async def register(
    body: RegisterRequest,
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    result = await container.registration.register(body, client)
    message = (
        "Agent registration submitted for approval. Please verify your email and phone."
        if body.role == "agent"
        else "Registration successful. Please verify your email and phone."
    )
    return ok(message, {
        "user": result.user,
        "notifications": result.notifications,
        "nextSteps": result.next_steps,
    })


@router.post(
    "/check-email",
    dependencies=[Depends(rate_limit("auth"))],
    summary="Whether an email address is still available",
)
async def check_email(body: EmailRequest):
    taken = await identity_repo.email_exists(body.email)
    return ok(data={"available": not taken})


# ═══════════════════════════════════════════════════════════════════════════
# LOGIN & SESSIONS
# ═══════════════════════════════════════════════════════════════════════════


@router.post("/login", dependencies=[Depends(rate_limit("auth"))], summary="Email + password → token pair")
async def login(
    body: LoginRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    limit_subject(request, "auth", body.email)
    result = await container.login.login(body.email, body.password, client)
    return ok("Login successful", {
        "user": result.user,
        "tokens": result.tokens,
        "advisories": result.advisories,
    })


@router.post("/refresh", dependencies=[Depends(rate_limit("auth"))], summary="Refresh token → new token pair")
async def refresh(
    body: RefreshRequest,
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    tokens = await container.sessions.refresh(body.refresh_token, client)
    return ok("Token refreshed successfully", {"tokens": tokens})


@router.post("/logout", summary="Log out")
async def logout(
    identity: dict = Depends(get_current_identity),
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    await container.sessions.logout(identity, client)
    return ok("Logged out successfully")


@router.get("/me", summary="Current identity")
async def me(identity: dict = Depends(get_current_identity)):
    return ok(data={"user": await _user_view(identity)})


@router.post(
    "/change-password",
    dependencies=[Depends(rate_limit("password-change"))],
    summary="Change the password of the current identity",
)
async def change_password(
    body: ChangePasswordRequest,
    identity: dict = Depends(get_current_identity),
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    tokens = await container.sessions.change_password(
        identity, body.current_password, body.new_password, client
    )
    return ok("Password changed successfully", {"tokens": tokens})


# ═══════════════════════════════════════════════════════════════════════════
# VERIFICATION
# ═══════════════════════════════════════════════════════════════════════════


@router.post("/verify-email", dependencies=[Depends(rate_limit("auth"))], summary="Redeem an email token")
async def verify_email(
    body: EmailTokenRequest,
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    user = await container.verification.verify_email(body.token, client)
    return ok("Email verified successfully", {"user": user})


@router.post(
    "/resend-email-verification",
    dependencies=[Depends(rate_limit("verify"))],
    summary="Send a fresh email verification token",
)
async def resend_email_verification(
    body: EmailRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    limit_subject(request, "verify", body.email)
    report = await container.verification.resend_email_verification(body.email, client)
    return ok("Verification email sent successfully", {"notification": report})


@router.post("/verify-phone", dependencies=[Depends(rate_limit("auth"))], summary="Redeem a phone code")
async def verify_phone(
    body: PhoneCodeRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    limit_subject(request, "auth", body.phone)
    user = await container.verification.verify_phone(body.phone, body.code, client)
    return ok("Phone verified successfully", {"user": user})


@router.post(
    "/resend-phone-verification",
    dependencies=[Depends(rate_limit("verify"))],
    summary="Send a fresh phone verification code",
)
async def resend_phone_verification(
    body: PhoneRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    limit_subject(request, "verify", body.phone)
    report = await container.verification.resend_phone_verification(body.phone, client)
    return ok("Verification SMS sent successfully", {"notification": report})


# ═══════════════════════════════════════════════════════════════════════════
# PASSWORD RESET
# ═══════════════════════════════════════════════════════════════════════════


@router.post(
    "/forgot-password",
    dependencies=[Depends(rate_limit("password-change"))],
    summary="Request a password reset link",
)
async def forgot_password(
    body: EmailRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    limit_subject(request, "password-change", body.email)
    message = await container.reset.request_reset(body.email, client)
    return ok(message)


@router.post(
    "/reset-password",
    dependencies=[Depends(rate_limit("password-change"))],
    summary="Set a new password with a reset token",
)
async def reset_password(
    body: ResetPasswordRequest,
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    await container.reset.confirm_reset(body.token, body.password, body.confirm_password, client)
    return ok("Password reset successfully")
