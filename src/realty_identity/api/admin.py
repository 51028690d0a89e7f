"""
realty_identity/api/admin.py — Administrative endpoints (admin role).

    POST   /admin/agents                          pre-approved agent account
    GET    /admin/approvals                       pending agent approvals
    POST   /admin/approvals/{approval_id}/decision approve / reject
    GET    /admin/identities/{identity_id}        identity view
    POST   /admin/identities/{identity_id}/force-logout
    POST   /admin/identities/{identity_id}/suspend
    POST   /admin/identities/{identity_id}/reinstate
    POST   /admin/identities/{identity_id}/send-verification-email
    POST   /admin/identities/{identity_id}/send-verification-sms
    POST   /admin/identities/{identity_id}/reset-verification
    DELETE /admin/identities/{identity_id}        soft delete
"""

from fastapi import APIRouter, Depends, Query, status

from realty_identity.api.responses import ok
from realty_identity.dependencies import ServiceContainer, client_context, get_container
from realty_identity.models.approval import ApprovalDecisionRequest
from realty_identity.models.audit import ClientContext
from realty_identity.models.enums import Role
from realty_identity.models.user import AgentCreateRequest, VerificationResetRequest
from realty_identity.services.rate_limiter import rate_limit
from realty_identity.services.rbac import require_role

router = APIRouter(prefix="/admin", tags=["admin"])

_admin = require_role(Role.ADMIN)


@router.post(
    "/agents",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("admin-create"))],
    summary="Create a pre-approved agent account",
)
async def create_agent(
    body: AgentCreateRequest,
    admin: dict = Depends(_admin),
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    result = await container.registration.create_agent(body, admin_id=admin["id"], client=client)
    return ok("Agent account created successfully", {
        "user": result.user,
        "notifications": result.notifications,
        "nextSteps": result.next_steps,
    })


@router.get("/approvals", summary="Pending agent approvals, oldest first")
async def list_approvals(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    admin: dict = Depends(_admin),
    container: ServiceContainer = Depends(get_container),
):
    approvals = await container.approvals.list_pending(limit=limit, offset=offset)
    return ok(data={"approvals": approvals, "limit": limit, "offset": offset})


@router.post("/approvals/{approval_id}/decision", summary="Approve or reject an agent")
async def decide_approval(
    approval_id: int,
    body: ApprovalDecisionRequest,
    admin: dict = Depends(_admin),
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    approval = await container.approvals.decide(
        approval_id, body.decision, reviewer_id=admin["id"], notes=body.notes, client=client
    )
    return ok(f"Approval {approval.status.value}", {"approval": approval})


@router.get("/identities/{identity_id}", summary="Identity by id")
async def get_identity(
    identity_id: int,
    admin: dict = Depends(_admin),
    container: ServiceContainer = Depends(get_container),
):
    return ok(data={"user": await container.approvals.get_identity(identity_id)})


@router.post("/identities/{identity_id}/force-logout", summary="Revoke every session of an identity")
async def force_logout(
    identity_id: int,
    admin: dict = Depends(_admin),
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    version = await container.sessions.force_logout_all(identity_id, actor_id=admin["id"], client=client)
    return ok("All sessions revoked", {"tokenVersion": version})


@router.post("/identities/{identity_id}/suspend", summary="Suspend an identity")
async def suspend(
    identity_id: int,
    admin: dict = Depends(_admin),
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    user = await container.approvals.suspend(identity_id, actor_id=admin["id"], client=client)
    return ok("Identity suspended", {"user": user})


@router.post("/identities/{identity_id}/reinstate", summary="Lift a suspension")
async def reinstate(
    identity_id: int,
    admin: dict = Depends(_admin),
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    user = await container.approvals.reinstate(identity_id, actor_id=admin["id"], client=client)
    return ok("Identity reinstated", {"user": user})


@router.delete("/identities/{identity_id}", summary="Delete an identity")
async def delete_identity(
    identity_id: int,
    admin: dict = Depends(_admin),
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    await container.approvals.delete(identity_id, actor_id=admin["id"], client=client)
    return ok("Identity deleted")


@router.post(
    "/identities/{identity_id}/send-verification-email",
    dependencies=[Depends(rate_limit("admin-action"))],
    summary="Send a fresh email verification token",
)
async def send_verification_email(
    identity_id: int,
    admin: dict = Depends(_admin),
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    report = await container.verification.send_email_verification_for(
        identity_id, actor_id=admin["id"], client=client
    )
    return ok("Verification email sent successfully", {"notification": report})


@router.post(
    "/identities/{identity_id}/send-verification-sms",
    dependencies=[Depends(rate_limit("admin-action"))],
    summary="Send a fresh phone verification code",
)
async def send_verification_sms(
    identity_id: int,
    admin: dict = Depends(_admin),
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    report = await container.verification.send_phone_verification_for(
        identity_id, actor_id=admin["id"], client=client
    )
    return ok("Verification SMS sent successfully", {"notification": report})


@router.post(
    "/identities/{identity_id}/reset-verification",
    dependencies=[Depends(rate_limit("admin-action"))],
    summary="Mark email and/or phone unverified and send fresh secrets",
)
async def reset_verification(
    identity_id: int,
    body: VerificationResetRequest | None = None,
    admin: dict = Depends(_admin),
    container: ServiceContainer = Depends(get_container),
    client: ClientContext = Depends(client_context),
):
    body = body or VerificationResetRequest()
    user, notifications = await container.verification.reset_verification(
        identity_id,
        actor_id=admin["id"],
        reset_email=body.reset_email,
        reset_phone=body.reset_phone,
        client=client,
    )
    return ok("Verification reset successfully", {"user": user, "notifications": notifications})
