from fastapi import APIRouter, Depends, Body

from ..dependencies.auth import get_current_user
from ..models.invitation import InvitationCreate, InvitationResend
from ..services import invitations as invitation_service
from ..services.email_service import invitation_link

# Project-scoped endpoints live under /projects, the rest under /invitations
router = APIRouter(prefix="/projects", tags=["invitations"])
invitation_router = APIRouter(prefix="/invitations", tags=["invitations"])


def _invitation_out(inv: dict, with_link: bool = True) -> dict:
    """Public shape of an invitation. The raw token only leaves as a link, and only while pending."""
    out = {
        "id": inv["invitation_id"],
        "project_id": inv["project_id"],
        "email": inv["email"],
        "role": inv["role"],
        "status": inv["status"],
        "created_at": inv.get("created_at"),
        "expires_at": inv.get("expires_at"),
        "accepted_at": inv.get("accepted_at"),
        "invited_by": inv.get("invited_by"),
    }
    if with_link:
        out["link"] = invitation_link(inv["token"]) if inv["status"] == invitation_service.PENDING else None
    return out


def _project_out(project: dict) -> dict:
    return {
        "id": project["project_id"],
        "name": project["name"],
        "color": project.get("color"),
    }


async def _deliver(invitation: dict) -> list[str]:
    warning = await invitation_service.deliver_invitation(invitation)
    return [warning] if warning else []


@router.post("/{project_id}/invitations", status_code=201)
async def create_invitation(project_id: str, body: InvitationCreate, user=Depends(get_current_user)):
    """Invite an email address into the project (owner only)."""
    invitation = await invitation_service.create_invitation(user["user_id"], project_id, body.email, body.role)
    warnings = await _deliver(invitation)
    return {"invitation": _invitation_out(invitation), "warnings": warnings}

@router.get("/{project_id}/invitations")
async def list_project_invitations(project_id: str, user=Depends(get_current_user)):
    """All invitations of a project, newest first (owner only)."""
    invitations = await invitation_service.list_project_invitations(user["user_id"], project_id)
    return {"invitations": [_invitation_out(inv) for inv in invitations]}


@invitation_router.get("/my-invitations")
async def my_invitations(user=Depends(get_current_user)):
    """Pending, unexpired invitations addressed to the caller's email."""
    invitations = await invitation_service.list_my_invitations(user["user_id"])
    return {
        "invitations": [
            {**_invitation_out(inv, with_link=False), "token": inv["token"], "project": _project_out(inv["project"])}
            for inv in invitations
        ]
    }

@invitation_router.get("/token/{token}")
async def get_invitation_by_token(token: str):
    """Invitation details for the accept page. No authentication required."""
    invitation, project = await invitation_service.get_invitation_for_token(token)
    return {
        "invitation": {
            **_invitation_out(invitation, with_link=False),
            "project_name": project["name"],
            "project_color": project.get("color"),
        }
    }

@invitation_router.post("/{token}/accept")
async def accept_invitation(token: str, user=Depends(get_current_user)):
    result = await invitation_service.accept_invitation(token, user["user_id"])
    return {
        "message": "Invitation accepted successfully",
        "project": _project_out(result["project"]),
        "member": {"user_id": user["user_id"], "role": result["membership"]["role"]},
    }

@invitation_router.delete("/{invitation_id}")
async def revoke_invitation(invitation_id: str, user=Depends(get_current_user)):
    """Revoke a pending invitation (owner only)."""
    invitation = await invitation_service.revoke_invitation(user["user_id"], invitation_id)
    return {"message": "Invitation revoked successfully", "invitation": _invitation_out(invitation)}

@invitation_router.post("/{invitation_id}/resend")
async def resend_invitation(
    invitation_id: str,
    body: InvitationResend | None = Body(default=None),
    user=Depends(get_current_user),
):
    """Refresh the expiry window and re-send the email (owner only)."""
    email = body.email if body else None
    invitation = await invitation_service.resend_invitation(user["user_id"], invitation_id, email=email)
    warnings = await _deliver(invitation)
    return {
        "message": "Invitation resent successfully",
        "invitation": _invitation_out(invitation),
        "warnings": warnings,
    }
