"""
Invitation lifecycle: create, resend, revoke, accept, expire.

States are pending -> {accepted, revoked, expired}; the three terminal states
never transition again. Expiry is evaluated lazily on every read, so a pending
record past ``expires_at`` is reported as expired whether or not the sweep has
flipped the stored status yet.

Status changes go through ``InvitationRepository.compare_and_set`` so
concurrent writers cannot both win a transition.
"""
from datetime import datetime, timedelta, timezone
import logging
import uuid

from fastapi.concurrency import run_in_threadpool

from ..core.errors import (
    AlreadyConsumed,
    ConsistencyViolation,
    EmailMismatch,
    Expired,
    InvalidState,
    NotFound,
    ValidationError,
)
from ..core.security import generate_invitation_token
from ..db.mongo import transaction
from ..db.repositories import invitations, memberships, projects, users
from .access import ensure_allowed, load_project_role
from .email_service import send_project_invitation_email
from .permissions import MEMBERSHIP_ROLES, OWNER, can_manage_members

logger = logging.getLogger(__name__)

# Fixed lifetime of an invitation link
INVITATION_TTL = timedelta(days=7)

PENDING = "pending"
ACCEPTED = "accepted"
REVOKED = "revoked"
EXPIRED = "expired"
CONSUMED = (ACCEPTED, REVOKED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # MongoDB hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_email(email: str | None) -> str:
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email address is required")
    return email


def validate_role(role: str | None) -> str:
    if role == OWNER:
        raise ValidationError("The owner role cannot be granted by invitation or membership; a project has exactly one owner")
    if role not in MEMBERSHIP_ROLES:
        raise ValidationError("Invalid role. Must be collaborator, member, or viewer")
    return role


def effective_status(invitation: dict, now: datetime | None = None) -> str:
    status = invitation["status"]
    if status == PENDING and (now or utcnow()) >= as_utc(invitation["expires_at"]):
        return EXPIRED
    return status


async def _mark_expired(invitation: dict) -> dict:
    """Persist a lazily-detected expiry. Losing the race to another writer is fine."""
    if invitation["status"] == PENDING:
        flipped = await invitations.compare_and_set(
            invitation["invitation_id"], {"status": PENDING}, {"status": EXPIRED}
        )
        if flipped:
            logger.info("Invitation %s expired", invitation["invitation_id"])
    return {**invitation, "status": EXPIRED}


async def _with_effective_status(invitation: dict, now: datetime) -> dict:
    if invitation["status"] == PENDING and effective_status(invitation, now) == EXPIRED:
        return await _mark_expired(invitation)
    return invitation


async def _ensure_not_in_project(project: dict, email: str):
    existing = await users.get_by_email(email)
    if not existing:
        return
    if existing["user_id"] == project["owner_id"]:
        raise ConsistencyViolation("This email belongs to the project owner")
    if await memberships.get(project["project_id"], existing["user_id"]):
        raise ConsistencyViolation("User is already a member of this project")


async def _supersede_pending(project_id: str, email: str, new_invitation_id: str, now: datetime):
    prior = await invitations.find_pending(project_id, email)
    if not prior:
        return
    if effective_status(prior, now) == EXPIRED:
        await _mark_expired(prior)
        return
    await invitations.compare_and_set(
        prior["invitation_id"],
        {"status": PENDING},
        {
            "status": REVOKED,
            "revoked_at": now,
            "revoked_reason": "superseded",
            "superseded_by": new_invitation_id,
        },
    )
    logger.info("Invitation %s superseded by %s", prior["invitation_id"], new_invitation_id)


async def _issue(project: dict, email: str, role: str, invited_by: str, now: datetime, **extra) -> dict:
    invitation_id = str(uuid.uuid4())
    await _supersede_pending(project["project_id"], email, invitation_id, now)
    doc = {
        "invitation_id": invitation_id,
        "project_id": project["project_id"],
        "email": email,
        "role": role,
        "token": generate_invitation_token(),
        "status": PENDING,
        "created_at": now,
        "expires_at": now + INVITATION_TTL,
        "accepted_at": None,
        "invited_by": invited_by,
        **extra,
    }
    # The partial unique index rejects a concurrent second pending row
    await invitations.create(doc)
    return doc


async def create_invitation(acting_user_id: str, project_id: str, email: str, role: str) -> dict:
    project, actor_role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_manage_members(actor_role), "You do not have permission to invite users to this project")

    role = validate_role(role)
    email = normalize_email(email)
    await _ensure_not_in_project(project, email)

    invitation = await _issue(project, email, role, acting_user_id, utcnow())
    logger.info("Invitation %s created for project %s (%s)", invitation["invitation_id"], project_id, role)
    return invitation


async def get_invitation_for_token(token: str) -> tuple[dict, dict]:
    """Public lookup behind the accept page. Only a pending, unexpired invitation is returned."""
    invitation = await invitations.get_by_token(token)
    if not invitation:
        raise NotFound("Invitation not found")
    project = await projects.get(invitation["project_id"])
    if not project:
        raise NotFound("Invitation not found")

    status = effective_status(invitation)
    if status == EXPIRED:
        await _mark_expired(invitation)
        raise Expired(
            "This invitation link has expired",
            project_name=project["name"],
            role=invitation["role"],
            status=EXPIRED,
        )
    if status in CONSUMED:
        raise AlreadyConsumed(status)
    return invitation, project


async def list_project_invitations(acting_user_id: str, project_id: str) -> list[dict]:
    _, actor_role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_manage_members(actor_role), "You do not have permission to view invitations")

    now = utcnow()
    return [await _with_effective_status(inv, now) for inv in await invitations.list_for_project(project_id)]


async def list_my_invitations(acting_user_id: str) -> list[dict]:
    """Pending, unexpired invitations addressed to the caller's account email."""
    user = await users.get(acting_user_id)
    if not user:
        raise NotFound("User not found")

    now = utcnow()
    result = []
    for inv in await invitations.list_pending_for_email(user["email"]):
        if effective_status(inv, now) == EXPIRED:
            await _mark_expired(inv)
            continue
        project = await projects.get(inv["project_id"])
        if project:
            result.append({**inv, "project": project})
    return result


async def accept_invitation(token: str, acting_user_id: str) -> dict:
    user = await users.get(acting_user_id)
    if not user:
        raise NotFound("User not found")

    invitation = await invitations.get_by_token(token)
    if not invitation:
        raise NotFound("Invitation not found")

    status = effective_status(invitation)
    if status in CONSUMED:
        raise AlreadyConsumed(status)
    if status == EXPIRED:
        await _mark_expired(invitation)
        raise Expired("This invitation link has expired", status=EXPIRED)

    if invitation["email"] != user["email"].strip().lower():
        raise EmailMismatch("This invitation was sent to a different email address")

    project = await projects.get(invitation["project_id"])
    if not project:
        raise NotFound("Project not found")
    if project["owner_id"] == acting_user_id:
        raise ConsistencyViolation("The project owner cannot accept an invitation to their own project")

    now = utcnow()
    invitation_id = invitation["invitation_id"]
    async with transaction() as session:
        # Only one caller can move this token out of pending, and only before expiry
        claimed = await invitations.compare_and_set(
            invitation_id,
            {"status": PENDING, "token": token, "expires_at": {"$gt": now}},
            {"status": ACCEPTED, "accepted_at": now, "accepted_by": acting_user_id, "membership_synced": False},
            session=session,
        )
        if claimed is None:
            current = await invitations.get(invitation_id)
            if current is None or current.get("token") != token:
                raise NotFound("Invitation not found")
            status = effective_status(current, now)
            if status == EXPIRED:
                await _mark_expired(current)
                raise Expired("This invitation link has expired", status=EXPIRED)
            raise AlreadyConsumed(status)

        try:
            membership, created = await memberships.upsert(
                invitation["project_id"], acting_user_id, invitation["role"], session=session
            )
        except Exception:
            if session is None:
                # No transaction to abort: hand the token back
                await invitations.compare_and_set(
                    invitation_id,
                    {"status": ACCEPTED, "accepted_by": acting_user_id},
                    {"status": PENDING, "accepted_at": None, "accepted_by": None, "membership_synced": None},
                )
            raise

        claimed = await invitations.compare_and_set(
            invitation_id, {"status": ACCEPTED}, {"membership_synced": True}, session=session
        ) or claimed

    logger.info(
        "Invitation %s accepted by %s (%s membership)",
        invitation_id, acting_user_id, "new" if created else "existing",
    )
    return {"invitation": claimed, "membership": membership, "project": project}


async def revoke_invitation(acting_user_id: str, invitation_id: str) -> dict:
    invitation = await invitations.get(invitation_id)
    if not invitation:
        raise NotFound("Invitation not found")
    _, actor_role = await load_project_role(acting_user_id, invitation["project_id"])
    ensure_allowed(can_manage_members(actor_role), "You do not have permission to revoke this invitation")

    status = effective_status(invitation)
    if status != PENDING:
        if status == EXPIRED:
            await _mark_expired(invitation)
        raise InvalidState(f"Can only revoke pending invitations (invitation is {status})", status=status)

    revoked = await invitations.compare_and_set(
        invitation_id,
        {"status": PENDING},
        {"status": REVOKED, "revoked_at": utcnow(), "revoked_by": acting_user_id, "revoked_reason": "revoked"},
    )
    if revoked is None:
        current = await invitations.get(invitation_id)
        status = effective_status(current) if current else "missing"
        raise InvalidState(f"Can only revoke pending invitations (invitation is {status})", status=status)

    logger.info("Invitation %s revoked by %s", invitation_id, acting_user_id)
    return revoked


async def resend_invitation(acting_user_id: str, invitation_id: str, email: str | None = None) -> dict:
    """
    Refresh the 7-day window and hand the invitation back for re-delivery.

    The token is kept while the invitation is still live. An expired invitation
    stays expired and a new one (new id, new token) is issued for the same
    role. A corrected email also gets a new token.
    """
    invitation = await invitations.get(invitation_id)
    if not invitation:
        raise NotFound("Invitation not found")
    project, actor_role = await load_project_role(acting_user_id, invitation["project_id"])
    ensure_allowed(can_manage_members(actor_role), "You do not have permission to resend this invitation")

    now = utcnow()
    status = effective_status(invitation, now)
    if status in CONSUMED:
        raise InvalidState(f"Cannot resend an invitation that is {status}", status=status)

    target_email = normalize_email(email) if email else invitation["email"]
    email_changed = target_email != invitation["email"]
    # The address may have joined the project since the invitation was sent
    await _ensure_not_in_project(project, target_email)

    if status == EXPIRED:
        await _mark_expired(invitation)
        fresh = await _issue(
            project, target_email, invitation["role"], acting_user_id, now,
            resent_from=invitation_id,
        )
        logger.info("Invitation %s expired; reissued as %s", invitation_id, fresh["invitation_id"])
        return fresh

    fields = {
        "expires_at": now + INVITATION_TTL,
        "resent_at": now,
        "resend_count": invitation.get("resend_count", 0) + 1,
    }
    if email_changed:
        await _supersede_pending(project["project_id"], target_email, invitation_id, now)
        fields.update({"email": target_email, "token": generate_invitation_token()})

    updated = await invitations.compare_and_set(
        invitation_id, {"status": PENDING, "token": invitation["token"]}, fields
    )
    if updated is None:
        raise InvalidState("Invitation changed while it was being resent; reload and try again")

    logger.info("Invitation %s resent by %s", invitation_id, acting_user_id)
    return updated


async def deliver_invitation(invitation: dict) -> str | None:
    """
    Send the invitation email. Delivery problems never undo the lifecycle
    change; they come back as a warning message (None when delivered).
    """
    project = await projects.get(invitation["project_id"])
    if not project:
        return "Project no longer exists; invitation email not sent"
    inviter = await users.get(invitation["invited_by"])
    inviter_name = inviter.get("name") if inviter else None

    ok, message = await run_in_threadpool(
        send_project_invitation_email,
        invitation["email"],
        project["name"],
        inviter_name or "A team member",
        invitation["role"],
        invitation["token"],
        as_utc(invitation["expires_at"]),
    )
    if not ok:
        logger.warning("Invitation %s saved but email delivery failed: %s", invitation["invitation_id"], message)
        return message
    return None


async def expire_stale_invitations() -> int:
    count = await invitations.expire_overdue(utcnow())
    if count:
        logger.info("Expired %d stale invitations", count)
    return count


async def repair_accepted_invitations() -> int:
    """Re-create memberships for accepted invitations that lost theirs between the two writes."""
    repaired = 0
    for inv in await invitations.list_unsynced_accepted():
        user_id = inv.get("accepted_by")
        if not user_id:
            continue
        project = await projects.get(inv["project_id"])
        if project and project["owner_id"] != user_id:
            await memberships.upsert(inv["project_id"], user_id, inv["role"])
            repaired += 1
            logger.info("Restored membership for %s in %s from invitation %s", user_id, inv["project_id"], inv["invitation_id"])
        await invitations.compare_and_set(inv["invitation_id"], {"status": ACCEPTED}, {"membership_synced": True})
    return repaired
