"""
Project and membership operations. Each one resolves the caller's role right
before its write and checks it against the permission policy.
"""
from datetime import datetime, timezone
import logging
import uuid

from ..core.errors import ConsistencyViolation, NotFound, ValidationError
from ..db.mongo import transaction
from ..db.repositories import invitations, memberships, projects, tasks, users
from .access import ensure_allowed, load_project_role
from .invitations import validate_role
from .ownership import ensure_not_owner
from .permissions import (
    COLLABORATOR,
    OWNER,
    can_archive_project,
    can_delete_project,
    can_edit_project,
    can_manage_members,
    can_transfer_ownership,
    can_view_project,
    sees_only_self_in_members,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "description", "color")


async def create_project(acting_user_id: str, name: str, description: str | None = None, color: str | None = None) -> dict:
    if not name or not name.strip():
        raise ValidationError("Project name is required")
    now = datetime.now(timezone.utc)
    doc = {
        "project_id": str(uuid.uuid4()),
        "name": name.strip(),
        "description": description,
        "color": color,
        "owner_id": acting_user_id,
        "archived": False,
        "created_at": now,
        "updated_at": now,
    }
    await projects.create(doc)
    logger.info("Project %s created by %s", doc["project_id"], acting_user_id)
    return {**doc, "role": OWNER}


async def list_projects(acting_user_id: str, include_archived: bool = False) -> list[dict]:
    """Projects the caller owns or belongs to, each tagged with the caller's role."""
    result = [{**p, "role": OWNER} for p in await projects.list_owned(acting_user_id)]
    rows = {m["project_id"]: m["role"] for m in await memberships.list_for_user(acting_user_id)}
    for p in await projects.list_by_ids(list(rows)):
        # Owner wins over a stale membership row
        if p["owner_id"] != acting_user_id:
            result.append({**p, "role": rows[p["project_id"]]})
    if not include_archived:
        result = [p for p in result if not p.get("archived")]
    return result


async def get_project(acting_user_id: str, project_id: str) -> dict:
    project, role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_view_project(role), "Not a member of this project")
    return {**project, "role": role}


async def update_project(acting_user_id: str, project_id: str, changes: dict) -> dict:
    _, role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_edit_project(role), "Only the owner or a collaborator can edit this project")

    fields = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS and v is not None}
    if "name" in fields:
        fields["name"] = fields["name"].strip()
        if not fields["name"]:
            raise ValidationError("Project name is required")
    fields["updated_at"] = datetime.now(timezone.utc)
    fields["updated_by"] = acting_user_id

    updated = await projects.update(project_id, fields)
    if not updated:
        raise NotFound("Project not found")
    return {**updated, "role": role}


async def set_archived(acting_user_id: str, project_id: str, archived: bool) -> dict:
    _, role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_archive_project(role), "Only the project owner can archive or restore it")

    updated = await projects.update(project_id, {
        "archived": archived,
        "updated_at": datetime.now(timezone.utc),
        "updated_by": acting_user_id,
    })
    if not updated:
        raise NotFound("Project not found")
    logger.info("Project %s %s by %s", project_id, "archived" if archived else "restored", acting_user_id)
    return {**updated, "role": role}


async def delete_project(acting_user_id: str, project_id: str) -> dict:
    _, role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_delete_project(role), "Only the project owner can delete it")

    # Invitations stay as history; only the live ones are closed
    revoked = await invitations.revoke_pending_for_project(project_id, reason="project_deleted")
    removed_members = await memberships.delete_for_project(project_id)
    removed_tasks = await tasks.delete_for_project(project_id)
    await projects.delete(project_id)

    logger.info("Project %s deleted by %s", project_id, acting_user_id)
    return {
        "project": 1,
        "members": removed_members,
        "tasks": removed_tasks,
        "invitations_revoked": revoked,
    }


async def transfer_ownership(acting_user_id: str, project_id: str, new_owner_id: str) -> dict:
    """
    Hand the project to an existing member. The previous owner stays on as a
    collaborator and the new owner's membership row is dropped, since
    ownership is never stored as a membership.
    """
    project, role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_transfer_ownership(role), "Only the project owner can transfer ownership")
    if new_owner_id == project["owner_id"]:
        raise ValidationError("User already owns this project")
    if not await memberships.get(project_id, new_owner_id):
        raise ValidationError("Ownership can only be transferred to an existing project member")

    now = datetime.now(timezone.utc)
    async with transaction() as session:
        updated = await projects.transfer_owner(project_id, acting_user_id, new_owner_id, now, session=session)
        if not updated:
            raise ConsistencyViolation("Project ownership changed concurrently")
        await memberships.delete(project_id, new_owner_id, session=session)
        await memberships.upsert(project_id, acting_user_id, COLLABORATOR, session=session)

    logger.info("Project %s ownership transferred from %s to %s", project_id, acting_user_id, new_owner_id)
    return {**updated, "role": COLLABORATOR}


async def _describe(user_id: str, role: str, joined_at=None) -> dict:
    user = await users.get(user_id)
    return {
        "user_id": user_id,
        "role": role,
        "name": user.get("name") if user else None,
        "email": user.get("email") if user else None,
        "joined_at": joined_at,
    }


async def list_members(acting_user_id: str, project_id: str) -> list[dict]:
    project, role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_view_project(role), "Not a member of this project")

    members = [await _describe(project["owner_id"], OWNER, project.get("created_at"))]
    for row in await memberships.list_for_project(project_id):
        if row["user_id"] == project["owner_id"]:
            continue
        if sees_only_self_in_members(role) and row["user_id"] != acting_user_id:
            continue
        members.append(await _describe(row["user_id"], row["role"], row.get("joined_at")))
    return members


async def add_member(acting_user_id: str, project_id: str, role: str, email: str | None = None, user_id: str | None = None) -> dict:
    """Owner-driven direct add of an existing account. Upserts the membership row."""
    project, actor_role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_manage_members(actor_role), "Only the project owner can manage members")
    role = validate_role(role)

    if user_id:
        target = await users.get(user_id)
    elif email:
        target = await users.get_by_email(email)
    else:
        raise ValidationError("Either email or user_id is required")
    if not target:
        raise NotFound("User not found")
    ensure_not_owner(project, target["user_id"])

    row, created = await memberships.upsert(project_id, target["user_id"], role)
    logger.info("Member %s %s in project %s as %s", target["user_id"], "added" if created else "updated", project_id, role)
    return {**row, "created": created}


async def change_member_role(acting_user_id: str, project_id: str, target_user_id: str, role: str) -> dict:
    project, actor_role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_manage_members(actor_role), "Only the project owner can manage members")
    ensure_not_owner(project, target_user_id)
    role = validate_role(role)

    row = await memberships.update_role(project_id, target_user_id, role)
    if not row:
        raise NotFound("Member not found in this project")
    logger.info("Member %s in project %s changed to %s", target_user_id, project_id, role)
    return row


async def remove_member(acting_user_id: str, project_id: str, target_user_id: str):
    project, actor_role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_manage_members(actor_role), "Only the project owner can manage members")
    ensure_not_owner(project, target_user_id)

    if not await memberships.delete(project_id, target_user_id):
        raise NotFound("Member not found in this project")
    logger.info("Member %s removed from project %s", target_user_id, project_id)


async def leave_project(acting_user_id: str, project_id: str):
    project, role = await load_project_role(acting_user_id, project_id)
    if role is None:
        raise NotFound("Not a member of this project")
    if role == OWNER:
        raise ConsistencyViolation("The owner cannot leave the project; transfer ownership first")
    await memberships.delete(project_id, acting_user_id)
    logger.info("User %s left project %s", acting_user_id, project_id)


async def project_participant_ids(project: dict) -> set[str]:
    ids = {project["owner_id"]}
    ids.update(m["user_id"] for m in await memberships.list_for_project(project["project_id"]))
    return ids

