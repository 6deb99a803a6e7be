"""
Task operations guarded by the permission policy.

Personal tasks (no project) belong to their creator alone. Project tasks are
checked against the caller's role, which is resolved immediately before each
write rather than carried over from an earlier check.
"""
from datetime import datetime, timezone
import logging
import uuid

from ..core.errors import NotFound, ValidationError
from ..db.repositories import projects, tasks
from .access import ensure_allowed, load_project_role
from .permissions import (
    TaskFacts,
    can_change_assignee,
    can_create_task,
    can_delete_task,
    can_edit_task,
    can_view_project,
    can_view_task,
)
from .projects import project_participant_ids
from .roles import resolve_role
from .visibility import visible_tasks

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "description", "status", "priority", "due_date", "assignee_id")


async def _role_for(user_id: str, task: dict) -> str | None:
    if task.get("project_id") is None:
        return None
    return await resolve_role(user_id, task["project_id"])


async def _load(task_id: str) -> dict:
    task = await tasks.get(task_id)
    if not task:
        raise NotFound("Task not found")
    return task


async def _check_assignee(project_id: str | None, creator_id: str, assignee_id: str | None):
    if assignee_id is None:
        return
    if project_id is None:
        if assignee_id != creator_id:
            raise ValidationError("Personal tasks can only be assigned to their creator")
        return
    project = await projects.get(project_id)
    if not project or assignee_id not in await project_participant_ids(project):
        raise ValidationError("Assignee must be a member of the project")


async def create_task(acting_user_id: str, data: dict) -> dict:
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("Task title is required")
    project_id = data.get("project_id")
    assignee_id = data.get("assignee_id")

    role = None
    if project_id is not None:
        _, role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(
        can_create_task(role, acting_user_id, project_id, assignee_id),
        "You do not have permission to create this task",
    )
    await _check_assignee(project_id, acting_user_id, assignee_id)

    now = datetime.now(timezone.utc)
    doc = {
        "task_id": str(uuid.uuid4()),
        "project_id": project_id,
        "title": title,
        "description": data.get("description"),
        "status": data.get("status") or "todo",
        "priority": data.get("priority") or "medium",
        "due_date": data.get("due_date"),
        "creator_id": acting_user_id,
        "assignee_id": assignee_id,
        "created_at": now,
        "updated_at": now,
    }
    await tasks.create(doc)
    logger.info("Task %s created by %s in %s", doc["task_id"], acting_user_id, project_id or "personal space")
    return doc


async def list_personal_tasks(acting_user_id: str) -> list[dict]:
    return await tasks.list_personal(acting_user_id)


async def list_project_tasks(acting_user_id: str, project_id: str) -> list[dict]:
    _, role = await load_project_role(acting_user_id, project_id)
    ensure_allowed(can_view_project(role), "Not a member of this project")
    # Filter with the role just checked, so both see the same membership state
    return visible_tasks(role, acting_user_id, await tasks.list_for_project(project_id))


async def get_task(acting_user_id: str, task_id: str) -> dict:
    task = await _load(task_id)
    role = await _role_for(acting_user_id, task)
    ensure_allowed(can_view_task(role, acting_user_id, TaskFacts.from_task(task)), "You do not have access to this task")
    return task


async def update_task(acting_user_id: str, task_id: str, changes: dict) -> dict:
    task = await _load(task_id)
    facts = TaskFacts.from_task(task)
    role = await _role_for(acting_user_id, task)
    ensure_allowed(can_edit_task(role, acting_user_id, facts), "You do not have permission to edit this task")

    fields = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}
    if "title" in fields:
        fields["title"] = (fields["title"] or "").strip()
        if not fields["title"]:
            raise ValidationError("Task title is required")
    for key in ("status", "priority"):
        if key in fields and fields[key] is None:
            del fields[key]

    if "assignee_id" in fields and fields["assignee_id"] != task.get("assignee_id"):
        ensure_allowed(
            can_change_assignee(role, acting_user_id, facts, fields["assignee_id"]),
            "You do not have permission to assign this task to that user",
        )
        await _check_assignee(task.get("project_id"), task["creator_id"], fields["assignee_id"])

    fields["updated_at"] = datetime.now(timezone.utc)
    updated = await tasks.update(task_id, fields)
    if not updated:
        raise NotFound("Task not found")
    return updated


async def delete_task(acting_user_id: str, task_id: str):
    task = await _load(task_id)
    role = await _role_for(acting_user_id, task)
    ensure_allowed(
        can_delete_task(role, acting_user_id, TaskFacts.from_task(task)),
        "You do not have permission to delete this task",
    )
    await tasks.delete(task_id)
    logger.info("Task %s deleted by %s", task_id, acting_user_id)
