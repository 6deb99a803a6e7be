"""
Permission evaluator: pure policy over (role, action, task facts).

No I/O happens here. Callers resolve the acting user's role once per request
(see ``services.roles``) and pass it in together with the facts of the task
being touched. Every function returns a bool; denial is never an exception.
The only raise is ``ValidationError`` for a missing resource.

The policy lives in ``POLICY`` as data. Changing who may do what (for example
letting collaborators invite) is an edit to that table.
"""
from dataclasses import dataclass
from enum import Enum

from ..core.errors import ValidationError
from ..models.membership import ProjectRole

OWNER = "owner"
COLLABORATOR = "collaborator"
MEMBER = "member"
VIEWER = "viewer"

# Roles that may be held through a membership row / offered by invitation
MEMBERSHIP_ROLES = (COLLABORATOR, MEMBER, VIEWER)


class Action(str, Enum):
    VIEW_PROJECT = "project:view"
    EDIT_PROJECT = "project:edit"
    ARCHIVE_PROJECT = "project:archive"
    DELETE_PROJECT = "project:delete"
    MANAGE_MEMBERS = "project:manage_members"
    TRANSFER_OWNERSHIP = "project:transfer_ownership"
    VIEW_TASK = "task:view"
    CREATE_TASK = "task:create"
    EDIT_TASK = "task:edit"
    DELETE_TASK = "task:delete"
    REASSIGN_TASK = "task:reassign"


TASK_ACTIONS = frozenset({
    Action.VIEW_TASK,
    Action.CREATE_TASK,
    Action.EDIT_TASK,
    Action.DELETE_TASK,
    Action.REASSIGN_TASK,
})

# Rules. A role missing from an action's row is denied.
ALLOW = "allow"
# acting user is the task's creator or its assignee
OWN = "own"
# the resulting assignee is the acting user or nobody
SELF_OR_UNASSIGNED = "self_or_unassigned"

POLICY: dict[Action, dict[str, str]] = {
    Action.VIEW_PROJECT: {OWNER: ALLOW, COLLABORATOR: ALLOW, MEMBER: ALLOW, VIEWER: ALLOW},
    Action.EDIT_PROJECT: {OWNER: ALLOW, COLLABORATOR: ALLOW},
    Action.ARCHIVE_PROJECT: {OWNER: ALLOW},
    Action.DELETE_PROJECT: {OWNER: ALLOW},
    Action.MANAGE_MEMBERS: {OWNER: ALLOW},
    Action.TRANSFER_OWNERSHIP: {OWNER: ALLOW},
    Action.VIEW_TASK: {OWNER: ALLOW, COLLABORATOR: ALLOW, MEMBER: OWN, VIEWER: ALLOW},
    Action.CREATE_TASK: {OWNER: ALLOW, COLLABORATOR: ALLOW, MEMBER: SELF_OR_UNASSIGNED},
    Action.EDIT_TASK: {OWNER: ALLOW, COLLABORATOR: ALLOW, MEMBER: OWN},
    Action.DELETE_TASK: {OWNER: ALLOW, COLLABORATOR: ALLOW},
    Action.REASSIGN_TASK: {OWNER: ALLOW, COLLABORATOR: ALLOW, MEMBER: SELF_OR_UNASSIGNED},
}


@dataclass(frozen=True)
class TaskFacts:
    """The only task attributes the policy looks at."""
    project_id: str | None
    creator_id: str
    assignee_id: str | None = None

    @property
    def is_personal(self) -> bool:
        return self.project_id is None

    @classmethod
    def from_task(cls, task: dict | None) -> "TaskFacts":
        if not task:
            raise ValidationError("Task is required to evaluate task permissions")
        if not task.get("creator_id"):
            raise ValidationError("Task has no creator_id")
        return cls(
            project_id=task.get("project_id"),
            creator_id=task["creator_id"],
            assignee_id=task.get("assignee_id"),
        )

    def involves(self, user_id: str) -> bool:
        return self.creator_id == user_id or self.assignee_id == user_id


_UNSET = object()


def is_allowed(
    role: ProjectRole | None,
    action: Action,
    user_id: str | None = None,
    facts: TaskFacts | None = None,
    new_assignee_id=_UNSET,
) -> bool:
    """
    Evaluate one action.

    For task actions ``facts`` is required. ``CREATE_TASK`` takes the proposed
    assignee from ``facts.assignee_id``; ``REASSIGN_TASK`` requires
    ``new_assignee_id`` (None means unassign).
    """
    action = Action(action)

    if action in TASK_ACTIONS:
        if facts is None:
            raise ValidationError(f"{action.value} needs task facts")
        if facts.is_personal:
            # Personal tasks ignore roles entirely
            return user_id is not None and facts.creator_id == user_id

    if role is None:
        return False

    rule = POLICY[action].get(role)
    if rule is None:
        return False
    if rule == ALLOW:
        return True
    if rule == OWN:
        return user_id is not None and facts.involves(user_id)
    if rule == SELF_OR_UNASSIGNED:
        if action == Action.CREATE_TASK:
            target = facts.assignee_id
        else:
            if new_assignee_id is _UNSET:
                raise ValidationError("REASSIGN_TASK needs new_assignee_id")
            target = new_assignee_id
        return target is None or target == user_id
    raise ValueError(f"Unknown policy rule {rule!r}")


def can_view_project(role):
    return is_allowed(role, Action.VIEW_PROJECT)

def can_edit_project(role):
    return is_allowed(role, Action.EDIT_PROJECT)

def can_archive_project(role):
    return is_allowed(role, Action.ARCHIVE_PROJECT)

def can_delete_project(role):
    return is_allowed(role, Action.DELETE_PROJECT)

def can_manage_members(role):
    """Invite, revoke, resend, list invitations, add/remove/re-role members."""
    return is_allowed(role, Action.MANAGE_MEMBERS)

def can_transfer_ownership(role):
    return is_allowed(role, Action.TRANSFER_OWNERSHIP)


def can_view_task(role, user_id: str, facts: TaskFacts) -> bool:
    return is_allowed(role, Action.VIEW_TASK, user_id, facts)

def can_create_task(role, user_id: str, project_id: str | None, assignee_id: str | None = None) -> bool:
    facts = TaskFacts(project_id=project_id, creator_id=user_id, assignee_id=assignee_id)
    return is_allowed(role, Action.CREATE_TASK, user_id, facts)

def can_edit_task(role, user_id: str, facts: TaskFacts) -> bool:
    return is_allowed(role, Action.EDIT_TASK, user_id, facts)

def can_delete_task(role, user_id: str, facts: TaskFacts) -> bool:
    return is_allowed(role, Action.DELETE_TASK, user_id, facts)

def can_change_assignee(role, user_id: str, facts: TaskFacts, new_assignee_id: str | None) -> bool:
    return is_allowed(role, Action.REASSIGN_TASK, user_id, facts, new_assignee_id)


def sees_only_self_in_members(role) -> bool:
    """A member's view of the member list is limited to the owner and themselves."""
    return role == MEMBER
