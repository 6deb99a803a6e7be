from .permissions import MEMBER
from .roles import resolve_role


def visible_tasks(role: str | None, user_id: str, tasks: list[dict]) -> list[dict]:
    if role is None:
        return []
    if role == MEMBER:
        return [
            t for t in tasks
            if t.get("creator_id") == user_id or t.get("assignee_id") == user_id
        ]
    # Owner, collaborator and viewer read every task in the project
    return list(tasks)


async def filter_visible(user_id: str, project_id: str, tasks: list[dict]) -> list[dict]:
    """Bulk filter: the role is resolved once for the whole list."""
    role = await resolve_role(user_id, project_id)
    return visible_tasks(role, user_id, tasks)
