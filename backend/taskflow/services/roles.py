"""
Role resolver: (user, project) -> effective role or None.

Always reads committed state. Nothing is cached, so a membership change made
earlier in the same request is visible to the next call.
"""
from ..db.repositories import memberships, projects
from .permissions import MEMBERSHIP_ROLES, OWNER


async def resolve_role(user_id: str, project_id: str, project: dict | None = None, session=None) -> str | None:
    if project is None:
        project = await projects.get(project_id)
    if project is None:
        return None

    # Owner wins over any stale membership row for the same pair
    if project.get("owner_id") == user_id:
        return OWNER

    row = await memberships.get(project_id, user_id, session=session)
    if row and row.get("role") in MEMBERSHIP_ROLES:
        return row["role"]
    return None
