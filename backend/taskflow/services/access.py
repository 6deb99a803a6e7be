from ..core.errors import NotFound, PermissionDenied
from ..db.repositories import projects
from .roles import resolve_role


async def load_project_role(user_id: str, project_id: str) -> tuple[dict, str | None]:
    """Fetch the project and the caller's role in it. Raises NotFound for an unknown project."""
    project = await projects.get(project_id)
    if not project:
        raise NotFound("Project not found")
    role = await resolve_role(user_id, project_id, project=project)
    return project, role


def ensure_allowed(allowed: bool, message: str):
    if not allowed:
        raise PermissionDenied(message)
