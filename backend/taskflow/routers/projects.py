from fastapi import APIRouter, Depends, Query

from ..dependencies.auth import get_current_user
from ..models.membership import MemberAdd, MemberRoleUpdate, OwnershipTransfer
from ..models.project import ProjectCreate, ProjectUpdate
from ..services import projects as project_service

router = APIRouter(prefix="/projects", tags=["projects"])

@router.get("")
async def list_projects(include_archived: bool = Query(False), user=Depends(get_current_user)):
    """Projects the caller owns or is a member of, with the caller's role in each"""
    return await project_service.list_projects(user["user_id"], include_archived=include_archived)

@router.post("", status_code=201)
async def create_project(body: ProjectCreate, user=Depends(get_current_user)):
    """Create a project. The creator becomes its owner."""
    return await project_service.create_project(user["user_id"], body.name, body.description, body.color)

@router.get("/{project_id}")
async def get_project(project_id: str, user=Depends(get_current_user)):
    return await project_service.get_project(user["user_id"], project_id)

@router.patch("/{project_id}")
async def update_project(project_id: str, body: ProjectUpdate, user=Depends(get_current_user)):
    """Update name/description/color. Owner or collaborator."""
    return await project_service.update_project(user["user_id"], project_id, body.model_dump(exclude_unset=True))

@router.post("/{project_id}/archive")
async def archive_project(project_id: str, user=Depends(get_current_user)):
    return await project_service.set_archived(user["user_id"], project_id, True)

@router.post("/{project_id}/restore")
async def restore_project(project_id: str, user=Depends(get_current_user)):
    return await project_service.set_archived(user["user_id"], project_id, False)

@router.delete("/{project_id}")
async def delete_project(project_id: str, user=Depends(get_current_user)):
    """Delete a project with its members and tasks. Owner only."""
    deleted = await project_service.delete_project(user["user_id"], project_id)
    return {"message": "Project and all related data deleted", "deleted": deleted}

@router.post("/{project_id}/transfer-ownership")
async def transfer_ownership(project_id: str, body: OwnershipTransfer, user=Depends(get_current_user)):
    """Hand the project to an existing member. Owner only."""
    return await project_service.transfer_ownership(user["user_id"], project_id, body.user_id)

@router.get("/{project_id}/members")
async def list_project_members(project_id: str, user=Depends(get_current_user)):
    """List members of a project. A member-role caller only sees the owner and themselves."""
    return await project_service.list_members(user["user_id"], project_id)

@router.post("/{project_id}/members")
async def add_member(project_id: str, body: MemberAdd, user=Depends(get_current_user)):
    """Add or update a member directly. Owner only."""
    row = await project_service.add_member(
        user["user_id"], project_id, body.role, email=body.email, user_id=body.user_id
    )
    return {"message": "Member added/updated", "member": row}

@router.put("/{project_id}/members/{member_id}")
async def update_member_role(project_id: str, member_id: str, body: MemberRoleUpdate, user=Depends(get_current_user)):
    """Change a member's role. Owner only; the owner themselves cannot be targeted."""
    row = await project_service.change_member_role(user["user_id"], project_id, member_id, body.role)
    return {"message": "Member role updated", "member": row}

@router.delete("/{project_id}/members/{member_id}")
async def remove_member(project_id: str, member_id: str, user=Depends(get_current_user)):
    """Remove a member. Owner only; the owner themselves cannot be removed."""
    await project_service.remove_member(user["user_id"], project_id, member_id)
    return {"message": "Member removed"}

@router.post("/{project_id}/leave")
async def leave_project(project_id: str, user=Depends(get_current_user)):
    await project_service.leave_project(user["user_id"], project_id)
    return {"message": "Left project"}
