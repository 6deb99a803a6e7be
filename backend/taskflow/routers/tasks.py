from fastapi import APIRouter, Depends

from ..dependencies.auth import get_current_user
from ..models.task import TaskCreate, TaskUpdate
from ..services import tasks as task_service

router = APIRouter(prefix="/tasks", tags=["tasks"])
project_tasks_router = APIRouter(prefix="/projects", tags=["tasks"])

@router.get("")
async def list_personal_tasks(user=Depends(get_current_user)):
    """Tasks without a project, created by the caller"""
    return await task_service.list_personal_tasks(user["user_id"])

@router.post("", status_code=201)
async def create_task(body: TaskCreate, user=Depends(get_current_user)):
    return await task_service.create_task(user["user_id"], body.model_dump())

@router.get("/{task_id}")
async def get_task(task_id: str, user=Depends(get_current_user)):
    return await task_service.get_task(user["user_id"], task_id)

@router.patch("/{task_id}")
async def update_task(task_id: str, body: TaskUpdate, user=Depends(get_current_user)):
    # Only fields present in the request are applied; an explicit null assignee unassigns
    return await task_service.update_task(user["user_id"], task_id, body.model_dump(exclude_unset=True))

@router.delete("/{task_id}")
async def delete_task(task_id: str, user=Depends(get_current_user)):
    await task_service.delete_task(user["user_id"], task_id)
    return {"message": "Task deleted"}

@project_tasks_router.get("/{project_id}/tasks")
async def list_project_tasks(project_id: str, user=Depends(get_current_user)):
    """Project tasks visible to the caller's role"""
    return await task_service.list_project_tasks(user["user_id"], project_id)
