from pydantic import BaseModel
from datetime import datetime
from typing import Literal

TaskStatus = Literal["todo", "in_progress", "review", "done"]
TaskPriority = Literal["low", "medium", "high", "urgent"]

class TaskCreate(BaseModel):
    title: str
    description: str | None = None
    # None => personal task
    project_id: str | None = None
    assignee_id: str | None = None
    status: TaskStatus = "todo"
    priority: TaskPriority = "medium"
    due_date: datetime | None = None

class TaskUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    assignee_id: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    due_date: datetime | None = None
