from datetime import datetime
from typing import Optional, Literal

from pydantic import BaseModel, Field

TaskStatus = Literal["pending", "in_progress", "completed", "cancelled", "on_hold"]
TaskPriority = Literal["low", "medium", "high"]


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    project_id: Optional[str] = None
    assigned_to: Optional[str] = None
    team_id: Optional[str] = None
    status: TaskStatus = "pending"
    priority: TaskPriority = "medium"
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    project_id: Optional[str] = None
    assigned_to: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class TaskConfirm(BaseModel):
    action: Literal["accept", "reject"]
    message: Optional[str] = None


class CommentCreate(BaseModel):
    comment: str = Field(min_length=1)
