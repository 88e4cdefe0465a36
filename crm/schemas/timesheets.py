from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class TimerStart(BaseModel):
    task_id: str
    description: Optional[str] = None


class TimerStop(BaseModel):
    description: Optional[str] = None


class ManualEntry(BaseModel):
    task_id: str
    duration: int = Field(gt=0, description="minutes")
    description: Optional[str] = None
    work_date: Optional[datetime] = None


class TimesheetUpdate(BaseModel):
    duration: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
