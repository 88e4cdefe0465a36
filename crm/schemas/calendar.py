from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field, model_validator


class EventCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    start_datetime: datetime
    end_datetime: datetime
    all_day: bool = False
    event_type: str = "personal"
    priority: str = "medium"
    color: str = "#1976d2"
    location: Optional[str] = None
    task_id: Optional[str] = None
    project_id: Optional[str] = None
    participants: List[str] = []

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_datetime < self.start_datetime:
            raise ValueError("end_datetime must not be before start_datetime")
        return self


class EventUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    start_datetime: Optional[datetime] = None
    end_datetime: Optional[datetime] = None
    all_day: Optional[bool] = None
    event_type: Optional[str] = None
    priority: Optional[str] = None
    color: Optional[str] = None
    location: Optional[str] = None
    participants: Optional[List[str]] = None
