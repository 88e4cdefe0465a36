from typing import List, Optional

from pydantic import BaseModel, Field


class MessageCreate(BaseModel):
    receiver_id: Optional[str] = None
    message: Optional[str] = None


class MarkRead(BaseModel):
    sender_id: Optional[str] = None
    group_id: Optional[str] = None


class GroupCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    member_ids: List[str] = []


class GroupMessageCreate(BaseModel):
    message: str = Field(min_length=1)
