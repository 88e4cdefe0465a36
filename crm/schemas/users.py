from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    nickname: Optional[str] = None
    role: str = "employee"
    hourly_rate: float = Field(default=0.0, ge=0)
    permissions: List[str] = []


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    nickname: Optional[str] = None
    role: Optional[str] = None
    hourly_rate: Optional[float] = Field(default=None, ge=0)
    is_active: Optional[bool] = None
    password: Optional[str] = Field(default=None, min_length=6)
    permissions: Optional[List[str]] = None

