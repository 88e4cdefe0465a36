from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6)


class UserOut(BaseModel):
    id: str
    email: EmailStr
    first_name: str
    last_name: str
    nickname: Optional[str] = None
    role: str
    hourly_rate: float = 0.0
    permissions: List[str] = []
    mustChangePassword: bool = False


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserOut
