from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..logging import structlog
from ..models.models import User
from ..schemas.auth import ChangePasswordRequest, LoginRequest, TokenResponse, UserOut
from .security import create_access_token, get_current_user, get_password_hash, verify_password


router = APIRouter(prefix="/api/auth", tags=["auth"])


def _user_out(user: User) -> UserOut:
    return UserOut(
        id=str(user.id),
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        nickname=user.nickname,
        role=user.role,
        hourly_rate=float(user.hourly_rate or 0),
        permissions=user.permission_names,
        mustChangePassword=bool(user.must_change_password),
    )


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == req.email.lower()).first()
    if not user or not user.is_active or not verify_password(req.password, user.password_hash):
        structlog.get_logger().info("login_failed", email=req.email)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token(str(user.id), role=user.role)
    return TokenResponse(token=token, user=_user_out(user))


@router.get("/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)):
    return _user_out(user)


@router.post("/change-password")
def change_password(req: ChangePasswordRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    if not verify_password(req.current_password, user.password_hash):
        raise HTTPException(status_code=401, detail="Current password is incorrect")
    user.password_hash = get_password_hash(req.new_password)
    user.must_change_password = False
    db.commit()
    return {"message": "Password changed successfully"}
