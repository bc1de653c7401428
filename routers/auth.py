"""
Authentication router.
Handles login, token refresh, logout, and profile for students, proctors and admins.
Also provides the identity dependencies the exam routers trust.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from pydantic import BaseModel

from database.database import get_db
from database.models import User, UserRole
from auth.security import (
    verify_password,
    create_access_token, create_refresh_token, hash_refresh_token, decode_token,
)
from services.errors import ForbiddenError, UnauthorizedError

router = APIRouter(prefix="/auth", tags=["auth"])
security_scheme = HTTPBearer(auto_error=False)

BEARER_CHALLENGE = {"WWW-Authenticate": "Bearer"}


# ─── Schemas ───────────────────────────────────────────────────────────────────

class LoginRequest(BaseModel):
    email: str
    password: str

class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: dict

class RefreshRequest(BaseModel):
    refresh_token: str


# ─── Dependencies ──────────────────────────────────────────────────────────────

def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise UnauthorizedError("Not authenticated", headers=BEARER_CHALLENGE)

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise UnauthorizedError("Invalid or expired token", headers=BEARER_CHALLENGE)

    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise UnauthorizedError("Invalid token payload", headers=BEARER_CHALLENGE)

    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        raise UnauthorizedError("User not found or inactive", headers=BEARER_CHALLENGE)
    # Role comes from the row, not the token
    return user


def get_current_student(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.STUDENT.value:
        raise ForbiddenError("Student access required")
    return user


def require_staff(user: User = Depends(get_current_user)) -> User:
    if user.role not in (UserRole.PROCTOR.value, UserRole.ADMIN.value):
        raise ForbiddenError("Proctor or admin access required")
    return user


def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role,
        "is_active": user.is_active,
    }


def _issue_tokens(user: User, db: Session) -> TokenResponse:
    access_token = create_access_token(user.id, user.role, email=user.email)
    refresh_token, refresh_digest = create_refresh_token()
    user.refresh_token = refresh_digest
    db.commit()
    return TokenResponse(access_token=access_token, refresh_token=refresh_token, user=_user_dict(user))


# ─── Routes ────────────────────────────────────────────────────────────────────

@router.post("/login", response_model=TokenResponse)
def login(request: LoginRequest, db: Session = Depends(get_db)):
    """Authenticate and return access + refresh tokens."""
    user = db.query(User).filter(User.email == request.email).first()
    if not user or not verify_password(request.password, user.hashed_password):
        raise UnauthorizedError("Invalid email or password")

    if not user.is_active:
        raise ForbiddenError("Account is deactivated")

    return _issue_tokens(user, db)


@router.post("/refresh", response_model=TokenResponse)
def refresh(request: RefreshRequest, db: Session = Depends(get_db)):
    """Exchange a valid refresh token for a new pair; the old one stops working."""
    user = db.query(User).filter(User.refresh_token == hash_refresh_token(request.refresh_token)).first()
    if not user:
        raise UnauthorizedError("Invalid refresh token")

    if not user.is_active:
        raise ForbiddenError("Account is deactivated")

    return _issue_tokens(user, db)


@router.post("/logout")
def logout(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Clear refresh token (server-side logout)."""
    user.refresh_token = None
    db.commit()
    return {"message": "Logged out successfully"}


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return _user_dict(user)
