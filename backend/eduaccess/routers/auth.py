"""
Authentication endpoints: register, login, token refresh
"""
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eduaccess.database import get_db
from eduaccess.middleware.auth import get_current_user
from eduaccess.models import Role, School, User
from eduaccess.schemas import (
    LoginRequest, RefreshRequest, RegisterRequest, TokenResponse, UserResponse,
)
from eduaccess.services.auth import (
    REFRESH_TOKEN, create_token_pair, hash_password, verify_password, verify_token,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


def _session_for(user: User) -> TokenResponse:
    return TokenResponse(**create_token_pair(user.id), user=UserResponse.model_validate(user))


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    """
    Register a new user under an existing school.
    Admin accounts cannot be self-registered.
    """
    if payload.role == Role.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin accounts are created by an administrator"
        )

    email = payload.email.strip().lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User with this email already exists"
        )

    school = db.query(School).filter(
        School.code == payload.school_code.upper(), School.is_active.is_(True)
    ).first()
    if not school:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="School not found"
        )

    user = User(
        email=email,
        password_hash=hash_password(payload.password),
        first_name=payload.first_name.strip(),
        last_name=payload.last_name.strip(),
        role=payload.role.value,
        school_id=school.id,
        grade=payload.grade,
        strand=payload.strand,
        last_login=datetime.utcnow(),
    )
    try:
        db.add(user)
        db.flush()
        db.execute(
            update(School)
            .where(School.id == school.id)
            .values(active_users=School.active_users + 1)
        )
        db.commit()
    except IntegrityError:
        # A concurrent registration took the email after the check above
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User with this email already exists"
        )
    db.refresh(user)

    logger.info(f"Registered user {user.id} ({user.role}) at school {school.code}")
    return _session_for(user)


@router.post("/login", response_model=TokenResponse)
async def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(func.lower(User.email) == payload.email.strip().lower()).first()
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account is deactivated"
        )

    user.last_login = datetime.utcnow()
    db.commit()
    db.refresh(user)
    return _session_for(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(payload: RefreshRequest, db: Session = Depends(get_db)):
    """
    Exchange a refresh token for a new token pair
    """
    claims = verify_token(payload.refresh_token, token_type=REFRESH_TOKEN)
    user = db.get(User, int(claims["sub"]))
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token"
        )
    return _session_for(user)


@router.get("/me", response_model=UserResponse)
async def get_current_user_info(current_user: User = Depends(get_current_user)):
    return current_user


@router.post("/logout")
async def logout():
    """
    Logout endpoint (client-side token deletion)
    """
    return {"message": "Logged out successfully"}
