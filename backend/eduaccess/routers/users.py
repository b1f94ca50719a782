"""
User profile and account management endpoints.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from eduaccess.database import get_db
from eduaccess.middleware.auth import get_current_user, require_admin
from eduaccess.models import Role, School, User
from eduaccess.schemas import (
    DownloadRecordResponse, Pagination, ResourceListResponse, ResourceResponse,
    UserListResponse, UserResponse, UserUpdate,
)
from eduaccess.services.downloads import DownloadRecorder
from eduaccess.services.resources import ResourceFilters, ResourceRepository
from eduaccess.services.storage import StorageDriver, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


def _visible_user(db: Session, user_id: int, current_user: User) -> User:
    """Load a user the caller may see: themselves, or anyone for admins."""
    if not current_user.is_admin and current_user.id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied"
        )
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )
    return user


@router.get("", response_model=UserListResponse)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    role: Optional[Role] = None,
    school_id: Optional[int] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """
    All users, newest first. Admin only.
    """
    query = db.query(User)
    if role:
        query = query.filter(User.role == role.value)
    if school_id:
        query = query.filter(User.school_id == school_id)
    if search:
        term = f"%{search.strip()}%"
        query = query.filter(
            or_(User.first_name.ilike(term), User.last_name.ilike(term), User.email.ilike(term))
        )

    total = query.count()
    users = (
        query.order_by(User.created_at.desc(), User.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return UserListResponse(
        users=[UserResponse.model_validate(u) for u in users],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/{user_id}", response_model=UserResponse)
async def get_user_profile(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _visible_user(db, user_id, current_user)


@router.put("/{user_id}", response_model=UserResponse)
async def update_user_profile(
    user_id: int,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Update profile fields. Only admins may change a role.
    """
    user = _visible_user(db, user_id, current_user)
    changes = payload.model_dump(exclude_unset=True)

    role = changes.pop("role", None)
    if role is not None:
        if not current_user.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only administrators can change roles"
            )
        user.role = role.value

    for field in ("first_name", "last_name"):
        if changes.get(field):
            setattr(user, field, changes[field].strip())
    for field in ("grade", "strand"):
        if field in changes:
            setattr(user, field, changes[field])

    db.commit()
    db.refresh(user)
    logger.info(f"User {user.id} profile updated by {current_user.id}")
    return user


@router.get("/{user_id}/resources", response_model=ResourceListResponse)
async def get_user_resources(
    user_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    """
    Resources uploaded by a user, in every moderation state.
    """
    user = _visible_user(db, user_id, current_user)
    resources, total = ResourceRepository(db, storage).list(
        ResourceFilters(uploader_id=user.id), current_user, page, limit
    )
    return ResourceListResponse(
        resources=[ResourceResponse.from_resource(r) for r in resources],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/{user_id}/downloads", response_model=List[DownloadRecordResponse])
async def get_user_downloads(
    user_id: int,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    user = _visible_user(db, user_id, current_user)
    records = DownloadRecorder(db, storage).history(user, limit)
    return [DownloadRecordResponse.from_download(d) for d in records]


@router.delete("/{user_id}")
async def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """
    Deactivate an account. Uploads, downloads and moderation history stay
    attributed to it; the school's active user counter drops by one.
    """
    if current_user.id == user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot delete your own account"
        )
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    # Only the request that flips is_active touches the counter
    result = db.execute(
        update(User)
        .where(User.id == user_id, User.is_active.is_(True))
        .values(is_active=False)
    )
    if result.rowcount == 1:
        db.execute(
            update(School)
            .where(School.id == user.school_id)
            .values(active_users=School.active_users - 1)
        )
        logger.info(f"User {user_id} deactivated by admin {current_user.id}")
    db.commit()
    return {"status": "success", "message": f"User {user_id} deleted"}
