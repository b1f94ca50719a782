"""
Moderation endpoints. Admin only.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from eduaccess.database import get_db
from eduaccess.middleware.auth import require_admin
from eduaccess.models import ModerationAction, User
from eduaccess.schemas import (
    ModerationHistoryResponse, ModerationLogResponse, ModerationRequest,
    ModerationStatisticsResponse, Pagination, ResourceListResponse, ResourceResponse,
)
from eduaccess.services.moderation import ModerationWorkflow

router = APIRouter(prefix="/moderation", tags=["moderation"])


@router.get("/pending", response_model=ResourceListResponse)
async def get_pending_resources(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """
    Moderation queue, oldest upload first.
    """
    resources, total = ModerationWorkflow(db).pending_queue(page, limit)
    return ResourceListResponse(
        resources=[ResourceResponse.from_resource(r) for r in resources],
        pagination=Pagination.build(page, limit, total),
    )


@router.post("/resources/{resource_id}/approve", response_model=ResourceResponse)
async def approve_resource(
    resource_id: int,
    payload: Optional[ModerationRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    payload = payload or ModerationRequest()
    resource = ModerationWorkflow(db).approve(
        resource_id, current_user.id, payload.notes, payload.expected_status
    )
    return ResourceResponse.from_resource(resource)


@router.post("/resources/{resource_id}/reject", response_model=ResourceResponse)
async def reject_resource(
    resource_id: int,
    payload: ModerationRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """
    Reject a resource. Notes are required.
    """
    resource = ModerationWorkflow(db).reject(
        resource_id, current_user.id, payload.notes or "", payload.expected_status
    )
    return ResourceResponse.from_resource(resource)


@router.get("/resources/{resource_id}/history", response_model=List[ModerationLogResponse])
async def get_resource_moderation_history(
    resource_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    return ModerationWorkflow(db).resource_history(resource_id)


@router.get("/history", response_model=ModerationHistoryResponse)
async def get_moderation_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    action: Optional[ModerationAction] = None,
    moderator: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    history, total = ModerationWorkflow(db).history(
        page, limit,
        action=action.value if action else None,
        moderator_id=moderator,
        start=start_date,
        end=end_date,
    )
    return ModerationHistoryResponse(
        history=[ModerationLogResponse.model_validate(h) for h in history],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/moderators/{moderator_id}/activity", response_model=List[ModerationLogResponse])
async def get_moderator_activity(
    moderator_id: int,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    return ModerationWorkflow(db).moderator_activity(moderator_id, start_date, end_date)


@router.get("/statistics", response_model=ModerationStatisticsResponse)
async def get_moderation_statistics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    return ModerationWorkflow(db).statistics(start_date, end_date)
