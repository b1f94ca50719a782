from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from eduaccess.database import get_db
from eduaccess.middleware.auth import get_current_user
from eduaccess.models import User
from eduaccess.schemas import DownloadRecordResponse, SyncRequest, SyncResponse
from eduaccess.services.downloads import DownloadRecorder
from eduaccess.services.storage import StorageDriver, get_storage

router = APIRouter(prefix="/downloads", tags=["downloads"])


@router.get("/me", response_model=List[DownloadRecordResponse])
async def my_downloads(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    """
    The caller's download history, newest first.
    """
    records = DownloadRecorder(db, storage).history(current_user, limit)
    return [DownloadRecordResponse.from_download(d) for d in records]


@router.post("/sync", response_model=SyncResponse)
async def sync_offline_downloads(
    payload: SyncRequest,
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    """
    Record downloads a client made while offline.
    Replays are idempotent; already-recorded downloads count as synced.
    """
    return DownloadRecorder(db, storage).sync_offline(
        current_user, [entry.model_dump() for entry in payload.downloads]
    )
