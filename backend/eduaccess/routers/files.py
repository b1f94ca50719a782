"""
Serves files kept by the local storage driver.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from eduaccess.database import get_db
from eduaccess.middleware.auth import get_current_user
from eduaccess.models import Resource, User
from eduaccess.services.downloads import can_download
from eduaccess.services.storage import LocalStorageDriver, StorageDriver, get_storage

router = APIRouter(prefix="/files", tags=["files"])


@router.get("/{key}")
async def get_file(
    key: str,
    name: Optional[str] = None,
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    not_found = HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    if not isinstance(storage, LocalStorageDriver):
        raise not_found

    resource = db.query(Resource).filter(Resource.file_key == key).first()
    if not resource:
        raise not_found
    if not can_download(resource, current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    path = storage.path_for(key)
    if not path.is_file():
        raise not_found

    return FileResponse(
        path,
        media_type=resource.file_mime_type,
        filename=name or resource.file_original_name,
    )
