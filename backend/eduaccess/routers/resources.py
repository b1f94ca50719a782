import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from sqlalchemy.orm import Session

from eduaccess.database import get_db
from eduaccess.middleware.auth import get_current_user, get_optional_user, require_teacher
from eduaccess.models import ResourceStatus, User
from eduaccess.schemas import (
    DownloadResponse, Facets, Pagination, PopularResource, ResourceListResponse,
    ResourceResponse, ResourceUpdate,
)
from eduaccess.services.downloads import ClientMeta, DownloadRecorder
from eduaccess.services.resources import ResourceFilters, ResourceRepository, parse_tags
from eduaccess.services.storage import StorageDriver, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/resources", tags=["resources"])


def _upload_size(upload: UploadFile) -> int:
    upload.file.seek(0, 2)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


# ============================================================================
# CATALOG
# ============================================================================

@router.get("", response_model=ResourceListResponse)
async def list_resources(
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    search: Optional[str] = None,
    subject: Optional[str] = None,
    grade: Optional[str] = None,
    school: Optional[int] = None,
    strand: Optional[str] = None,
    tags: Optional[str] = None,
    uploader: Optional[int] = None,
    status_filter: Optional[ResourceStatus] = Query(None, alias="status"),
    sort_by: str = Query("created_at", pattern="^(created_at|download_count|title)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: Optional[User] = Depends(get_optional_user),
):
    """
    List resources with pagination, filtering, and search.
    Non-approved resources only show up for their uploader and for admins.
    """
    repo = ResourceRepository(db, storage)
    filters = ResourceFilters(
        search=search,
        subject=subject,
        grade=grade,
        school_id=school,
        strand=strand,
        tags=parse_tags(tags),
        uploader_id=uploader,
        status=status_filter.value if status_filter else None,
    )
    resources, total = repo.list(filters, current_user, page, limit, sort_by, sort_order)

    return ResourceListResponse(
        resources=[ResourceResponse.from_resource(r) for r in resources],
        pagination=Pagination.build(page, limit, total),
        filters=Facets(**repo.facets()),
    )


@router.get("/popular", response_model=List[PopularResource])
async def popular_resources(
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(10, ge=1, le=50),
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: Optional[User] = Depends(get_optional_user),
):
    rows = ResourceRepository(db, storage).popular(current_user, days, limit)
    return [
        PopularResource(resource=ResourceResponse.from_resource(r), recent_downloads=n)
        for r, n in rows
    ]


@router.get("/{resource_id}", response_model=ResourceResponse)
async def get_resource(
    resource_id: int,
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: Optional[User] = Depends(get_optional_user),
):
    resource = ResourceRepository(db, storage).get(resource_id, current_user)
    return ResourceResponse.from_resource(resource)


@router.get("/{resource_id}/related", response_model=List[ResourceResponse])
async def get_related_resources(
    resource_id: int,
    limit: int = Query(6, ge=1, le=12),
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: Optional[User] = Depends(get_optional_user),
):
    related = ResourceRepository(db, storage).related(resource_id, current_user, limit)
    return [ResourceResponse.from_resource(r) for r in related]


# ============================================================================
# UPLOAD / EDIT / DELETE
# ============================================================================

@router.post("", response_model=ResourceResponse, status_code=status.HTTP_201_CREATED)
def upload_resource(
    file: UploadFile = File(...),
    title: str = Form(...),
    description: str = Form(...),
    subject: str = Form(...),
    grade: str = Form(...),
    strand: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    is_public: bool = Form(True, alias="isPublic"),
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: User = Depends(require_teacher),
):
    """
    Upload a new resource. It starts out pending moderation.
    Runs in the threadpool so storage I/O stays off the event loop.
    Teacher and admin only.
    """
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="File is required"
        )

    resource = ResourceRepository(db, storage).create(
        stream=file.file,
        original_name=file.filename,
        mime_type=file.content_type or "application/octet-stream",
        size=_upload_size(file),
        fields={
            "title": title,
            "description": description,
            "subject": subject,
            "grade": grade,
            "strand": strand,
            "tags": tags,
            "is_public": is_public,
        },
        uploader=current_user,
    )
    return ResourceResponse.from_resource(resource)


@router.put("/{resource_id}", response_model=ResourceResponse)
async def update_resource(
    resource_id: int,
    payload: ResourceUpdate,
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    """
    Update resource metadata. Uploader or admin only.
    """
    resource = ResourceRepository(db, storage).update(
        resource_id, payload.model_dump(exclude_unset=True), current_user
    )
    return ResourceResponse.from_resource(resource)


@router.delete("/{resource_id}")
def delete_resource(
    resource_id: int,
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    """
    Delete a resource and its stored file. Uploader or admin only.
    """
    ResourceRepository(db, storage).delete(resource_id, current_user)
    return {"status": "success", "message": f"Resource {resource_id} deleted"}


# ============================================================================
# DOWNLOAD
# ============================================================================

@router.get("/{resource_id}/download", response_model=DownloadResponse)
def download_resource(
    resource_id: int,
    request: Request,
    offline: bool = False,
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    """
    Return a time-bounded download URL and record the download.
    """
    grant = DownloadRecorder(db, storage).download(
        resource_id,
        current_user,
        ClientMeta(
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            offline=offline,
        ),
    )
    return DownloadResponse(
        download_url=grant.url,
        expires_at=grant.expires_at,
        first_download=grant.first_download,
        resource=ResourceResponse.from_resource(grant.resource),
    )
