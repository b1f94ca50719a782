from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from eduaccess.models import ResourceStatus, Role

# Auth Schemas
class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(..., min_length=6, max_length=128)
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    role: Role = Role.STUDENT
    school_code: str = Field(..., min_length=3, max_length=10)
    grade: Optional[str] = Field(None, max_length=50)
    strand: Optional[str] = Field(None, max_length=100)

class LoginRequest(BaseModel):
    email: str
    password: str

class RefreshRequest(BaseModel):
    refresh_token: str

class UserSummary(BaseModel):
    id: int
    first_name: str
    last_name: str

    class Config:
        from_attributes = True

class UserResponse(UserSummary):
    email: str
    role: str
    school_id: int
    grade: Optional[str] = None
    strand: Optional[str] = None
    last_login: Optional[datetime] = None
    is_active: bool = True

class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: UserResponse

# User Schemas
class UserUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, min_length=1, max_length=50)
    grade: Optional[str] = Field(None, max_length=50)
    strand: Optional[str] = Field(None, max_length=100)
    # Honoured for admins only
    role: Optional[Role] = None

# School Schemas
class SchoolCreate(BaseModel):
    name: str = Field(..., max_length=100)
    code: str = Field(..., pattern=r"^[A-Za-z0-9]{3,10}$")
    city: str = Field(..., max_length=100)
    state: str = Field(..., max_length=100)
    country: str = Field("United States", max_length=100)
    description: Optional[str] = Field(None, max_length=1000)

class SchoolUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    code: Optional[str] = Field(None, pattern=r"^[A-Za-z0-9]{3,10}$")
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    country: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None

class SchoolSummary(BaseModel):
    id: int
    name: str
    code: str

    class Config:
        from_attributes = True

class SchoolResponse(SchoolSummary):
    city: str
    state: str
    country: Optional[str] = None
    description: Optional[str] = None
    total_resources: int
    total_downloads: int
    active_users: int
    created_at: datetime

class SchoolListResponse(BaseModel):
    schools: List[SchoolResponse]
    total: int
    page: int
    limit: int
    pages: int

# Resource Schemas
class ResourceUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    subject: Optional[str] = Field(None, max_length=100)
    grade: Optional[str] = Field(None, max_length=50)
    strand: Optional[str] = Field(None, max_length=100)
    tags: Optional[List[str]] = None
    is_public: Optional[bool] = None

class FileInfo(BaseModel):
    original_name: str
    mime_type: str
    size: int

class ResourceResponse(BaseModel):
    id: int
    title: str
    description: str
    subject: str
    grade: str
    strand: Optional[str] = None
    tags: List[str] = []
    is_public: bool
    file: FileInfo
    status: ResourceStatus
    download_count: int
    moderation_notes: Optional[str] = None
    moderated_by_id: Optional[int] = None
    moderated_at: Optional[datetime] = None
    uploader_id: int
    school_id: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_resource(cls, resource) -> "ResourceResponse":
        # The storage key stays server-side
        return cls(
            id=resource.id,
            title=resource.title,
            description=resource.description,
            subject=resource.subject,
            grade=resource.grade,
            strand=resource.strand,
            tags=resource.tag_names,
            is_public=resource.is_public,
            file=FileInfo(
                original_name=resource.file_original_name,
                mime_type=resource.file_mime_type,
                size=resource.file_size,
            ),
            status=resource.status,
            download_count=resource.download_count,
            moderation_notes=resource.moderation_notes,
            moderated_by_id=resource.moderated_by_id,
            moderated_at=resource.moderated_at,
            uploader_id=resource.uploader_id,
            school_id=resource.school_id,
            created_at=resource.created_at,
            updated_at=resource.updated_at,
        )

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=(total + limit - 1) // limit)

class Facets(BaseModel):
    subjects: List[str] = []
    grades: List[str] = []

class ResourceListResponse(BaseModel):
    resources: List[ResourceResponse]
    pagination: Pagination
    filters: Optional[Facets] = None

class UserListResponse(BaseModel):
    users: List[UserResponse]
    pagination: Pagination

class PopularResource(BaseModel):
    resource: ResourceResponse
    recent_downloads: int

# Moderation Schemas
class ModerationRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=500)
    expected_status: ResourceStatus = ResourceStatus.PENDING

class ModerationLogResponse(BaseModel):
    id: int
    resource_id: Optional[int] = None
    resource_title: str
    moderator_id: int
    moderator: Optional[UserSummary] = None
    action: str
    notes: Optional[str] = None
    previous_status: ResourceStatus
    new_status: ResourceStatus
    created_at: datetime

    class Config:
        from_attributes = True

class ModerationHistoryResponse(BaseModel):
    history: List[ModerationLogResponse]
    pagination: Pagination

class ModeratorStats(BaseModel):
    moderator_id: int
    moderator_name: Optional[str] = None
    approved: int
    rejected: int
    total: int
    last_activity: Optional[datetime] = None

class DailyModerationStats(BaseModel):
    approved: int
    rejected: int
    total: int

class ModerationStatisticsResponse(BaseModel):
    total_pending: int
    today: DailyModerationStats
    moderators: List[ModeratorStats]

# Download Schemas
class DownloadResponse(BaseModel):
    download_url: str
    expires_at: Optional[datetime] = None
    first_download: bool
    resource: ResourceResponse

class DownloadRecordResponse(BaseModel):
    id: int
    resource_id: Optional[int] = None
    resource_title: Optional[str] = None
    downloaded_at: datetime
    offline: bool
    sync_status: str

    @classmethod
    def from_download(cls, download) -> "DownloadRecordResponse":
        return cls(
            id=download.id,
            resource_id=download.resource_id,
            resource_title=download.resource.title if download.resource else None,
            downloaded_at=download.downloaded_at,
            offline=download.offline,
            sync_status=download.sync_status,
        )

class OfflineDownload(BaseModel):
    resource_id: int
    downloaded_at: Optional[datetime] = None

class SyncRequest(BaseModel):
    downloads: List[OfflineDownload] = Field(..., max_length=200)

class SyncFailure(BaseModel):
    resource_id: int
    error: Optional[str] = None

class SyncResponse(BaseModel):
    synced: List[int]
    failed: List[SyncFailure]

# Statistics Schemas
class SubjectCount(BaseModel):
    subject: str
    count: int

class CachedStatistics(BaseModel):
    scope: str
    school_id: Optional[int] = None
    total_resources: int
    total_downloads: int
    active_users: int
    updated_at: Optional[datetime] = None

class LiveStatistics(BaseModel):
    scope: str
    school_id: Optional[int] = None
    total_resources: int
    pending_resources: int
    total_downloads: int
    active_users: int
    popular_subjects: List[SubjectCount] = []
