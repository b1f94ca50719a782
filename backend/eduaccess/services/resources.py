"""
Resource repository: create, read, search, edit and delete catalog entries.

Bytes go to the storage driver first and the metadata row is written second.
If the row cannot be written, the freshly stored bytes are deleted again.
On delete, a storage failure is logged and recorded in storage_failures, and
the metadata row is removed anyway.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import BinaryIO, Dict, List, Optional, Tuple

from sqlalchemy import or_, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from eduaccess.config import settings
from eduaccess.errors import Forbidden, NotFound, StorageFailure, ValidationError
from eduaccess.models import (
    Download, ModerationLog, Resource, ResourceStatus, School, StorageFailureRecord, Tag, User,
)
from eduaccess.services.moderation import ModerationWorkflow
from eduaccess.services.storage import FileMetadata, StorageDriver

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "created_at": Resource.created_at,
    "download_count": Resource.download_count,
    "title": Resource.title,
}
EDITABLE_FIELDS = ("title", "description", "subject", "grade", "strand", "is_public", "tags")
FIELD_LIMITS = {"title": 200, "description": 1000, "subject": 100, "grade": 50, "strand": 100}
REQUIRED_FIELDS = ("title", "description", "subject", "grade")


@dataclass
class ResourceFilters:
    search: Optional[str] = None
    subject: Optional[str] = None
    grade: Optional[str] = None
    school_id: Optional[int] = None
    strand: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    uploader_id: Optional[int] = None
    status: Optional[str] = None


def parse_tags(raw) -> List[str]:
    """Accept a comma-separated string or a list; trim, drop empties, keep order."""
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else raw
    seen = []
    for item in items:
        name = str(item).strip()[:50]
        if name and name not in seen:
            seen.append(name)
    return seen


def can_view(resource: Resource, user: Optional[User]) -> bool:
    """Non-approved resources are visible only to their uploader and admins."""
    if user is not None and (user.is_admin or resource.uploader_id == user.id):
        return True
    if resource.status != ResourceStatus.APPROVED.value:
        return False
    return resource.is_public or user is not None


def _visibility_filter(query, user: Optional[User]):
    if user is None:
        return query.filter(
            Resource.status == ResourceStatus.APPROVED.value,
            Resource.is_public.is_(True),
        )
    if user.is_admin:
        return query
    return query.filter(
        or_(Resource.status == ResourceStatus.APPROVED.value, Resource.uploader_id == user.id)
    )


def _validate_fields(values: Dict) -> Dict:
    cleaned = {}
    for name, value in values.items():
        if name in FIELD_LIMITS and value is not None:
            value = str(value).strip()
            if len(value) > FIELD_LIMITS[name]:
                raise ValidationError(f"{name} cannot exceed {FIELD_LIMITS[name]} characters")
            if name in REQUIRED_FIELDS and not value:
                raise ValidationError(f"{name} is required")
            if name == "strand" and not value:
                value = None
        cleaned[name] = value
    return cleaned


class ResourceRepository:
    def __init__(self, db: Session, storage: StorageDriver):
        self.db = db
        self.storage = storage

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_tags(self, names: List[str]) -> List[Tag]:
        tags = []
        for tag_name in names:
            tag = self.db.query(Tag).filter(Tag.name == tag_name).first()
            if not tag:
                tag = Tag(name=tag_name)
                self.db.add(tag)
            tags.append(tag)
        return tags

    def _release_blob(self, key: str, operation: str, resource_id: Optional[int] = None) -> bool:
        """
        Delete stored bytes, recording the key for manual cleanup on failure.

        Returns:
            True if the storage driver confirmed the delete
        """
        try:
            self.storage.delete(key)
            return True
        except NotFound:
            # Key from another storage driver; nothing this driver can release
            logger.warning(f"Storage driver does not recognise key for resource {resource_id}, skipping")
            return True
        except StorageFailure as e:
            logger.error(
                f"Could not release blob for resource {resource_id} ({operation}): {e.message}"
            )
            self.db.add(StorageFailureRecord(
                file_key=key,
                operation=operation,
                resource_id=resource_id,
                error=e.message,
            ))
            return False

    @staticmethod
    def validate_upload(mime_type: str, size: int) -> None:
        if size <= 0:
            raise ValidationError("File is empty")
        if size > settings.MAX_UPLOAD_BYTES:
            limit_mb = settings.MAX_UPLOAD_BYTES // (1024 * 1024)
            raise ValidationError(f"File exceeds the {limit_mb} MB limit")
        if mime_type not in settings.ALLOWED_MIME_TYPES:
            raise ValidationError("Invalid file type")

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        stream: BinaryIO,
        original_name: str,
        mime_type: str,
        size: int,
        fields: Dict,
        uploader: User,
    ) -> Resource:
        """
        Store the file and create its resource in pending state.

        Args:
            stream: File contents, read in chunks by the storage driver
            original_name: Client-side filename
            mime_type: Declared MIME type
            size: Size in bytes
            fields: title, description, subject, grade, strand, tags, is_public
            uploader: Authenticated teacher or admin

        Raises:
            ValidationError: Bad metadata, disallowed type or oversized file
            StorageFailure: The bytes could not be stored; nothing is written
        """
        self.validate_upload(mime_type, size)
        values = _validate_fields({k: fields.get(k) for k in FIELD_LIMITS})
        for name in REQUIRED_FIELDS:
            if not values.get(name):
                raise ValidationError(f"{name} is required")

        key = self.storage.store(
            stream, FileMetadata(original_name=original_name, mime_type=mime_type, uploaded_by=uploader.id)
        )

        try:
            resource = Resource(
                **values,
                is_public=bool(fields.get("is_public", True)),
                file_original_name=original_name,
                file_key=key,
                file_mime_type=mime_type,
                file_size=size,
                status=ResourceStatus.PENDING.value,
                uploader_id=uploader.id,
                school_id=uploader.school_id,
            )
            resource.tags = self._resolve_tags(parse_tags(fields.get("tags")))
            self.db.add(resource)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(f"Saving resource metadata failed, releasing {original_name}", exc_info=True)
            if not self._release_blob(key, "rollback"):
                self.db.commit()
            raise

        self.db.refresh(resource)
        logger.info(f"Resource {resource.id} uploaded by user {uploader.id}, pending moderation")
        return resource

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, resource_id: int, user: Optional[User]) -> Resource:
        """
        Raises:
            NotFound: If the resource does not exist or the caller may not see it
        """
        resource = (
            self.db.query(Resource)
            .options(
                joinedload(Resource.uploader),
                joinedload(Resource.school),
                joinedload(Resource.moderated_by),
                selectinload(Resource.tags),
            )
            .filter(Resource.id == resource_id)
            .first()
        )
        if not resource or not can_view(resource, user):
            raise NotFound("Resource not found")
        return resource

    def list(
        self,
        filters: ResourceFilters,
        user: Optional[User],
        page: int = 1,
        limit: int = 12,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Resource], int]:
        """Filtered, paginated listing; newest first unless told otherwise."""
        query = _visibility_filter(self.db.query(Resource), user)

        if filters.search:
            search_term = f"%{filters.search.strip()}%"
            query = query.filter(
                or_(
                    Resource.title.ilike(search_term),
                    Resource.description.ilike(search_term),
                    Resource.subject.ilike(search_term),
                    Resource.tags.any(Tag.name.ilike(search_term)),
                )
            )
        if filters.subject:
            query = query.filter(Resource.subject == filters.subject)
        if filters.grade:
            query = query.filter(Resource.grade == filters.grade)
        if filters.school_id:
            query = query.filter(Resource.school_id == filters.school_id)
        if filters.strand:
            query = query.filter(Resource.strand == filters.strand)
        if filters.tags:
            query = query.filter(Resource.tags.any(Tag.name.in_(filters.tags)))
        if filters.uploader_id:
            query = query.filter(Resource.uploader_id == filters.uploader_id)
        if filters.status:
            query = query.filter(Resource.status == filters.status)

        total = query.count()

        column = SORTABLE_FIELDS.get(sort_by, Resource.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        resources = (
            query.options(
                joinedload(Resource.uploader),
                joinedload(Resource.school),
                selectinload(Resource.tags),
            )
            .order_by(ordering, Resource.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return resources, total

    def facets(self, school_id: Optional[int] = None) -> Dict[str, List[str]]:
        """Distinct subjects and grades among approved resources."""
        base = [Resource.status == ResourceStatus.APPROVED.value]
        if school_id:
            base.append(Resource.school_id == school_id)
        subjects = self.db.query(Resource.subject).filter(*base).distinct().order_by(Resource.subject).all()
        grades = self.db.query(Resource.grade).filter(*base).distinct().order_by(Resource.grade).all()
        return {
            "subjects": [s[0] for s in subjects],
            "grades": [g[0] for g in grades],
        }

    def related(self, resource_id: int, user: Optional[User], limit: int = 6) -> List[Resource]:
        """Approved resources sharing subject, grade, a tag or the school."""
        resource = self.get(resource_id, user)
        tag_names = resource.tag_names

        similarity = [
            Resource.subject == resource.subject,
            Resource.grade == resource.grade,
            Resource.school_id == resource.school_id,
        ]
        if tag_names:
            similarity.append(Resource.tags.any(Tag.name.in_(tag_names)))

        query = _visibility_filter(self.db.query(Resource), user).filter(
            Resource.id != resource.id,
            Resource.status == ResourceStatus.APPROVED.value,
            or_(*similarity),
        )
        return (
            query.options(selectinload(Resource.tags))
            .order_by(Resource.download_count.desc(), Resource.created_at.desc())
            .limit(limit)
            .all()
        )

    def popular(self, user: Optional[User], days: int = 30, limit: int = 10) -> List[Tuple[Resource, int]]:
        """Approved resources with the most download records in the last `days` days."""
        since = datetime.utcnow() - timedelta(days=days)
        recent = func.count(Download.id).label("recent_downloads")
        query = (
            self.db.query(Resource, recent)
            .join(Download, Download.resource_id == Resource.id)
            .filter(Download.downloaded_at >= since)
        )
        query = _visibility_filter(query, user).filter(
            Resource.status == ResourceStatus.APPROVED.value
        )
        return (
            query.group_by(Resource.id)
            .order_by(recent.desc(), Resource.id.desc())
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Update / delete
    # ------------------------------------------------------------------

    def _load_for_owner(self, resource_id: int, user: User) -> Resource:
        resource = self.db.get(Resource, resource_id)
        if not resource:
            raise NotFound("Resource not found")
        if resource.uploader_id != user.id and not user.is_admin:
            raise Forbidden("Access denied")
        return resource

    def update(self, resource_id: int, changes: Dict, user: User) -> Resource:
        """
        Edit metadata. The stored file never changes.

        An admin editing an approved resource sends it back to pending.

        Raises:
            NotFound, Forbidden, ValidationError
        """
        resource = self._load_for_owner(resource_id, user)
        changes = {
            k: v for k, v in changes.items()
            if k in EDITABLE_FIELDS and (v is not None or k == "strand")
        }
        tags = changes.pop("tags", None)
        values = _validate_fields(changes)

        try:
            for name, value in values.items():
                setattr(resource, name, value)
            if tags is not None:
                resource.tags = self._resolve_tags(parse_tags(tags))
            resource.updated_at = datetime.utcnow()

            if user.is_admin and resource.status == ResourceStatus.APPROVED.value:
                ModerationWorkflow(self.db).demote(resource, user.id)

            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(f"Updating resource {resource_id} failed", exc_info=True)
            raise

        self.db.refresh(resource)
        logger.info(f"Resource {resource_id} updated by user {user.id}")
        return resource

    def delete(self, resource_id: int, user: User) -> None:
        """
        Remove a resource and release its stored bytes.

        Storage failures do not block the delete; the key is recorded in
        storage_failures for manual cleanup. Moderation logs and download
        records are kept with their resource reference cleared.

        Raises:
            NotFound, Forbidden
        """
        resource = self._load_for_owner(resource_id, user)
        key = resource.file_key
        school_id = resource.school_id
        was_approved = resource.status == ResourceStatus.APPROVED.value
        # total_downloads caches the sum of download_count
        downloads = resource.download_count or 0

        self._release_blob(key, "delete", resource_id)

        try:
            self.db.execute(
                update(ModerationLog)
                .where(ModerationLog.resource_id == resource_id)
                .values(resource_id=None)
                .execution_options(synchronize_session=False)
            )
            self.db.execute(
                update(Download)
                .where(Download.resource_id == resource_id)
                .values(resource_id=None)
                .execution_options(synchronize_session=False)
            )
            self.db.delete(resource)
            counters = {}
            if was_approved:
                counters["total_resources"] = School.total_resources - 1
            if downloads:
                counters["total_downloads"] = School.total_downloads - downloads
            if counters:
                self.db.execute(
                    update(School).where(School.id == school_id).values(**counters)
                )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(f"Deleting resource {resource_id} failed", exc_info=True)
            raise

        logger.info(f"Resource {resource_id} deleted by user {user.id}")
