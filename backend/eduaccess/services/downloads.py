"""
Download recorder: grants download URLs and keeps download bookkeeping.

download_count counts distinct downloaders. A (user, resource) pair gets one
Download row; repeat downloads refresh that row and leave every counter alone.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from eduaccess.errors import Conflict, EduAccessError, Forbidden, NotFound
from eduaccess.models import Download, Resource, ResourceStatus, School, SyncStatus, User
from eduaccess.services.storage import StorageDriver
from eduaccess.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)


@dataclass
class ClientMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    offline: bool = False


@dataclass
class DownloadGrant:
    url: str
    expires_at: Optional[datetime]
    resource: Resource
    first_download: bool


def can_download(resource: Resource, user: User) -> bool:
    return (
        resource.status == ResourceStatus.APPROVED.value
        or user.is_admin
        or resource.uploader_id == user.id
    )


class DownloadRecorder:
    def __init__(self, db: Session, storage: StorageDriver):
        self.db = db
        self.storage = storage

    def _load_authorized(self, resource_id: int, user: User) -> Resource:
        resource = self.db.get(Resource, resource_id)
        if not resource:
            raise NotFound("Resource not found")
        if not can_download(resource, user):
            raise Forbidden("Access denied")
        return resource

    def download(self, resource_id: int, user: User, client_meta: ClientMeta) -> DownloadGrant:
        """
        Hand out a download URL and record the download.

        The URL is obtained first; if that fails nothing is written.

        Raises:
            NotFound: Unknown resource, or its bytes are gone
            Forbidden: Resource not approved and caller is neither uploader nor admin
            StorageFailure: The storage driver could not produce a URL
        """
        resource = self._load_authorized(resource_id, user)
        link = self.storage.get_download_url(resource.file_key, resource.file_original_name)
        first = self.record(resource, user, client_meta)
        self.db.refresh(resource)
        return DownloadGrant(
            url=link.url,
            expires_at=link.expires_at,
            resource=resource,
            first_download=first,
        )

    def record(
        self,
        resource: Resource,
        user: User,
        client_meta: ClientMeta,
        downloaded_at: Optional[datetime] = None,
    ) -> bool:
        """
        Upsert the (user, resource) download record.

        Returns:
            True if this was the user's first download of the resource
        """
        existing = (
            self.db.query(Download)
            .filter(Download.user_id == user.id, Download.resource_id == resource.id)
            .first()
        )
        if existing:
            self._touch(existing, client_meta, downloaded_at)
            return False

        try:
            self._insert_first(resource, user, client_meta, downloaded_at)
        except Conflict:
            logger.warning(
                f"Duplicate download record for user {user.id} / resource {resource.id}; "
                "treating as already recorded"
            )
            return False
        logger.info(f"User {user.id} downloaded resource {resource.id} for the first time")
        return True

    def _touch(self, record: Download, client_meta: ClientMeta, downloaded_at: Optional[datetime]) -> None:
        try:
            record.downloaded_at = downloaded_at or datetime.utcnow()
            if client_meta.ip_address:
                record.ip_address = client_meta.ip_address
            if client_meta.user_agent:
                record.user_agent = client_meta.user_agent[:500]
            record.sync_status = SyncStatus.SYNCED.value
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def _insert_first(
        self,
        resource: Resource,
        user: User,
        client_meta: ClientMeta,
        downloaded_at: Optional[datetime],
    ) -> None:
        """Insert the record and bump both counters in one transaction."""
        try:
            self.db.add(Download(
                user_id=user.id,
                resource_id=resource.id,
                downloaded_at=downloaded_at or datetime.utcnow(),
                ip_address=client_meta.ip_address,
                user_agent=(client_meta.user_agent or "")[:500] or None,
                offline=client_meta.offline,
                sync_status=SyncStatus.SYNCED.value,
            ))
            self.db.flush()
        except IntegrityError:
            # Concurrent first download by the same user won the insert
            self.db.rollback()
            raise Conflict("Download already recorded")

        try:
            self.db.execute(
                update(Resource)
                .where(Resource.id == resource.id)
                .values(download_count=Resource.download_count + 1)
                .execution_options(synchronize_session=False)
            )
            self.db.execute(
                update(School)
                .where(School.id == resource.school_id)
                .values(total_downloads=School.total_downloads + 1)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # History and offline sync
    # ------------------------------------------------------------------

    def history(self, user: User, limit: int = 50) -> List[Download]:
        return (
            self.db.query(Download)
            .options(joinedload(Download.resource))
            .filter(Download.user_id == user.id)
            .order_by(Download.downloaded_at.desc())
            .limit(limit)
            .all()
        )

    def sync_offline(self, user: User, entries: List[Dict], max_attempts: int = 3) -> Dict:
        """
        Replay downloads a client made while offline.

        Entries are {"resource_id": int, "downloaded_at": datetime | None}.
        Database errors are retried from the tail of the queue; unknown or
        forbidden resources fail immediately.
        """
        queue = SyncQueue(max_attempts=max_attempts)
        for entry in entries:
            queue.enqueue(entry)

        def replay(entry: Dict) -> bool:
            resource = self._load_authorized(entry["resource_id"], user)
            return self.record(
                resource, user, ClientMeta(offline=True), downloaded_at=entry.get("downloaded_at")
            )

        report = queue.drain(replay, retry_on=(SQLAlchemyError,), fail_on=(EduAccessError,))
        logger.info(
            f"Offline sync for user {user.id}: {len(report.succeeded)} synced, "
            f"{len(report.failed)} failed"
        )
        return {
            "synced": [op.payload["resource_id"] for op in report.succeeded],
            "failed": [
                {"resource_id": op.payload["resource_id"], "error": op.last_error}
                for op in report.failed
            ],
        }
