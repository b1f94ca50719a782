"""
Moderation workflow: the state machine gating a resource's visibility.

States are pending (initial), approved and rejected. Every transition is
checked against LEGAL_TRANSITIONS before anything is written, and is applied
together with its ModerationLog entry in one transaction. The status write is
conditional on the status the caller expected, so two moderators racing on
the same resource cannot both succeed.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import update, func, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from eduaccess.errors import InvalidTransition, NotFound, ValidationError
from eduaccess.models import (
    ModerationAction, ModerationLog, Resource, ResourceStatus, School, User,
)

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 500

# Moderator-driven transitions
LEGAL_TRANSITIONS = {
    ResourceStatus.PENDING: {ResourceStatus.APPROVED, ResourceStatus.REJECTED},
    ResourceStatus.APPROVED: {ResourceStatus.REJECTED},
    ResourceStatus.REJECTED: {ResourceStatus.APPROVED},
}

_ACTION_FOR = {
    ResourceStatus.APPROVED: ModerationAction.APPROVED,
    ResourceStatus.REJECTED: ModerationAction.REJECTED,
}


def is_legal_transition(from_status, to_status) -> bool:
    try:
        source = ResourceStatus(from_status)
        target = ResourceStatus(to_status)
    except ValueError:
        return False
    return target in LEGAL_TRANSITIONS.get(source, set())


def _clean_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    notes = notes.strip()
    if len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"Moderation notes cannot exceed {MAX_NOTES_LENGTH} characters")
    return notes or None


def _parse_status(value) -> ResourceStatus:
    try:
        return ResourceStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown resource status '{value}'")


def _approved_delta(previous: ResourceStatus, new: ResourceStatus) -> int:
    """Change to a school's cached approved-resource counter."""
    if new == ResourceStatus.APPROVED and previous != ResourceStatus.APPROVED:
        return 1
    if previous == ResourceStatus.APPROVED and new != ResourceStatus.APPROVED:
        return -1
    return 0


def _bump_school_resources(db: Session, school_id: int, delta: int) -> None:
    if delta:
        db.execute(
            update(School)
            .where(School.id == school_id)
            .values(total_resources=School.total_resources + delta)
        )


class ModerationWorkflow:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def approve(
        self,
        resource_id: int,
        moderator_id: int,
        notes: Optional[str] = None,
        expected_status=ResourceStatus.PENDING,
    ) -> Resource:
        """
        Approve a resource.

        Args:
            resource_id: Resource to approve
            moderator_id: Admin performing the action
            notes: Optional free-text notes
            expected_status: Status the caller believes the resource is in

        Returns:
            The updated resource

        Raises:
            NotFound: If the resource does not exist
            InvalidTransition: If the resource is not in expected_status,
                or expected_status -> approved is not a legal transition
        """
        return self._transition(
            resource_id, moderator_id, ResourceStatus.APPROVED,
            _clean_notes(notes), expected_status,
        )

    def reject(
        self,
        resource_id: int,
        moderator_id: int,
        notes: str,
        expected_status=ResourceStatus.PENDING,
    ) -> Resource:
        """
        Reject a resource. Notes are mandatory.

        Raises:
            ValidationError: If notes are empty or whitespace only
            NotFound: If the resource does not exist
            InvalidTransition: Same rules as approve
        """
        cleaned = _clean_notes(notes)
        if not cleaned:
            raise ValidationError("Rejection notes are required")
        return self._transition(
            resource_id, moderator_id, ResourceStatus.REJECTED, cleaned, expected_status,
        )

    def _transition(
        self,
        resource_id: int,
        moderator_id: int,
        target: ResourceStatus,
        notes: Optional[str],
        expected_status,
    ) -> Resource:
        expected = _parse_status(expected_status)
        if not is_legal_transition(expected, target):
            raise InvalidTransition(expected.value, target.value)

        resource = self.db.get(Resource, resource_id)
        if not resource:
            raise NotFound("Resource not found")
        if resource.status != expected.value:
            raise InvalidTransition(
                resource.status, target.value,
                f"Resource is '{resource.status}', expected '{expected.value}'",
            )

        now = datetime.utcnow()
        try:
            result = self.db.execute(
                update(Resource)
                .where(Resource.id == resource_id, Resource.status == expected.value)
                .values(
                    status=target.value,
                    moderated_by_id=moderator_id,
                    moderated_at=now,
                    moderation_notes=notes,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Someone else moved it between our read and our write
                self.db.rollback()
                logger.warning(
                    f"Concurrent moderation on resource {resource_id}; "
                    f"{target.value} by moderator {moderator_id} discarded"
                )
                raise InvalidTransition(
                    resource.status, target.value, "Resource was moderated concurrently"
                )

            self.db.add(ModerationLog(
                resource_id=resource_id,
                resource_title=resource.title,
                moderator_id=moderator_id,
                action=_ACTION_FOR[target].value,
                notes=notes,
                previous_status=expected.value,
                new_status=target.value,
                created_at=now,
            ))
            _bump_school_resources(self.db, resource.school_id, _approved_delta(expected, target))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(f"Moderation write failed for resource {resource_id}", exc_info=True)
            raise

        self.db.refresh(resource)
        logger.info(
            f"Resource {resource_id} {expected.value} -> {target.value} by moderator {moderator_id}"
        )
        return resource

    def demote(self, resource: Resource, moderator_id: int) -> bool:
        """
        Send an approved resource back to pending after an admin edit.

        Runs inside the caller's transaction and does not commit. Clears the
        previous moderation fields and logs the demotion.

        Returns:
            True if the resource was demoted, False if it was no longer approved
        """
        now = datetime.utcnow()
        result = self.db.execute(
            update(Resource)
            .where(Resource.id == resource.id, Resource.status == ResourceStatus.APPROVED.value)
            .values(
                status=ResourceStatus.PENDING.value,
                moderated_by_id=None,
                moderated_at=None,
                moderation_notes=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        self.db.add(ModerationLog(
            resource_id=resource.id,
            resource_title=resource.title,
            moderator_id=moderator_id,
            action=ModerationAction.DEMOTED.value,
            notes="Edited by admin; re-review required",
            previous_status=ResourceStatus.APPROVED.value,
            new_status=ResourceStatus.PENDING.value,
            created_at=now,
        ))
        _bump_school_resources(self.db, resource.school_id, -1)
        logger.info(f"Resource {resource.id} demoted to pending by admin {moderator_id}")
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def pending_queue(self, page: int = 1, limit: int = 20) -> Tuple[List[Resource], int]:
        """Pending resources, oldest first."""
        query = self.db.query(Resource).filter(Resource.status == ResourceStatus.PENDING.value)
        total = query.count()
        resources = (
            query.options(joinedload(Resource.uploader), joinedload(Resource.school))
            .order_by(Resource.created_at.asc(), Resource.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return resources, total

    def resource_history(self, resource_id: int) -> List[ModerationLog]:
        """Moderation decisions for one resource, newest first."""
        return (
            self.db.query(ModerationLog)
            .options(joinedload(ModerationLog.moderator))
            .filter(ModerationLog.resource_id == resource_id)
            .order_by(ModerationLog.created_at.desc(), ModerationLog.id.desc())
            .all()
        )

    def _in_range(self, query, start: Optional[datetime], end: Optional[datetime]):
        if start:
            query = query.filter(ModerationLog.created_at >= start)
        if end:
            query = query.filter(ModerationLog.created_at <= end)
        return query

    def history(
        self,
        page: int = 1,
        limit: int = 20,
        action: Optional[str] = None,
        moderator_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Tuple[List[ModerationLog], int]:
        query = self.db.query(ModerationLog)
        if action:
            query = query.filter(ModerationLog.action == action)
        if moderator_id:
            query = query.filter(ModerationLog.moderator_id == moderator_id)
        query = self._in_range(query, start, end)

        total = query.count()
        entries = (
            query.options(joinedload(ModerationLog.moderator))
            .order_by(ModerationLog.created_at.desc(), ModerationLog.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return entries, total

    def moderator_activity(
        self,
        moderator_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ModerationLog]:
        query = self.db.query(ModerationLog).filter(ModerationLog.moderator_id == moderator_id)
        return (
            self._in_range(query, start, end)
            .order_by(ModerationLog.created_at.desc(), ModerationLog.id.desc())
            .all()
        )

    def statistics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict:
        today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)

        total_pending = (
            self.db.query(func.count(Resource.id))
            .filter(Resource.status == ResourceStatus.PENDING.value)
            .scalar()
        )
        today_counts = dict(
            self.db.query(ModerationLog.action, func.count(ModerationLog.id))
            .filter(ModerationLog.created_at >= today)
            .group_by(ModerationLog.action)
            .all()
        )
        approved_today = today_counts.get(ModerationAction.APPROVED.value, 0)
        rejected_today = today_counts.get(ModerationAction.REJECTED.value, 0)

        per_moderator = self._in_range(
            self.db.query(
                ModerationLog.moderator_id,
                func.sum(case((ModerationLog.action == ModerationAction.APPROVED.value, 1), else_=0)),
                func.sum(case((ModerationLog.action == ModerationAction.REJECTED.value, 1), else_=0)),
                func.count(ModerationLog.id),
                func.max(ModerationLog.created_at),
            ),
            start, end,
        ).group_by(ModerationLog.moderator_id).order_by(func.count(ModerationLog.id).desc()).all()

        moderator_ids = [row[0] for row in per_moderator]
        names = {
            u.id: f"{u.first_name} {u.last_name}"
            for u in self.db.query(User).filter(User.id.in_(moderator_ids)).all()
        } if moderator_ids else {}

        return {
            "total_pending": total_pending or 0,
            "today": {
                "approved": approved_today,
                "rejected": rejected_today,
                "total": approved_today + rejected_today,
            },
            "moderators": [
                {
                    "moderator_id": moderator_id,
                    "moderator_name": names.get(moderator_id),
                    "approved": int(approved or 0),
                    "rejected": int(rejected or 0),
                    "total": total,
                    "last_activity": last_activity,
                }
                for moderator_id, approved, rejected, total, last_activity in per_moderator
            ],
        }
