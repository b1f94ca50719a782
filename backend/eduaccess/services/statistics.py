"""
Statistics aggregator for schools and the whole platform.

School rows carry cached counters that are bumped as resources are approved,
deleted and downloaded. cached() returns those counters as stored;
compute() derives the same numbers from the resources, downloads and users
tables; recompute() writes the computed values back to repair drift.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from eduaccess.errors import NotFound
from eduaccess.models import Resource, ResourceStatus, School, User

logger = logging.getLogger(__name__)


class StatisticsAggregator:
    def __init__(self, db: Session):
        self.db = db

    def _school(self, school_id: int) -> School:
        school = self.db.get(School, school_id)
        if not school:
            raise NotFound("School not found")
        return school

    def cached(self, school_id: Optional[int] = None) -> Dict:
        """Fast read of the cached counters; the global scope sums every school."""
        if school_id is not None:
            school = self._school(school_id)
            return {
                "scope": "school",
                "school_id": school.id,
                "total_resources": school.total_resources,
                "total_downloads": school.total_downloads,
                "active_users": school.active_users,
                "updated_at": school.statistics_updated_at,
            }

        resources, downloads, users, updated_at = self.db.query(
            func.coalesce(func.sum(School.total_resources), 0),
            func.coalesce(func.sum(School.total_downloads), 0),
            func.coalesce(func.sum(School.active_users), 0),
            func.min(School.statistics_updated_at),
        ).one()
        return {
            "scope": "global",
            "school_id": None,
            "total_resources": int(resources),
            "total_downloads": int(downloads),
            "active_users": int(users),
            "updated_at": updated_at,
        }

    def top_subjects(self, school_id: Optional[int] = None, limit: int = 5) -> List[Dict]:
        count = func.count(Resource.id).label("count")
        query = self.db.query(Resource.subject, count).filter(
            Resource.status == ResourceStatus.APPROVED.value
        )
        if school_id is not None:
            query = query.filter(Resource.school_id == school_id)
        rows = query.group_by(Resource.subject).order_by(count.desc(), Resource.subject).limit(limit).all()
        return [{"subject": subject, "count": n} for subject, n in rows]

    def compute(self, school_id: Optional[int] = None, top_n: int = 5) -> Dict:
        """Live aggregation from the source tables."""
        if school_id is not None:
            self._school(school_id)

        resource_query = self.db.query(func.count(Resource.id)).filter(
            Resource.status == ResourceStatus.APPROVED.value
        )
        pending_query = self.db.query(func.count(Resource.id)).filter(
            Resource.status == ResourceStatus.PENDING.value
        )
        download_query = self.db.query(func.coalesce(func.sum(Resource.download_count), 0))
        user_query = self.db.query(func.count(User.id)).filter(User.is_active.is_(True))

        if school_id is not None:
            resource_query = resource_query.filter(Resource.school_id == school_id)
            pending_query = pending_query.filter(Resource.school_id == school_id)
            download_query = download_query.filter(Resource.school_id == school_id)
            user_query = user_query.filter(User.school_id == school_id)

        return {
            "scope": "school" if school_id is not None else "global",
            "school_id": school_id,
            "total_resources": resource_query.scalar() or 0,
            "pending_resources": pending_query.scalar() or 0,
            "total_downloads": int(download_query.scalar() or 0),
            "active_users": user_query.scalar() or 0,
            "popular_subjects": self.top_subjects(school_id, top_n),
        }

    def recompute(self, school_id: Optional[int] = None) -> Dict:
        """
        Rebuild cached counters from source for one school, or all schools.

        Returns:
            Fresh statistics for the requested scope
        """
        school_ids = (
            [self._school(school_id).id]
            if school_id is not None
            else [row[0] for row in self.db.query(School.id).all()]
        )
        now = datetime.utcnow()
        try:
            for sid in school_ids:
                stats = self.compute(sid, top_n=0)
                school = self.db.get(School, sid)
                drift = (
                    school.total_resources != stats["total_resources"]
                    or school.total_downloads != stats["total_downloads"]
                    or school.active_users != stats["active_users"]
                )
                if drift:
                    logger.info(
                        f"Repairing statistics drift for school {sid}: "
                        f"resources {school.total_resources}->{stats['total_resources']}, "
                        f"downloads {school.total_downloads}->{stats['total_downloads']}, "
                        f"users {school.active_users}->{stats['active_users']}"
                    )
                school.total_resources = stats["total_resources"]
                school.total_downloads = stats["total_downloads"]
                school.active_users = stats["active_users"]
                school.statistics_updated_at = now
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Recomputing school statistics failed", exc_info=True)
            raise

        return self.compute(school_id)
