import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eduaccess.database import get_db
from eduaccess.middleware.auth import get_optional_user, require_admin
from eduaccess.models import School, User
from eduaccess.schemas import (
    CachedStatistics, Facets, LiveStatistics, Pagination, ResourceListResponse,
    ResourceResponse, SchoolCreate, SchoolListResponse, SchoolResponse, SchoolUpdate,
)
from eduaccess.services.resources import ResourceFilters, ResourceRepository
from eduaccess.services.statistics import StatisticsAggregator
from eduaccess.services.storage import StorageDriver, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/schools", tags=["schools"])


def _active_school(db: Session, school_id: int) -> School:
    school = db.get(School, school_id)
    if not school or not school.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="School not found"
        )
    return school


@router.get("", response_model=SchoolListResponse)
async def list_schools(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    city: Optional[str] = None,
    state: Optional[str] = None,
    db: Session = Depends(get_db),
):
    query = db.query(School).filter(School.is_active.is_(True))
    if search:
        term = f"%{search}%"
        query = query.filter(or_(School.name.ilike(term), School.code.ilike(term)))
    if city:
        query = query.filter(School.city.ilike(f"%{city}%"))
    if state:
        query = query.filter(School.state.ilike(f"%{state}%"))

    total = query.count()
    schools = query.order_by(School.name).offset((page - 1) * limit).limit(limit).all()
    pagination = Pagination.build(page, limit, total)
    return SchoolListResponse(
        schools=[SchoolResponse.model_validate(s) for s in schools],
        total=total,
        page=page,
        limit=limit,
        pages=pagination.pages,
    )


@router.post("", response_model=SchoolResponse, status_code=status.HTTP_201_CREATED)
async def create_school(
    payload: SchoolCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    code = payload.code.upper()
    existing = db.query(School).filter(or_(School.name == payload.name, School.code == code)).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="School with this name or code already exists"
        )

    school = School(**payload.model_dump(exclude={"code"}), code=code)
    db.add(school)
    db.commit()
    db.refresh(school)
    logger.info(f"School {school.code} created by admin {current_user.id}")
    return school


# Global statistics must be declared before /{school_id}
@router.get("/statistics/global", response_model=CachedStatistics)
async def global_statistics(db: Session = Depends(get_db)):
    return StatisticsAggregator(db).cached()


@router.post("/statistics/recompute", response_model=LiveStatistics)
async def recompute_all_statistics(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    return StatisticsAggregator(db).recompute()


@router.get("/{school_id}", response_model=SchoolResponse)
async def get_school(school_id: int, db: Session = Depends(get_db)):
    return _active_school(db, school_id)


@router.put("/{school_id}", response_model=SchoolResponse)
async def update_school(
    school_id: int,
    payload: SchoolUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """
    Update school details. Admins can also reactivate a deactivated school.
    """
    school = db.get(School, school_id)
    if not school:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="School not found"
        )

    changes = payload.model_dump(exclude_unset=True)
    if changes.get("code"):
        changes["code"] = changes["code"].upper()

    clashes = []
    if changes.get("name"):
        clashes.append(School.name == changes["name"])
    if changes.get("code"):
        clashes.append(School.code == changes["code"])
    if clashes and db.query(School).filter(School.id != school.id, or_(*clashes)).first():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Another school with this name or code already exists"
        )

    for field, value in changes.items():
        if value is not None:
            setattr(school, field, value)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Another school with this name or code already exists"
        )
    db.refresh(school)
    logger.info(f"School {school.id} updated by admin {current_user.id}")
    return school


@router.get("/{school_id}/statistics", response_model=CachedStatistics)
async def school_statistics(school_id: int, db: Session = Depends(get_db)):
    """
    Cached counters for a school.
    """
    _active_school(db, school_id)
    return StatisticsAggregator(db).cached(school_id)


@router.get("/{school_id}/statistics/live", response_model=LiveStatistics)
async def school_live_statistics(
    school_id: int,
    top: int = Query(5, ge=1, le=20),
    db: Session = Depends(get_db),
):
    _active_school(db, school_id)
    return StatisticsAggregator(db).compute(school_id, top_n=top)


@router.post("/{school_id}/statistics/recompute", response_model=LiveStatistics)
async def recompute_school_statistics(
    school_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    return StatisticsAggregator(db).recompute(school_id)


@router.get("/{school_id}/resources", response_model=ResourceListResponse)
async def get_school_resources(
    school_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    subject: Optional[str] = None,
    grade: Optional[str] = None,
    db: Session = Depends(get_db),
    storage: StorageDriver = Depends(get_storage),
    current_user: Optional[User] = Depends(get_optional_user),
):
    _active_school(db, school_id)
    repo = ResourceRepository(db, storage)
    resources, total = repo.list(
        ResourceFilters(school_id=school_id, subject=subject, grade=grade),
        current_user, page, limit,
    )
    return ResourceListResponse(
        resources=[ResourceResponse.from_resource(r) for r in resources],
        pagination=Pagination.build(page, limit, total),
        filters=Facets(**repo.facets(school_id)),
    )
