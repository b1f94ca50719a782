"""
Database initialization script.
Run this once to create the database tables and, optionally, the first
school and admin account:

    SEED_SCHOOL_CODE=DEMO01 SEED_SCHOOL_NAME="Demo High" \
    SEED_ADMIN_EMAIL=admin@example.com SEED_ADMIN_PASSWORD=secret \
    python -m eduaccess.init_db
"""
import logging
import os

from eduaccess.database import engine, SessionLocal
from eduaccess.models import Base, Role, School, User
from eduaccess.services.auth import hash_password

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def seed(db) -> None:
    code = os.getenv("SEED_SCHOOL_CODE")
    if not code:
        return

    school = db.query(School).filter(School.code == code.upper()).first()
    if not school:
        school = School(
            name=os.getenv("SEED_SCHOOL_NAME", code.upper()),
            code=code.upper(),
            city=os.getenv("SEED_SCHOOL_CITY", "Springfield"),
            state=os.getenv("SEED_SCHOOL_STATE", "IL"),
            active_users=0,
        )
        db.add(school)
        db.flush()
        logger.info(f"Added school: {school.code}")

    email = os.getenv("SEED_ADMIN_EMAIL")
    password = os.getenv("SEED_ADMIN_PASSWORD")
    if email and password and not db.query(User).filter(User.email == email.lower()).first():
        db.add(User(
            email=email.lower(),
            password_hash=hash_password(password),
            first_name="Site",
            last_name="Admin",
            role=Role.ADMIN.value,
            school_id=school.id,
        ))
        school.active_users += 1
        logger.info(f"Added admin: {email}")
    db.commit()


def init_db():
    """Create all database tables."""
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully!")

    db = SessionLocal()
    try:
        seed(db)
    finally:
        db.close()


if __name__ == "__main__":
    init_db()
