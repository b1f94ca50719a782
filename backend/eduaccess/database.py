from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from pathlib import Path

from eduaccess.config import settings

# Use DATABASE_URL from settings if available, otherwise use local SQLite
DATABASE_URL = settings.DATABASE_URL

if not DATABASE_URL:
    # Local development: use SQLite
    DB_DIR = Path(__file__).resolve().parent.parent / "data"
    DB_DIR.mkdir(exist_ok=True)
    DATABASE_URL = f"sqlite:///{DB_DIR}/eduaccess.db"

if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False}  # Needed for SQLite
    )
else:
    # Production: PostgreSQL, MySQL, etc.
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Dependency to get DB session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
