import io
import os

# Must be set before eduaccess.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-access-secret")
os.environ.setdefault("REFRESH_SECRET_KEY", "test-refresh-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from eduaccess.database import get_db
from eduaccess.main import app
from eduaccess.models import Base, Role, School, User
from eduaccess.services.auth import create_token, hash_password
from eduaccess.services.moderation import ModerationWorkflow
from eduaccess.services.resources import ResourceRepository
from eduaccess.services.storage import LocalStorageDriver, get_storage


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def storage(tmp_path):
    return LocalStorageDriver(str(tmp_path / "uploads"))


@pytest.fixture
def school(db):
    school = School(
        name="Test University",
        code="TEST001",
        city="Test City",
        state="Test State",
        total_resources=0,
        total_downloads=0,
        active_users=0,
    )
    db.add(school)
    db.commit()
    return school


@pytest.fixture
def make_user(db, school):
    def _make(role: Role, email: str, school_id: int = None) -> User:
        user = User(
            email=email,
            password_hash=hash_password("password123"),
            first_name=role.value.title(),
            last_name="User",
            role=role.value,
            school_id=school_id or school.id,
        )
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(Role.ADMIN, "admin@test.com")


@pytest.fixture
def teacher(make_user):
    return make_user(Role.TEACHER, "teacher@test.com")


@pytest.fixture
def student(make_user):
    return make_user(Role.STUDENT, "student@test.com")


@pytest.fixture
def repo(db, storage):
    return ResourceRepository(db, storage)


@pytest.fixture
def workflow(db):
    return ModerationWorkflow(db)


@pytest.fixture
def make_resource(repo):
    def _make(uploader: User, **fields):
        values = {
            "title": "Test Resource",
            "description": "This is a test resource",
            "subject": "Mathematics",
            "grade": "Grade 10",
            "tags": "math,algebra",
        }
        values.update(fields)
        content = values.pop("content", b"test file content")
        return repo.create(
            stream=io.BytesIO(content),
            original_name=values.pop("filename", "test.pdf"),
            mime_type=values.pop("mime_type", "application/pdf"),
            size=len(content),
            fields=values,
            uploader=uploader,
        )
    return _make


@pytest.fixture
def approved_resource(make_resource, workflow, teacher, admin):
    resource = make_resource(teacher)
    return workflow.approve(resource.id, admin.id, "ok")


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_token(user.id)}"}


@pytest.fixture
def client(session_factory, storage):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
