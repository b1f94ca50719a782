from eduaccess.init_db import seed
from eduaccess.models import School, User
from eduaccess.services.auth import verify_password


def test_seed_is_skipped_without_school_code(db, monkeypatch):
    monkeypatch.delenv("SEED_SCHOOL_CODE", raising=False)
    seed(db)
    assert db.query(School).count() == 0


def test_seed_creates_school_and_admin_once(db, monkeypatch):
    monkeypatch.setenv("SEED_SCHOOL_CODE", "demo01")
    monkeypatch.setenv("SEED_SCHOOL_NAME", "Demo High")
    monkeypatch.setenv("SEED_ADMIN_EMAIL", "Admin@Example.com")
    monkeypatch.setenv("SEED_ADMIN_PASSWORD", "secret123")

    seed(db)
    seed(db)

    (school,) = db.query(School).all()
    assert (school.code, school.name, school.active_users) == ("DEMO01", "Demo High", 1)
    (admin,) = db.query(User).all()
    assert admin.email == "admin@example.com"
    assert admin.is_admin
    assert verify_password("secret123", admin.password_hash)
