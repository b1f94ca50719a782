import pytest

from conftest import auth_headers
from eduaccess.models import Role, School, User
from eduaccess.services.downloads import ClientMeta, DownloadRecorder
from eduaccess.services.statistics import StatisticsAggregator


@pytest.fixture
def counted_school(db, school, admin, teacher, student):
    # fixture users bypass registration, so seed the counter from the table
    StatisticsAggregator(db).recompute(school.id)
    return school


def test_profile_visible_to_self_and_admin(client, student, teacher, admin):
    url = f"/api/users/{student.id}"

    own = client.get(url, headers=auth_headers(student))
    assert own.status_code == 200
    assert own.json()["email"] == "student@test.com"
    assert "password_hash" not in own.json()

    assert client.get(url, headers=auth_headers(admin)).status_code == 200
    assert client.get(url, headers=auth_headers(teacher)).status_code == 403
    assert client.get(url).status_code == 401
    assert client.get("/api/users/999", headers=auth_headers(admin)).status_code == 404


def test_update_own_profile(client, student):
    response = client.put(
        f"/api/users/{student.id}",
        json={"first_name": "  Ada ", "grade": "Grade 11", "strand": "STEM"},
        headers=auth_headers(student),
    )

    assert response.status_code == 200
    body = response.json()
    assert (body["first_name"], body["last_name"]) == ("Ada", "User")
    assert (body["grade"], body["strand"]) == ("Grade 11", "STEM")


def test_only_admin_changes_roles(client, student, admin, db):
    url = f"/api/users/{student.id}"

    denied = client.put(url, json={"role": "teacher"}, headers=auth_headers(student))
    assert denied.status_code == 403

    promoted = client.put(url, json={"role": "teacher"}, headers=auth_headers(admin))
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "teacher"
    db.expire_all()
    assert db.get(User, student.id).role == Role.TEACHER.value


def test_admin_lists_users(client, admin, teacher, student):
    headers = auth_headers(admin)

    everyone = client.get("/api/users", headers=headers).json()
    assert everyone["pagination"]["total"] == 3

    teachers = client.get("/api/users", params={"role": "teacher"}, headers=headers).json()
    assert [u["id"] for u in teachers["users"]] == [teacher.id]

    found = client.get("/api/users", params={"search": "student@"}, headers=headers).json()
    assert [u["email"] for u in found["users"]] == ["student@test.com"]

    paged = client.get("/api/users", params={"limit": 2, "page": 2}, headers=headers).json()
    assert len(paged["users"]) == 1
    assert paged["pagination"]["pages"] == 2

    assert client.get("/api/users", headers=auth_headers(teacher)).status_code == 403


def test_user_resources_include_pending_for_owner(client, make_resource, approved_resource, teacher, student, admin):
    pending = make_resource(teacher, title="Draft worksheet")
    url = f"/api/users/{teacher.id}/resources"

    own = client.get(url, headers=auth_headers(teacher)).json()
    assert {r["id"] for r in own["resources"]} == {approved_resource.id, pending.id}
    assert own["pagination"]["total"] == 2

    assert client.get(url, headers=auth_headers(admin)).json()["pagination"]["total"] == 2
    assert client.get(url, headers=auth_headers(student)).status_code == 403


def test_user_download_history(client, approved_resource, student, teacher, admin, db, storage):
    DownloadRecorder(db, storage).download(approved_resource.id, student, ClientMeta())
    url = f"/api/users/{student.id}/downloads"

    history = client.get(url, headers=auth_headers(student)).json()
    assert [d["resource_id"] for d in history] == [approved_resource.id]
    assert history[0]["resource_title"] == "Test Resource"

    assert len(client.get(url, headers=auth_headers(admin)).json()) == 1
    assert client.get(url, headers=auth_headers(teacher)).status_code == 403


def test_delete_user_deactivates_and_decrements_counter(client, counted_school, admin, student, db):
    url = f"/api/users/{student.id}"

    assert client.delete(url, headers=auth_headers(student)).status_code == 403
    assert client.delete(url, headers=auth_headers(admin)).status_code == 200
    # a repeated delete leaves the counter alone
    assert client.delete(url, headers=auth_headers(admin)).status_code == 200

    db.expire_all()
    assert db.get(User, student.id).is_active is False
    assert db.get(School, counted_school.id).active_users == 2
    assert StatisticsAggregator(db).compute(counted_school.id)["active_users"] == 2

    # the deactivated account can no longer authenticate
    assert client.get("/api/auth/me", headers=auth_headers(student)).status_code == 401


def test_admin_cannot_delete_self(client, counted_school, admin, db):
    response = client.delete(f"/api/users/{admin.id}", headers=auth_headers(admin))

    assert response.status_code == 400
    db.expire_all()
    assert db.get(School, counted_school.id).active_users == 3


def test_delete_missing_user(client, admin):
    assert client.delete("/api/users/999", headers=auth_headers(admin)).status_code == 404
