from datetime import datetime, timedelta

import pytest

from eduaccess.errors import Conflict, Forbidden, NotFound, StorageFailure
from eduaccess.models import Download, Resource, School
from eduaccess.services.downloads import ClientMeta, DownloadRecorder


@pytest.fixture
def recorder(db, storage):
    return DownloadRecorder(db, storage)


def _downloads(db, resource_id=None):
    query = db.query(Download)
    if resource_id is not None:
        query = query.filter(Download.resource_id == resource_id)
    return query.all()


def test_repeat_downloads_count_once(recorder, approved_resource, student, db, school):
    first = recorder.download(approved_resource.id, student, ClientMeta(ip_address="10.0.0.1"))
    assert first.first_download is True
    assert first.url.startswith("/api/files/")
    assert first.expires_at is None
    assert first.resource.download_count == 1

    second = recorder.download(approved_resource.id, student, ClientMeta(user_agent="Firefox"))
    assert second.first_download is False
    assert second.resource.download_count == 1

    (record,) = _downloads(db, approved_resource.id)
    assert record.user_id == student.id
    assert record.ip_address == "10.0.0.1"
    assert record.user_agent == "Firefox"

    db.refresh(school)
    assert school.total_downloads == 1


def test_distinct_users_each_count(recorder, approved_resource, student, teacher, admin):
    for user in (student, teacher, admin):
        recorder.download(approved_resource.id, user, ClientMeta())
    recorder.download(approved_resource.id, student, ClientMeta())

    grant = recorder.download(approved_resource.id, teacher, ClientMeta())
    assert grant.resource.download_count == 3


def test_pending_resource_is_forbidden_for_students(recorder, make_resource, teacher, student, db):
    resource = make_resource(teacher)
    with pytest.raises(Forbidden):
        recorder.download(resource.id, student, ClientMeta())
    assert _downloads(db) == []


def test_uploader_and_admin_can_download_pending(recorder, make_resource, teacher, admin, db):
    resource = make_resource(teacher)

    assert recorder.download(resource.id, teacher, ClientMeta()).first_download is True
    assert recorder.download(resource.id, admin, ClientMeta()).first_download is True
    assert len(_downloads(db, resource.id)) == 2


def test_unknown_resource(recorder, student):
    with pytest.raises(NotFound):
        recorder.download(999, student, ClientMeta())


def test_url_failure_writes_nothing(recorder, storage, approved_resource, student, db, school, monkeypatch):
    def unreachable(key, display_name):
        raise StorageFailure("Could not generate a download URL")

    monkeypatch.setattr(storage, "get_download_url", unreachable)

    with pytest.raises(StorageFailure):
        recorder.download(approved_resource.id, student, ClientMeta())

    assert _downloads(db) == []
    db.expire_all()
    assert db.get(Resource, approved_resource.id).download_count == 0
    assert db.get(School, school.id).total_downloads == 0


def test_missing_bytes_is_not_found(recorder, storage, approved_resource, student, db):
    storage.path_for(approved_resource.file_key).unlink()
    with pytest.raises(NotFound):
        recorder.download(approved_resource.id, student, ClientMeta())
    assert _downloads(db) == []


def test_duplicate_insert_raises_conflict_without_counting(recorder, approved_resource, student, db, school):
    recorder.download(approved_resource.id, student, ClientMeta())

    # Simulates losing the race: another request inserted the row first
    with pytest.raises(Conflict):
        recorder._insert_first(approved_resource, student, ClientMeta(), None)

    db.expire_all()
    assert db.get(Resource, approved_resource.id).download_count == 1
    assert db.get(School, school.id).total_downloads == 1
    assert len(_downloads(db, approved_resource.id)) == 1


def test_lost_insert_race_is_a_no_op(recorder, approved_resource, student, db, monkeypatch):
    recorder.download(approved_resource.id, student, ClientMeta())

    # Make record() miss the existing row, as if it had been read before the insert
    monkeypatch.setattr(recorder, "_touch", lambda *args: pytest.fail("should not touch"))
    real_query = db.query

    def stale_query(*entities):
        if entities == (Download,):
            return real_query(Download).filter(Download.id < 0)
        return real_query(*entities)

    monkeypatch.setattr(db, "query", stale_query)

    assert recorder.record(approved_resource, student, ClientMeta()) is False

    monkeypatch.undo()
    db.expire_all()
    assert db.get(Resource, approved_resource.id).download_count == 1


def test_history_newest_first(recorder, make_resource, workflow, teacher, admin, student):
    older = make_resource(teacher, title="Older")
    newer = make_resource(teacher, title="Newer")
    for r in (older, newer):
        workflow.approve(r.id, admin.id)

    recorder.record(older, student, ClientMeta(), downloaded_at=datetime.utcnow() - timedelta(hours=2))
    recorder.record(newer, student, ClientMeta())

    history = recorder.history(student)
    assert [d.resource.title for d in history] == ["Newer", "Older"]


# ============================================================================
# OFFLINE SYNC
# ============================================================================

def test_sync_offline_records_and_reports(recorder, approved_resource, make_resource, teacher, student, db):
    pending = make_resource(teacher, title="Pending")
    made_at = datetime.utcnow() - timedelta(days=1)

    result = recorder.sync_offline(student, [
        {"resource_id": approved_resource.id, "downloaded_at": made_at},
        {"resource_id": pending.id, "downloaded_at": None},
        {"resource_id": 999, "downloaded_at": None},
    ])

    assert result["synced"] == [approved_resource.id]
    assert {f["resource_id"]: f["error"] for f in result["failed"]} == {
        pending.id: "Access denied",
        999: "Resource not found",
    }

    (record,) = _downloads(db, approved_resource.id)
    assert record.offline is True
    assert record.sync_status == "synced"
    assert record.downloaded_at == made_at


def test_sync_offline_replay_is_idempotent(recorder, approved_resource, student, db):
    entries = [{"resource_id": approved_resource.id, "downloaded_at": None}]
    recorder.sync_offline(student, entries)
    result = recorder.sync_offline(student, entries)

    assert result == {"synced": [approved_resource.id], "failed": []}
    assert len(_downloads(db, approved_resource.id)) == 1
    db.expire_all()
    assert db.get(Resource, approved_resource.id).download_count == 1
