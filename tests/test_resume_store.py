"""Tests for persisted resume state"""
from datetime import timedelta

from sqlalchemy import update

from resumable_upload.models.resume_record import ResumeRecord, utcnow
from resumable_upload.models.session import UploadSession
from resumable_upload.services.planner import plan_chunks
from resumable_upload.services.resume_store import ResumeStore


def make_session(session_id="s1") -> UploadSession:
    return UploadSession(
        id=session_id,
        file_name="video.mp4",
        file_size=10_000,
        content_type="video/mp4",
        file_hash="d41d8cd98f00b204e9800998ecf8427e",
        plan=plan_chunks(10_000, 4096),
        metadata={"album": "holiday"},
        destination_token="token-123",
    )


def test_save_and_get(resume_store):
    resume_store.save(make_session(), source_path="/data/video.mp4")

    record = resume_store.get("s1")
    assert record.file_name == "video.mp4"
    assert record.file_size == 10_000
    assert record.chunk_size == 4096
    assert record.total_chunks == 3
    assert record.source_path == "/data/video.mp4"
    assert record.destination_token == "token-123"
    assert record.caller_metadata == {"album": "holiday"}
    assert record.status == "initialized"
    assert record.hash_algorithm == "md5"


def test_state_survives_a_new_store(tmp_path):
    url = f"sqlite:///{tmp_path / 'state' / 'resume.db'}"
    ResumeStore(db_url=url).save(make_session())

    assert ResumeStore(db_url=url).get("s1") is not None


def test_get_missing(resume_store):
    assert resume_store.get("nope") is None


def test_list_and_delete(resume_store):
    resume_store.save(make_session("s1"))
    resume_store.save(make_session("s2"))

    assert {r.session_id for r in resume_store.list()} == {"s1", "s2"}
    assert resume_store.delete("s1") is True
    assert resume_store.delete("s1") is False
    assert [r.session_id for r in resume_store.list()] == ["s2"]


def test_update_status(resume_store):
    resume_store.save(make_session())

    assert resume_store.update_status("s1", "failed") is True
    assert resume_store.get("s1").status == "failed"
    assert resume_store.update_status("nope", "failed") is False


def test_lease_is_exclusive(resume_store):
    resume_store.save(make_session())

    assert resume_store.acquire_lease("s1", "owner-a") is True
    assert resume_store.acquire_lease("s1", "owner-a") is True
    assert resume_store.acquire_lease("s1", "owner-b") is False

    resume_store.release_lease("s1", "owner-a")
    assert resume_store.acquire_lease("s1", "owner-b") is True


def test_release_by_non_owner_is_ignored(resume_store):
    resume_store.save(make_session())
    resume_store.acquire_lease("s1", "owner-a")

    resume_store.release_lease("s1", "owner-b")
    assert resume_store.get("s1").lease_owner == "owner-a"


def test_expired_lease_can_be_taken_over(resume_store):
    resume_store.save(make_session())
    resume_store.acquire_lease("s1", "owner-a")

    with resume_store._db() as db:
        db.execute(
            update(ResumeRecord)
            .where(ResumeRecord.session_id == "s1")
            .values(lease_expires_at=utcnow() - timedelta(seconds=1))
        )

    assert resume_store.acquire_lease("s1", "owner-b") is True


def test_refresh_lease_only_for_owner(resume_store):
    resume_store.save(make_session())
    resume_store.acquire_lease("s1", "owner-a")

    assert resume_store.refresh_lease("s1", "owner-a", status="uploading") is True
    assert resume_store.refresh_lease("s1", "owner-b") is False
    assert resume_store.get("s1").status == "uploading"


def test_lease_on_missing_record(resume_store):
    assert resume_store.acquire_lease("nope", "owner-a") is False


def test_to_dict(resume_store):
    resume_store.save(make_session(), source_path="/data/video.mp4")
    data = resume_store.get("s1").to_dict()

    assert data["session_id"] == "s1"
    assert data["caller_metadata"] == {"album": "holiday"}
    assert "lease_owner" not in data


def test_home_relative_sqlite_path(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    store = ResumeStore(db_url="sqlite:///~/state/resume.db")
    store.save(make_session())

    assert (tmp_path / "state" / "resume.db").exists()
    assert ResumeStore(db_url=f"sqlite:///{tmp_path / 'state' / 'resume.db'}").get("s1") is not None
