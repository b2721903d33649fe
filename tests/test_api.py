# tests/test_api.py

import json
import os

import pytest
from fastapi.testclient import TestClient

import tasks
from config import THUMBNAIL_DIR, UPLOAD_DIR
from database import SessionLocal
from jobs import advance_job, fail_job, get_job
from main import app
from models import ErrorCode, JobStatus, RenderJob

JPEG = b"\xff\xd8\xff\xe0fake-jpeg"


@pytest.fixture
def enqueued(monkeypatch):
    submitted = []
    monkeypatch.setattr(tasks, "enqueue_render", submitted.append)
    return submitted


@pytest.fixture
def client():
    return TestClient(app)


def _photo_fields(count, content_type="image/jpeg", ext="jpg"):
    return [("photos", (f"photo_{i}.{ext}", JPEG, content_type)) for i in range(count)]


def _job_count():
    db = SessionLocal()
    try:
        return db.query(RenderJob).count()
    finally:
        db.close()


def test_root(client):
    assert client.get("/").status_code == 200


def test_create_from_photos_queues_a_job(client, enqueued):
    response = client.post(
        "/create-from-photos/",
        files=_photo_fields(7),
        data={"settings": json.dumps({"transition": "zoom", "duration_per_photo": 3})},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "queued"
    assert body["estimated_time"] == 70
    assert enqueued == [body["job_id"]]

    status = client.get(f"/video-status/{body['job_id']}").json()
    assert status["status"] == "queued"
    assert status["progress"] == 0
    assert status["video_url"] is None


def test_uploaded_photos_are_stored_in_order(client, enqueued):
    response = client.post("/create-from-photos/", files=_photo_fields(8))
    job_id = response.json()["job_id"]

    db = SessionLocal()
    try:
        job = db.query(RenderJob).filter(RenderJob.id == job_id).first()
        photos, transition = job.photos, job.transition
    finally:
        db.close()

    assert len(photos) == 8
    assert [os.path.basename(p) for p in photos] == [f"photo_{i:02d}.jpg" for i in range(8)]
    assert all(os.path.exists(p) for p in photos)
    assert transition == "fade"


def test_optional_audio_is_stored(client, enqueued):
    files = _photo_fields(7) + [("audio", ("track.mp3", b"ID3audio", "audio/mpeg"))]
    response = client.post("/create-from-photos/", files=files)

    assert response.status_code == 200
    job = get_job(response.json()["job_id"])
    assert job.audio_path == os.path.join(UPLOAD_DIR, job.id, "audio.mp3")
    with open(job.audio_path, "rb") as f:
        assert f.read() == b"ID3audio"


@pytest.mark.parametrize("count", [6, 9])
def test_wrong_photo_count_is_rejected_before_job_creation(client, enqueued, count):
    response = client.post("/create-from-photos/", files=_photo_fields(count))

    assert response.status_code == 400
    assert _job_count() == 0
    assert enqueued == []


def test_missing_photos_is_rejected(client, enqueued):
    response = client.post("/create-from-photos/", data={"settings": "{}"})

    assert response.status_code == 400
    assert _job_count() == 0


def test_wrong_file_type_is_rejected(client, enqueued):
    files = _photo_fields(6) + [("photos", ("clip.gif", b"GIF89a", "image/gif"))]
    response = client.post("/create-from-photos/", files=files)

    assert response.status_code == 400
    assert _job_count() == 0


def test_bad_settings_are_rejected(client, enqueued):
    response = client.post(
        "/create-from-photos/",
        files=_photo_fields(7),
        data={"settings": json.dumps({"duration_per_photo": 30})},
    )

    assert response.status_code == 400
    assert _job_count() == 0


def test_enqueue_failure_marks_job_failed(client, monkeypatch):
    def broken(job_id):
        raise ConnectionError("redis unavailable")

    monkeypatch.setattr(tasks, "enqueue_render", broken)
    response = client.post("/create-from-photos/", files=_photo_fields(7))

    assert response.status_code == 500
    db = SessionLocal()
    try:
        job = db.query(RenderJob).one()
        assert job.status == JobStatus.FAILED
        assert job.error_code == ErrorCode.INTERNAL_ERROR
    finally:
        db.close()


def test_unknown_job_returns_404(client):
    response = client.get("/video-status/not-a-real-job")

    assert response.status_code == 404
    assert response.json() == {"detail": "Job not found."}


def test_status_reports_result_and_errors(client, enqueued):
    done_id = client.post("/create-from-photos/", files=_photo_fields(7)).json()["job_id"]
    failed_id = client.post("/create-from-photos/", files=_photo_fields(7)).json()["job_id"]

    advance_job(done_id, status=JobStatus.PROCESSING, progress=10)
    advance_job(done_id, status=JobStatus.UPLOADING, progress=70)
    advance_job(done_id, status=JobStatus.DONE, progress=100, video_url="https://embed/vi1")
    fail_job(failed_id, ErrorCode.UPLOAD_FAILED, "Failed to upload video: 503")

    done = client.get(f"/video-status/{done_id}").json()
    assert done["status"] == "done"
    assert done["progress"] == 100
    assert done["video_url"] == "https://embed/vi1"
    assert done["completed_at"] is not None

    failed = client.get(f"/video-status/{failed_id}").json()
    assert failed["status"] == "failed"
    assert failed["error_code"] == "upload_failed"
    assert "503" in failed["error"]


def test_thumbnail_is_served(client):
    os.makedirs(THUMBNAIL_DIR, exist_ok=True)
    with open(os.path.join(THUMBNAIL_DIR, "job-1.jpg"), "wb") as f:
        f.write(JPEG)

    response = client.get("/thumbnails/job-1.jpg")

    assert response.status_code == 200
    assert response.content == JPEG
    assert client.get("/thumbnails/missing.jpg").status_code == 404


def test_api_token_guard(client, enqueued, monkeypatch):
    monkeypatch.setattr("routers.slideshow.API_TOKEN", "t0ken")

    assert client.get("/video-status/abc").status_code == 401
    response = client.get("/video-status/abc", headers={"Authorization": "Bearer t0ken"})
    assert response.status_code == 404
    assert client.post("/create-from-photos/", files=_photo_fields(7)).status_code == 401
    assert enqueued == []


def test_thumbnails_are_public_when_token_is_set(client, monkeypatch):
    monkeypatch.setattr("routers.slideshow.API_TOKEN", "t0ken")
    os.makedirs(THUMBNAIL_DIR, exist_ok=True)
    with open(os.path.join(THUMBNAIL_DIR, "job-2.jpg"), "wb") as f:
        f.write(JPEG)

    response = client.get("/thumbnails/job-2.jpg")

    assert response.status_code == 200
    assert response.content == JPEG
