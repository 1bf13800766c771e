"""
Integration tests for the file-bed server and the client that uploads to it.
"""

import os
import time

import pytest
from fastapi.testclient import TestClient

from file_bed_server.main import cleanup_old_files, create_app
from modules.file_uploader import upload_to_file_bed
from modules.image_processor import image_to_base64

API_KEY = "test-key"


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def client(upload_dir):
    return TestClient(create_app(upload_dir=str(upload_dir), api_key=API_KEY, compress_uploads=True))


@pytest.mark.integration
class TestUploadEndpoint:
    def test_rejects_bad_api_key(self, client):
        response = client.post("/upload", json={"file_name": "a.png", "file_data": "data:image/png;base64,QUJD"})
        assert response.status_code == 401

    def test_rejects_bad_base64(self, client):
        response = client.post("/upload", json={
            "file_name": "a.png", "file_data": "data:image/png;base64,AAA", "api_key": API_KEY,
        })
        assert response.status_code == 400

    def test_image_is_compressed_and_served(self, client, upload_dir, images):
        payload = image_to_base64(images.make_bytes(2000, 1000), "image/png")

        response = client.post("/upload", json={"file_name": "foto.png", "file_data": payload, "api_key": API_KEY})

        body = response.json()
        assert body["success"] is True
        assert body["filename"].endswith(".jpg")
        saved = upload_dir / body["filename"]
        assert saved.exists()

        served = client.get(f"/uploads/{body['filename']}")
        assert served.status_code == 200
        assert served.content == saved.read_bytes()
        assert images.size_of(image_to_base64(served.content, "image/jpeg")) == (1200, 600)

    def test_non_image_is_stored_verbatim(self, client, upload_dir):
        response = client.post("/upload", json={
            "file_name": "notes.txt",
            "file_data": "data:text/plain;base64,aGVsbG8=",
            "api_key": API_KEY,
        })

        filename = response.json()["filename"]
        assert filename.endswith(".txt")
        assert (upload_dir / filename).read_bytes() == b"hello"


def _age(path, seconds):
    past = time.time() - seconds
    os.utime(path, (past, past))


@pytest.mark.integration
def test_cleanup_old_files(upload_dir):
    old_file = upload_dir / "old.jpg"
    new_file = upload_dir / "new.jpg"
    old_file.write_bytes(b"x")
    new_file.write_bytes(b"y")
    _age(old_file, 3600)

    assert cleanup_old_files(str(upload_dir), max_age_minutes=10) == 1
    assert not old_file.exists()
    assert new_file.exists()


@pytest.mark.integration
class TestCleanupSchedule:
    def test_uploads_are_kept_by_default(self, upload_dir, restore_config):
        stored = upload_dir / "laporan.jpg"
        stored.write_bytes(b"x")
        _age(stored, 30 * 24 * 3600)

        app = create_app(upload_dir=str(upload_dir), api_key="")
        with TestClient(app) as client:
            assert client.get("/").status_code == 200
            assert app.state.cleanup_enabled is False
            assert app.state.scheduler.get_jobs() == []
            assert client.get("/uploads/laporan.jpg").status_code == 200

        assert stored.exists()

    def test_zero_max_age_disables_cleanup(self, upload_dir):
        app = create_app(upload_dir=str(upload_dir), api_key="", file_max_age_minutes=0)
        with TestClient(app):
            assert app.state.cleanup_enabled is False
            assert not app.state.scheduler.running

    def test_opt_in_cleanup_starts_and_stops_scheduler(self, upload_dir):
        app = create_app(
            upload_dir=str(upload_dir), api_key="",
            cleanup_interval_minutes=5, file_max_age_minutes=1440,
        )
        with TestClient(app) as client:
            assert client.get("/").status_code == 200
            jobs = app.state.scheduler.get_jobs()
            assert len(jobs) == 1
            assert jobs[0].args == (str(upload_dir), 1440)
            assert app.state.scheduler.running

        assert not app.state.scheduler.running


class _FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def json(self, content_type=None):
        return self._body

    async def text(self):
        return str(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _FakeSession:
    def __init__(self, response):
        self.response = response
        self.posted = []

    def post(self, url, json=None, timeout=None):
        self.posted.append((url, json))
        return self.response


@pytest.mark.integration
class TestUploadClient:
    ENDPOINT = {"name": "local", "url": "http://127.0.0.1:5180/upload", "api_key": API_KEY}

    @pytest.mark.asyncio
    async def test_builds_public_url_from_filename(self):
        session = _FakeSession(_FakeResponse(200, {"success": True, "filename": "abc.jpg"}))

        url, error = await upload_to_file_bed(session, "laporan/a.jpg", "data:image/jpeg;base64,QUJD", self.ENDPOINT)

        assert (url, error) == ("http://127.0.0.1:5180/uploads/abc.jpg", None)
        assert session.posted[0][1]["api_key"] == API_KEY

    @pytest.mark.asyncio
    async def test_http_error(self):
        session = _FakeSession(_FakeResponse(401, {"detail": "无效的 API Key"}))
        url, error = await upload_to_file_bed(session, "a.jpg", "data:image/jpeg;base64,QUJD", self.ENDPOINT)
        assert url is None
        assert error.startswith("HTTP 401")
