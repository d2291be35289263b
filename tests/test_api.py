import time

from fastapi.testclient import TestClient

from app.config import get_settings
from app.main import create_app
from tests.helpers import KOBO, OTHER_KOBO, PHONE


def build_client(tmp_path, monkeypatch, *, expire_delay_seconds: float = 30, max_upload_size_bytes: int = 1000000):
    storage_dir = tmp_path / "uploads"

    monkeypatch.setenv("HANDOFF_STORAGE_DIR", str(storage_dir))
    monkeypatch.setenv("HANDOFF_MAX_UPLOAD_SIZE_BYTES", str(max_upload_size_bytes))
    monkeypatch.setenv("HANDOFF_EXPIRE_DELAY_SECONDS", str(expire_delay_seconds))
    get_settings.cache_clear()

    app = create_app()
    return TestClient(app), storage_dir


def generate(client, agent: str = KOBO):
    return client.post("/generate", headers={"User-Agent": agent})


def upload(client, key: str, name: str = "book.epub", content: bytes = b"epub bytes", **data):
    return client.post(
        "/upload",
        data={"key": key, **data},
        files={"file": (name, content, "application/epub+zip")},
        headers={"User-Agent": PHONE},
    )


def test_root_and_health(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        assert client.get("/").json()["status"] == "ok"
        generate(client)
        health = client.get("/health").json()
        assert health == {"status": "ok", "environment": "dev", "sessions": 1}


def test_generate_requires_reader(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        refused = generate(client, PHONE)
        assert refused.status_code == 403
        assert refused.json()["error"]["code"] == "forbidden"


def test_send_book_to_reader(tmp_path, monkeypatch):
    client, storage_dir = build_client(tmp_path, monkeypatch)
    with client:
        issued = generate(client)
        assert issued.status_code == 200
        key = issued.text
        assert len(key) == 4

        sent = upload(client, key.lower(), content=b"the whole book")
        assert sent.status_code == 201
        assert sent.json()["key"] == key
        assert sent.json()["filename"] == "book.epub"

        status = client.get(f"/status/{key}", headers={"User-Agent": KOBO})
        assert status.status_code == 200
        assert status.json()["file"] == {"name": "book.epub"}

        download = client.get(f"/download/{key}", headers={"User-Agent": KOBO})
        assert download.status_code == 200
        assert download.content == b"the whole book"
        assert download.headers["content-type"] == "application/epub+zip"
        assert download.headers["content-disposition"] == 'attachment; filename="book.epub"'

        assert len(list(storage_dir.iterdir())) == 1

    # shutdown drops sessions and their files
    assert list(storage_dir.iterdir()) == []


def test_download_hides_key_from_other_devices(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        key = generate(client).text
        upload(client, key)

        wrong_device = client.get(f"/download/{key}", headers={"User-Agent": OTHER_KOBO})
        unknown_key = client.get("/download/0000", headers={"User-Agent": KOBO})
        assert wrong_device.status_code == unknown_key.status_code == 404
        assert wrong_device.json() == unknown_key.json()

        wrong_status = client.get(f"/status/{key}", headers={"User-Agent": OTHER_KOBO})
        unknown_status = client.get("/status/0000", headers={"User-Agent": KOBO})
        assert wrong_status.status_code == unknown_status.status_code == 404
        assert wrong_status.json() == unknown_status.json()
        assert wrong_status.json()["error"]["code"] == "unknown_session"


def test_download_non_ascii_name(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        key = generate(client).text
        upload(client, key, name="Ärger im Café.epub")

        download = client.get(f"/download/{key}", headers={"User-Agent": KOBO})
        assert download.status_code == 200
        assert download.headers["content-disposition"] == (
            "attachment; filename=\"Arger im Cafe.epub\"; "
            "filename*=utf-8''%C3%84rger%20im%20Caf%C3%A9.epub"
        )


def test_release_keeps_key(tmp_path, monkeypatch):
    client, storage_dir = build_client(tmp_path, monkeypatch)
    with client:
        key = generate(client).text
        upload(client, key)

        released = client.delete(f"/file/{key}")
        assert released.status_code == 200
        assert released.text == "ok"
        assert list(storage_dir.iterdir()) == []

        status = client.get(f"/status/{key}", headers={"User-Agent": KOBO})
        assert status.status_code == 200
        assert status.json()["file"] is None

        assert client.delete("/file/0000").json()["error"]["code"] == "unknown_session"


def test_upload_rejections(tmp_path, monkeypatch):
    client, storage_dir = build_client(tmp_path, monkeypatch)
    with client:
        key = generate(client).text

        unknown = upload(client, "0000")
        assert unknown.status_code == 404
        assert unknown.json()["error"]["code"] == "unknown_session"

        wrong_type = upload(client, key, name="book.pdf")
        assert wrong_type.status_code == 400
        assert wrong_type.json()["error"]["code"] == "invalid_payload"

        empty = upload(client, key, content=b"")
        assert empty.status_code == 400
        assert empty.json()["error"]["code"] == "invalid_payload"

        huge = upload(client, key, content=b"a" * 1_000_001)
        assert huge.status_code == 413
        assert huge.json()["error"]["code"] == "payload_too_large"

        assert list(storage_dir.iterdir()) == []


def test_missing_required_parameter_returns_bad_request(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        missing = client.post(
            "/upload",
            files={"file": ("book.epub", b"hello", "application/epub+zip")},
        )
        assert missing.status_code == 400
        body = missing.json()
        assert body["error"]["code"] == "bad_request"
        assert "missing parameters" in body["error"]["message"]


def test_idle_key_expires(tmp_path, monkeypatch):
    client, storage_dir = build_client(tmp_path, monkeypatch, expire_delay_seconds=0.5)
    with client:
        key = generate(client).text
        upload(client, key)

        time.sleep(1.5)
        expired = client.get(f"/status/{key}", headers={"User-Agent": KOBO})
        assert expired.status_code == 404
        assert client.get("/health").json()["sessions"] == 0
        assert list(storage_dir.iterdir()) == []
