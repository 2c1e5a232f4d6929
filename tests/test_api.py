import json
import re

from fastapi.testclient import TestClient

from upload_relay.config import Settings, get_settings
from upload_relay.main import create_app
from upload_relay.storage import LocalUploadStorage

NO_FILE_MESSAGE = 'No file received. Form field must be named "file".'


def build_client(tmp_path, monkeypatch, *, max_upload_size_bytes: int = 1000000, require_uploader: bool = False):
    upload_dir = tmp_path / "uploads"

    monkeypatch.setenv("RELAY_UPLOAD_DIR", str(upload_dir))
    monkeypatch.setenv("RELAY_MAX_UPLOAD_SIZE_BYTES", str(max_upload_size_bytes))
    monkeypatch.setenv("RELAY_ALLOWED_ORIGINS", '["http://localhost:3000"]')
    monkeypatch.setenv("RELAY_REQUIRE_UPLOADER", "true" if require_uploader else "false")
    get_settings.cache_clear()

    app = create_app()
    return TestClient(app), upload_dir


def stored_files(upload_dir):
    if not upload_dir.exists():
        return []
    return sorted(p.name for p in upload_dir.iterdir() if p.name != "metadata.jsonl")


def ledger_lines(upload_dir):
    ledger = upload_dir / "metadata.jsonl"
    if not ledger.exists():
        return []
    return ledger.read_text(encoding="utf-8").splitlines()


def test_health(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True}


def test_upload_and_download_image(tmp_path, monkeypatch):
    client, upload_dir = build_client(tmp_path, monkeypatch)
    content = bytes(range(256)) * 40
    with client:
        upload = client.post("/upload", files={"file": ("photo one.jpg", content, "image/jpeg")})
        assert upload.status_code == 200
        payload = upload.json()
        assert payload["message"] == "File uploaded successfully"
        record = payload["file"]
        assert record["name"] == "photo one.jpg"
        assert re.fullmatch(r"\d+-photo_one\.jpg", record["savedAs"])
        assert record["url"] == f"/uploads/{record['savedAs']}"
        assert record["contentType"] == "image/jpeg"
        assert record["size"] == len(content)
        assert record["uploadedAt"].endswith("Z")

        download = client.get(record["url"])
        assert download.status_code == 200
        assert download.content == content
        assert download.headers["content-length"] == str(len(content))
        assert download.headers["content-type"] == "image/jpeg"

    assert json.loads(ledger_lines(upload_dir)[0]) == record


def test_upload_rejects_unsupported_type(tmp_path, monkeypatch):
    client, upload_dir = build_client(tmp_path, monkeypatch)
    with client:
        response = client.post(
            "/upload",
            files={"file": ("setup.exe", b"MZ\x90\x00", "application/x-msdownload")},
        )
        assert response.status_code == 400
        assert "Unsupported file type" in response.json()["error"]

    assert stored_files(upload_dir) == []
    assert ledger_lines(upload_dir) == []


def test_missing_file_part_returns_bad_request(tmp_path, monkeypatch):
    client, upload_dir = build_client(tmp_path, monkeypatch)
    with client:
        missing = client.post("/upload", data={"note": "hello"})
        assert missing.status_code == 400
        assert missing.json() == {"error": NO_FILE_MESSAGE}

        wrong_field = client.post("/upload", files={"document": ("a.pdf", b"%PDF-1.4", "application/pdf")})
        assert wrong_field.status_code == 400
        assert wrong_field.json() == {"error": NO_FILE_MESSAGE}

    assert stored_files(upload_dir) == []


def test_upload_rejects_payload_too_large(tmp_path, monkeypatch):
    client, upload_dir = build_client(tmp_path, monkeypatch, max_upload_size_bytes=1000)
    with client:
        just_over = client.post("/upload", files={"file": ("big.pdf", b"a" * 1001, "application/pdf")})
        assert just_over.status_code == 413
        assert "maximum upload size" in just_over.json()["error"]

        huge = client.post("/upload", files={"file": ("huge.pdf", b"a" * 200_000, "application/pdf")})
        assert huge.status_code == 413

    assert stored_files(upload_dir) == []
    assert ledger_lines(upload_dir) == []


def test_zero_byte_file_is_accepted(tmp_path, monkeypatch):
    client, upload_dir = build_client(tmp_path, monkeypatch)
    with client:
        response = client.post("/upload", files={"file": ("empty.png", b"", "image/png")})
        assert response.status_code == 200
        assert response.json()["file"]["size"] == 0

    assert len(stored_files(upload_dir)) == 1


def test_unknown_upload_returns_not_found(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        response = client.get("/uploads/1700000000000-missing.png")
        assert response.status_code == 404
        assert response.json() == {"error": "File not found"}


def test_ledger_file_is_not_served(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        client.post("/upload", files={"file": ("a.png", b"png", "image/png")})
        assert client.get("/uploads/metadata.jsonl").status_code == 404


def test_traversal_filename_is_neutralized(tmp_path, monkeypatch):
    client, upload_dir = build_client(tmp_path, monkeypatch)
    with client:
        response = client.post("/upload", files={"file": ("../../etc/passwd", b"root", "image/png")})
        assert response.status_code == 200
        saved_as = response.json()["file"]["savedAs"]

    assert re.fullmatch(r"\d+-[\w.\-()]+", saved_as, re.ASCII)
    assert "/" not in saved_as
    assert (upload_dir / saved_as).read_bytes() == b"root"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["uploads"]


def test_ledger_only_grows(tmp_path, monkeypatch):
    client, upload_dir = build_client(tmp_path, monkeypatch)
    with client:
        client.post("/upload", files={"file": ("one.pdf", b"%PDF-1", "application/pdf")})
        first = ledger_lines(upload_dir)
        client.post("/upload", files={"file": ("two.pdf", b"%PDF-2", "application/pdf")})
        second = ledger_lines(upload_dir)

    assert len(first) == 1
    assert len(second) == 2
    assert second[0] == first[0]
    assert json.loads(second[1])["name"] == "two.pdf"


def test_same_filename_uploads_do_not_collide(tmp_path, monkeypatch):
    client, upload_dir = build_client(tmp_path, monkeypatch)
    with client:
        names = [
            client.post("/upload", files={"file": ("dup.png", f"v{i}".encode(), "image/png")}).json()["file"]["savedAs"]
            for i in range(5)
        ]

    assert len(set(names)) == 5
    assert sorted((upload_dir / name).read_bytes() for name in names) == [f"v{i}".encode() for i in range(5)]


def test_upload_rejects_untrusted_origin(tmp_path, monkeypatch):
    client, upload_dir = build_client(tmp_path, monkeypatch)
    with client:
        rejected = client.post(
            "/upload",
            headers={"Origin": "http://evil.example"},
            files={"file": ("a.png", b"png", "image/png")},
        )
        assert rejected.status_code == 403
        assert rejected.json() == {"error": "Origin not allowed"}
        assert stored_files(upload_dir) == []

        allowed = client.post(
            "/upload",
            headers={"Origin": "http://localhost:3000"},
            files={"file": ("a.png", b"png", "image/png")},
        )
        assert allowed.status_code == 200
        assert allowed.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_uploader_header_required_when_enabled(tmp_path, monkeypatch):
    client, upload_dir = build_client(tmp_path, monkeypatch, require_uploader=True)
    with client:
        anonymous = client.post("/upload", files={"file": ("a.png", b"png", "image/png")})
        assert anonymous.status_code == 401
        assert "X-Uploader-Id" in anonymous.json()["error"]

        named = client.post(
            "/upload",
            headers={"X-Uploader-Id": "student-42"},
            files={"file": ("a.png", b"png", "image/png")},
        )
        assert named.status_code == 200
        assert "uploadedBy" not in named.json()["file"]

    entry = json.loads(ledger_lines(upload_dir)[0])
    assert entry["uploadedBy"] == "student-42"


class FailingLedgerStorage(LocalUploadStorage):
    def record_metadata(self, record, uploader=None):
        raise OSError(28, "No space left on device")


class FailingDiskStorage(LocalUploadStorage):
    def put(self, **kwargs):
        raise PermissionError(13, "Permission denied", str(self.root))


def test_ledger_failure_leaves_orphan_and_hides_details(tmp_path):
    upload_dir = tmp_path / "uploads"
    storage = FailingLedgerStorage(str(upload_dir))
    client = TestClient(create_app(Settings(upload_dir=str(upload_dir)), storage=storage))
    with client:
        response = client.post("/upload", files={"file": ("a.png", b"png", "image/png")})
        assert response.status_code == 500
        assert response.json() == {"error": "Upload failed on server"}

    orphans = storage.find_orphans()
    assert len(orphans) == 1
    assert (upload_dir / orphans[0]).read_bytes() == b"png"
    assert ledger_lines(upload_dir) == []


def test_storage_failure_returns_server_error(tmp_path):
    upload_dir = tmp_path / "uploads"
    client = TestClient(create_app(Settings(upload_dir=str(upload_dir)), storage=FailingDiskStorage(str(upload_dir))))
    with client:
        response = client.post("/upload", files={"file": ("a.png", b"png", "image/png")})
        assert response.status_code == 500
        assert response.json() == {"error": "Upload failed on server"}
        assert str(upload_dir) not in response.text

    assert ledger_lines(upload_dir) == []


def test_very_long_filename_is_stored(tmp_path, monkeypatch):
    client, upload_dir = build_client(tmp_path, monkeypatch)
    original = "a" * 300 + ".png"
    with client:
        response = client.post("/upload", files={"file": (original, b"png", "image/png")})
        assert response.status_code == 200
        record = response.json()["file"]
        assert record["name"] == original
        assert len(record["savedAs"].encode()) <= 255
        assert record["savedAs"].endswith(".png")
        assert client.get(record["url"]).content == b"png"

    assert (upload_dir / record["savedAs"]).read_bytes() == b"png"


def test_error_shape_is_documented(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        schema = client.get("/openapi.json").json()

    upload_responses = schema["paths"]["/upload"]["post"]["responses"]
    assert upload_responses["413"]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")
    assert "404" in schema["paths"]["/uploads/{storage_name}"]["get"]["responses"]
