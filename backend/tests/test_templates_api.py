"""Tests for the CSV template upload/list/download/delete endpoints."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.models import Base
from app.models.template import CsvTemplate
from app.services.storage import BUCKET_CSV_TEMPLATES, StorageService

client = TestClient(app)

_CSV = b"Product Name,Price,Category,Size,Region,Theme\nMug,9.99,Kitchen,12oz,US,Autumn\n"


def _make_test_db():
    """Create a shared in-memory DB and return a session factory."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@pytest.fixture
def env(tmp_path):
    """Patch DB and storage for the templates router."""
    SessionLocal = _make_test_db()
    storage = StorageService(base_path=str(tmp_path))
    with (
        patch("app.api.templates.get_db", side_effect=lambda: SessionLocal()),
        patch("app.api.templates.get_storage", return_value=storage),
    ):
        yield SessionLocal, storage


def _upload(content: bytes = _CSV, filename: str = "spring_promo.csv", user_id: str = "user_1"):
    return client.post(
        "/api/csv/templates/upload",
        files={"file": (filename, content, "text/csv")},
        data={"user_id": user_id},
    )


def _count(SessionLocal) -> int:
    db = SessionLocal()
    try:
        return db.query(CsvTemplate).count()
    finally:
        db.close()


def test_upload_stores_header_only_file_and_record(env):
    """Only the header row is kept; the first four columns are required."""
    SessionLocal, storage = env

    r = _upload()

    assert r.status_code == 200
    data = r.json()
    assert data["success"] is True
    template = data["template"]
    assert template["name"] == "Spring Promo Template"
    assert template["required_columns"] == ["Product Name", "Price", "Category", "Size"]
    assert template["optional_columns"] == ["Region", "Theme"]
    assert template["column_descriptions"]["Price"] == "Price or cost value"
    assert template["file_url"].startswith("/api/files/csv-templates/user_1/template_")
    assert storage.url_to_path(template["file_url"]).read_bytes() == (
        b"Product Name,Price,Category,Size,Region,Theme\n"
    )

    db = SessionLocal()
    record = db.get(CsvTemplate, template["id"])
    assert record.storage_bucket == BUCKET_CSV_TEMPLATES
    assert record.sample_data[0]["Price"] == "19.99"
    db.close()


def test_download_renders_template_and_counts(env):
    """Download returns the rendered CSV as an attachment and bumps the counter."""
    SessionLocal, _ = env
    template_id = _upload().json()["template"]["id"]

    r = client.get(f"/api/csv/templates/{template_id}/download")

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert r.headers["content-disposition"] == 'attachment; filename="Spring_Promo_Template_template.csv"'
    lines = r.text.splitlines()
    assert lines[0] == "# Column descriptions:"
    assert lines[1].startswith('# "Enter the product name","Price or cost value"')
    assert lines[3] == "Product Name,Price,Category,Size,Region,Theme"
    assert lines[4].startswith("Example Product Name,19.99,Category Name,Medium,US")

    client.get(f"/api/csv/templates/{template_id}/download")
    db = SessionLocal()
    assert db.get(CsvTemplate, template_id).download_count == 2
    db.close()


def test_download_unknown_or_inactive_template_is_404(env):
    """Missing and deactivated templates cannot be downloaded."""
    SessionLocal, _ = env
    template_id = _upload().json()["template"]["id"]
    db = SessionLocal()
    db.get(CsvTemplate, template_id).is_active = False
    db.commit()
    db.close()

    assert client.get(f"/api/csv/templates/{template_id}/download").status_code == 404
    assert client.get("/api/csv/templates/nope/download").status_code == 404


def test_list_filters_by_user(env):
    """Listing returns active templates, optionally for one user."""
    _upload(user_id="user_1")
    _upload(user_id="user_2", filename="other.csv")

    assert client.get("/api/csv/templates").json()["total"] == 2
    mine = client.get("/api/csv/templates", params={"user_id": "user_2"}).json()
    assert [t["name"] for t in mine["templates"]] == ["Other Template"]


def test_delete_removes_record_and_file(env):
    """Deleting a template removes its row and its stored file."""
    SessionLocal, storage = env
    template = _upload().json()["template"]
    path = storage.url_to_path(template["file_url"])

    r = client.delete(f"/api/csv/templates/{template['id']}")

    assert r.status_code == 204
    assert _count(SessionLocal) == 0
    assert not path.exists()
    assert client.delete(f"/api/csv/templates/{template['id']}").status_code == 404


@pytest.mark.parametrize(
    ("content", "filename", "user_id", "detail"),
    [
        (_CSV, "notes.txt", "user_1", "File must be a CSV or Excel file"),
        (b"", "empty.csv", "user_1", "Template file is empty"),
        (b"Product\nMug\n", "one.csv", "user_1", "at least 2 columns"),
        (b"not a zip file", "broken.xlsx", "user_1", "Could not parse file"),
        (_CSV, "t.csv", "", "User ID is required"),
        (_CSV, "t.csv", "../x", "Invalid userId"),
    ],
)
def test_invalid_uploads_rejected(env, content, filename, user_id, detail):
    """Bad files and user ids are a 400 and nothing is stored."""
    SessionLocal, storage = env

    r = _upload(content, filename, user_id)

    assert r.status_code == 400
    assert detail in r.json()["detail"]
    assert _count(SessionLocal) == 0
    assert not (storage.base_path / BUCKET_CSV_TEMPLATES).exists()


def test_database_failure_cleans_up_stored_file(env):
    """If the record cannot be written the stored file is removed again."""
    SessionLocal, storage = env

    with patch(
        "sqlalchemy.orm.Session.commit",
        side_effect=OperationalError("INSERT", {}, Exception("database is locked")),
    ):
        r = _upload()

    assert r.status_code == 500
    assert r.json()["detail"] == "Failed to create template record"
    assert list((storage.base_path / BUCKET_CSV_TEMPLATES).rglob("*.csv")) == []
