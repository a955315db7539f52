"""
Pytest configuration and fixtures for Playbill Backend tests.
"""

import io
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Mapping, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Set test environment variables before importing the app
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="playbill_test_data_")
os.environ["PLAYBILL_DB_PATH"] = os.path.join(_TEST_DATA_DIR, "app.db")
os.environ["APP_ENV"] = "test"
os.environ["S3_URL_MODE"] = "public"
os.environ["AWS_ACCESS_KEY_ID"] = "test-access-key"
os.environ["AWS_SECRET_ACCESS_KEY"] = "test-secret-key"
os.environ["AWS_S3_BUCKET"] = "playbill-test-bucket"
os.environ["AWS_REGION"] = "us-east-1"

from playbill_backend.catalog import EntityCatalog
from playbill_backend.configuration import make_settings
from playbill_backend.database import AssetDatabase
from playbill_backend.errors import StorageFault
from playbill_backend.image_processor import ImageProcessor
from playbill_backend.main import app, get_token_store, get_upload_manager
from playbill_backend.s3_service import ObjectStore
from playbill_backend.token_store import Principal, TokenStore
from playbill_backend.upload_manager import UploadManager
from playbill_backend.validation import FileValidator


class FakeObjectStore(ObjectStore):
    """In-memory object store that records every call."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.puts: List[str] = []
        self.deletes: List[str] = []
        self.fail_put = False
        self.fail_delete_keys: set[str] = set()
        self.ensure_calls = 0

    def ensure_configured(self) -> None:
        self.ensure_calls += 1

    def put(self, data: bytes, key: str, content_type: str, metadata: Optional[Mapping[str, str]] = None) -> str:
        self.puts.append(key)
        if self.fail_put:
            raise StorageFault("Access denied to S3 bucket. Check IAM permissions and bucket policy.")
        self.objects[key] = data
        return f"https://playbill-test-bucket.s3.us-east-1.amazonaws.com/{key}"

    def delete(self, key: str) -> None:
        self.deletes.append(key)
        if key in self.fail_delete_keys:
            raise StorageFault("Failed to delete file: InternalError")
        self.objects.pop(key, None)


def make_image(width: int, height: int, fmt: str = "JPEG", color=(200, 30, 60)) -> bytes:
    """Encode a solid-colour image of the given size."""
    mode = "RGBA" if fmt == "PNG" else "RGB"
    fill = color + (255,) if mode == "RGBA" else color
    buffer = io.BytesIO()
    Image.new(mode, (width, height), fill).save(buffer, format=fmt)
    return buffer.getvalue()


def auth(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="session", autouse=True)
def test_data_dir():
    """Cleanup the app-level test database after all tests."""
    yield Path(_TEST_DATA_DIR)
    shutil.rmtree(_TEST_DATA_DIR, ignore_errors=True)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "playbill.db"


@pytest.fixture
def registry(db_path):
    return AssetDatabase(db_path)


@pytest.fixture
def catalog(db_path):
    return EntityCatalog(db_path)


@pytest.fixture
def tokens(db_path):
    return TokenStore(db_path)


@pytest.fixture
def store():
    return FakeObjectStore()


@pytest.fixture
def manager(settings, store, registry, catalog):
    return UploadManager(
        store=store,
        registry=registry,
        catalog=catalog,
        validator=FileValidator(settings.policies, settings.min_dimension, settings.max_pixels),
        processor=ImageProcessor(settings.policies),
    )


@pytest.fixture
def client(manager, tokens):
    """Create a test client wired to the fake store and a per-test database."""
    app.dependency_overrides[get_upload_manager] = lambda: manager
    app.dependency_overrides[get_token_store] = lambda: tokens
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def musical_id(catalog):
    return catalog.add_musical("Hadestown")


@pytest.fixture
def performance_id(catalog, musical_id):
    return catalog.add_performance(musical_id, "Opening night")


@pytest.fixture
def user():
    return Principal(id=str(uuid4()), role="user")


@pytest.fixture
def other_user():
    return Principal(id=str(uuid4()), role="user")


@pytest.fixture
def admin():
    return Principal(id=str(uuid4()), role="admin")


@pytest.fixture
def user_token(tokens, user):
    raw_token, _ = tokens.issue_token(user.id, user.role)
    return raw_token


@pytest.fixture
def other_user_token(tokens, other_user):
    raw_token, _ = tokens.issue_token(other_user.id, other_user.role)
    return raw_token


@pytest.fixture
def admin_token(tokens, admin):
    raw_token, _ = tokens.issue_token(admin.id, admin.role)
    return raw_token


@pytest.fixture
def poster_jpeg():
    """A 2000x3000 JPEG, larger than the poster bounding box."""
    return make_image(2000, 3000)


@pytest.fixture
def profile_png():
    return make_image(640, 480, fmt="PNG")


@pytest.fixture
def image_factory():
    return make_image


@pytest.fixture
def bearer():
    return auth
