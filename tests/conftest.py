"""
Pytest configuration and fixtures for Variant Bridge tests.
"""

import os
import shutil
import tempfile
from typing import Dict, List, Optional, Set

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
_TEST_ROOT = tempfile.mkdtemp(prefix="variant_bridge_test_")
os.environ["VARIANT_BRIDGE_DB_PATH"] = os.path.join(_TEST_ROOT, "app.db")
os.environ["LOCAL_STORAGE_DIR"] = os.path.join(_TEST_ROOT, "blobs")
os.environ["STORAGE_BACKEND"] = "local"
os.environ["BRIDGE_MASTER_KEY"] = "test-master-key-12345"
os.environ["BYPASS_AUTH"] = "false"

from variant_bridge.blob_store import BlobStore
from variant_bridge.configuration import make_settings
from variant_bridge.database import BridgeDatabase
from variant_bridge.errors import StorageError
from variant_bridge.job_manager import JobManager
from variant_bridge.key_manager import KeyManager
from variant_bridge.main import app, get_blob_store, get_job_manager, get_key_manager, get_variant_manager
from variant_bridge.models import ArtifactRef, Role, VariantCreate
from variant_bridge.variant_manager import VariantManager

MASTER_KEY = "test-master-key-12345"


class RecordingBlobStore(BlobStore):
    """In-memory blob store that records calls and can be told to fail deletes."""

    def __init__(self) -> None:
        super().__init__()
        self.blobs: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail_on: Set[str] = set()

    def put(self, path: str, data: bytes, content_type: str, is_public: bool = False) -> str:
        self.blobs[path] = data
        return path

    def get_url(self, path: str, is_public: bool = False) -> str:
        if is_public:
            return f"https://blobs.test/{path}"
        return f"https://blobs.test/{path}?signature=test"

    def delete(self, path: str) -> None:
        if path in self.fail_on:
            raise StorageError(f"Simulated delete failure for {path}")
        self.deleted.append(path)
        self.blobs.pop(path, None)


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the directories the app module was pointed at."""
    yield _TEST_ROOT
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def database(tmp_path):
    return BridgeDatabase(tmp_path / "bridge.db")


@pytest.fixture
def blob_store():
    return RecordingBlobStore()


@pytest.fixture
def job_manager(database, blob_store, settings):
    return JobManager(database, blob_store, settings)


@pytest.fixture
def variant_manager(database, blob_store):
    return VariantManager(database, blob_store)


@pytest.fixture
def key_manager(tmp_path):
    return KeyManager(str(tmp_path / "keys.db"), master_key=MASTER_KEY)


@pytest.fixture
def item_id(database):
    """Seed one item with its full school/team/project/template chain."""
    database.insert_context_record(
        "schools",
        {"id": "school-1", "name": "Lincoln High", "abbreviation": "LHS", "primary_color": "#002244"},
    )
    database.insert_context_record("teams", {"id": "team-1", "school_id": "school-1", "name": "Varsity", "sport": "football"})
    database.insert_context_record("projects", {"id": "project-1", "team_id": "team-1", "name": "Fall Uniforms"})
    database.insert_context_record(
        "templates",
        {"id": "template-1", "name": "Jersey A", "category": "jersey", "svg_path": "templates/jersey-a.svg", "svg_is_public": 1},
    )
    database.insert_context_record(
        "items", {"id": "item-1", "project_id": "project-1", "template_id": "template-1", "name": "Home Jersey"}
    )
    return "item-1"


@pytest.fixture
def make_variant(variant_manager, item_id):
    """Factory creating preview variants under the seeded item."""

    def factory(name: str = "Variant 1", preview_path: Optional[str] = None, configuration=None):
        payload = VariantCreate(
            variant_name=name,
            configuration=configuration if configuration is not None else {"layers": [], "patterns": []},
            preview_artifact=ArtifactRef(path=preview_path, is_public=True) if preview_path else None,
        )
        return variant_manager.create_variant(item_id, payload)

    return factory


@pytest.fixture
def client(job_manager, variant_manager, blob_store, key_manager):
    """Test client wired to per-test managers instead of the module-level ones."""
    app.dependency_overrides[get_job_manager] = lambda: job_manager
    app.dependency_overrides[get_variant_manager] = lambda: variant_manager
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_key_manager] = lambda: key_manager
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-API-Key": MASTER_KEY}


@pytest.fixture
def bridge_headers(key_manager):
    raw_key, _ = key_manager.create_key("bridge-worker", Role.BRIDGE)
    return {"X-API-Key": raw_key}


@pytest.fixture
def designer_headers(key_manager):
    raw_key, _ = key_manager.create_key("designer", Role.DESIGNER)
    return {"X-API-Key": raw_key}
