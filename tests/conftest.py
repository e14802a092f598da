import os
import sys

import pytest

# Add the parent directory to sys.path so we can import main
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.services.blob_store import BlobStore
from app.services.metadata_store import InMemoryMetadataStore
from config import Settings

ADMIN_KEY = "test-admin-key"


def make_settings(**overrides) -> Settings:
    values = dict(hostname="cdn.test", admin_password=ADMIN_KEY)
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def metadata_store():
    return InMemoryMetadataStore()


@pytest.fixture
def blob_store(tmp_path):
    data_dir = tmp_path / "data"
    temp_dir = tmp_path / "temp"
    data_dir.mkdir()
    temp_dir.mkdir()
    return BlobStore(data_dir, temp_dir)


async def read_all(chunks) -> bytes:
    return b"".join([chunk async for chunk in chunks])
