"""
Shared fixtures.
"""
import pytest
from PIL import Image

from clipguard.db.connection import configure_database, init_db


@pytest.fixture
def db():
    """Fresh in-memory database per test."""
    configure_database("sqlite://")
    init_db()
    yield


@pytest.fixture
def write_png():
    """Return a helper that writes a small decodable PNG to a path."""
    def _write(path, color="blue"):
        Image.new("RGB", (32, 24), color).save(path, "PNG")
        return str(path)
    return _write
