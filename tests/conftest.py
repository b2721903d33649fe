# tests/conftest.py

import os
import sys
import tempfile

import pytest

# Point every path and the database at a scratch directory before the app modules load
_SCRATCH = tempfile.mkdtemp(prefix="slideshow-tests-")
os.environ["PROJECT_ROOT"] = _SCRATCH
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_SCRATCH, 'test.db')}"
os.environ["TASK_BACKEND"] = "local"
os.environ.pop("API_TOKEN", None)
os.environ.pop("WEBHOOK_URL", None)

# Add the parent directory to the Python path so we can import from it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, engine  # noqa: E402
import models  # noqa: E402,F401


@pytest.fixture(autouse=True)
def fresh_database():
    """Every test starts with empty tables."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def photo_files(tmp_path):
    """Writes n small fake photos to disk and returns their paths."""
    def _make(count=7):
        paths = []
        for index in range(count):
            path = tmp_path / f"photo_{index}.jpg"
            path.write_bytes(b"\xff\xd8\xff\xe0fake-jpeg")
            paths.append(str(path))
        return paths
    return _make
