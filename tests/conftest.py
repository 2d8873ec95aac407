import sys
from pathlib import Path

import pytest

# Modules under api/ import each other by bare name, as they do when the service runs.
API_DIR = Path(__file__).resolve().parents[1] / "api"
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

from config import Settings  # noqa: E402
from database import Database  # noqa: E402
from store import JobStore, SongStore, StemStore, UserStore  # noqa: E402


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        app_name="Test Converter",
        data_dir=str(tmp_path),
        db_path=str(tmp_path / "test.db"),
        uploads_dir=str(tmp_path / "uploads"),
        stems_dir=str(tmp_path / "stems"),
        cookies_candidates=(),
        cookies_upload_path=str(tmp_path / "cookies" / "youtube.txt"),
        analyze_bpm=False,
        admin_token="admin-secret",
    )


@pytest.fixture
def database(settings) -> Database:
    database = Database(settings.db_path)
    database.init_db()
    return database


@pytest.fixture
def users(database) -> UserStore:
    return UserStore(database)


@pytest.fixture
def jobs(database) -> JobStore:
    return JobStore(database)


@pytest.fixture
def songs(database) -> SongStore:
    return SongStore(database)


@pytest.fixture
def stems(database) -> StemStore:
    return StemStore(database)


@pytest.fixture
def user_id(users) -> str:
    user, _ = users.create("Ana", "ana@example.com", "hunter2")
    return user.id
