"""Shared fixtures for the Landlord Decoder test suite.

Provides a Flask test client wired to a temporary SQLite database and
strips provider credentials so no test can reach a real API by accident.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["DECODER_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Suppress the SECRET_KEY startup guard
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("RATE_LIMIT_DEFAULT", "10000/minute")

from app import app  # noqa: E402
from models import init_db, _get_db  # noqa: E402

PROVIDER_ENV = (
    "RENTCAST_API_KEY",
    "OPENAI_API_KEY",
    "MAPBOX_TOKEN",
    "GOOGLE_MAPS_API_KEY",
    "FAMILY_WATCHDOG_API_KEY",
    "FEATURE_SCRAPE_FALLBACK",
    "RATE_LIMIT_ANON",
    "RATE_LIMIT_AUTH",
    "REQUIRE_AUTH",
    "DECODER_MODEL",
    "SENTRY_DSN",
)


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database before every test, keeping the schema intact."""
    init_db()
    conn = _get_db()
    for table in ("kv_store", "events", "decode_jobs", "user_plans"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture()
def client():
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c
