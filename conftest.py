"""
Pytest configuration and shared fixtures.

DATABASE_URL is pointed at a throwaway SQLite file before any package
module is imported, so the module-level engine is created against it.
"""

import os
import tempfile

import pytest

_test_db_dir = tempfile.mkdtemp(prefix="sms-gateway-tests-")
# Always a throwaway file: fixtures drop every table after each test
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_test_db_dir, "test.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from sms_gateway.config import get_settings  # noqa: E402
get_settings.cache_clear()

from sms_gateway import models  # noqa: E402,F401
from sms_gateway.storage import Base, SessionLocal, engine  # noqa: E402


@pytest.fixture(scope="function")
def db():
    """Fresh schema and a session for direct repository calls."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
