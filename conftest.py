import os
import shutil
import tempfile

import pytest
from sqlalchemy import event

# Create a temporary SQLite database file for the whole test session
_TEMP_DIR = tempfile.mkdtemp(prefix="affiliate_tests_")
_DB_FILE = os.path.join(_TEMP_DIR, "test_affiliate.db")
os.environ["AFFILIATE_DATABASE_URL"] = f"sqlite:///{_DB_FILE}"
os.environ.setdefault("AFFILIATE_EXPORT_DIR", os.path.join(_TEMP_DIR, "exports"))


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Initialize a fresh temporary SQLite database for tests and clean it up after."""
    # Import after setting env var so the app uses the temp DB
    from affiliate_desk.database import Base, engine, init_db

    if "sqlite" in str(engine.url):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    Base.metadata.create_all(bind=engine)
    init_db()

    yield

    engine.dispose()
    shutil.rmtree(_TEMP_DIR, ignore_errors=True)


# Each test starts from empty affiliate tables and a cold aggregate cache;
# user accounts other than the seeded admin are dropped too.
@pytest.fixture(autouse=True)
def _clean_domain_tables():
    from affiliate_desk import crud
    from affiliate_desk.database import SessionLocal
    from affiliate_desk.services.cache import profile_cache

    session = SessionLocal()
    try:
        crud.reset_application_data(session)
    finally:
        session.close()
    profile_cache.clear()


@pytest.fixture
def test_db():
    """Provide a session on the shared test database."""
    from affiliate_desk.database import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


class RecordingNotifier:
    """Admin notifier that keeps payloads in memory."""

    def __init__(self):
        self.payloads = []

    def notify(self, payload):
        self.payloads.append(payload)

    @property
    def types(self):
        return [payload.type for payload in self.payloads]


@pytest.fixture
def notifier():
    return RecordingNotifier()
