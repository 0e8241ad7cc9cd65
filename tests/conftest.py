"""
Shared fixtures: an in-memory SQLite database per test, the domain
services bound to it, and a FastAPI TestClient wired to the same engine.
"""

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).parent.parent))

from database.connection import create_test_provider
from database.cap_table_service import CapTableService
from database.document_service import DocumentService
from database.organization_service import OrganizationService
from database.people_service import PeopleService
from database.monitoring import reset_metrics
from security_logger import get_security_logger, reset_security_logger

ACTOR = "user-123"


@pytest.fixture(autouse=True)
def quiet_security_logger():
    """Keep the security logger off the filesystem during tests."""
    reset_security_logger()
    get_security_logger(enable_file=False)
    reset_metrics()
    yield
    reset_security_logger()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    yield engine
    engine.dispose()


@pytest.fixture
def db_provider(engine):
    provider = create_test_provider(engine=engine)
    provider.init()
    provider.create_tables()
    yield provider
    provider.close()


@pytest.fixture
def session(db_provider):
    session = db_provider.session_factory()
    yield session
    session.close()


@pytest.fixture
def actor_id():
    return ACTOR


@pytest.fixture
def org_service(session):
    return OrganizationService(session)


@pytest.fixture
def people_service(session):
    return PeopleService(session)


@pytest.fixture
def cap_service(session):
    return CapTableService(session)


@pytest.fixture
def doc_service(session):
    return DocumentService(session)


@pytest.fixture
def org(org_service, actor_id):
    return org_service.create_organization(
        {"name": "Acme Inc", "jurisdiction": "DE"},
        actor_id
    )


@pytest.fixture
def make_person(people_service, org, actor_id):
    """Factory adding a person with the given roles to the default org."""
    def _make(first_name="Pat", last_name="Holder", roles=("Shareholder",), org_id=None):
        entry = people_service.add_person(
            org_id or org.id,
            {"first_name": first_name, "last_name": last_name},
            [{"role": role} for role in roles],
            actor_id
        )
        return entry.person
    return _make


@pytest.fixture
def share_class(cap_service, org, actor_id):
    return cap_service.create_share_class(
        org.id,
        {"name": "Class A Common", "short_code": "A"},
        actor_id
    )


@pytest.fixture
def client(db_provider):
    """TestClient sharing the test engine. Startup events are not run."""
    from fastapi.testclient import TestClient
    from api.server import app
    from database.connection import get_db, get_db_provider

    def override_get_db():
        yield from db_provider.get_session()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_db_provider] = lambda: db_provider
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def headers(actor_id):
    return {"X-Actor-ID": actor_id}
