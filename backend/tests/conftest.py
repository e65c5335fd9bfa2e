import os
import pathlib
import sys
import tempfile
import uuid

import pytest


REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.append(str(REPO_ROOT))


def pytest_configure():
    if os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URL"):
        return
    temp_dir = tempfile.mkdtemp(prefix="cash-ledger-tests-")
    db_path = pathlib.Path(temp_dir) / "pytest.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"


@pytest.fixture(scope="session")
def sqlite_engine():
    from backend.app import models  # noqa: F401
    from backend.app.db import Base, engine

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def sqlite_session(sqlite_engine):
    from backend.app.db import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def api_client(sqlite_engine, sqlite_session):
    from backend.app.db import get_db
    from backend.app.main import app
    from fastapi.testclient import TestClient

    def _get_test_db():
        yield sqlite_session

    app.dependency_overrides[get_db] = _get_test_db
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def tenant(sqlite_session):
    """
    Fresh organization with one member. Call it with a role to get
    (org, user, headers) for that caller.
    """
    from backend.app.models import Organization, OrganizationMembership, User

    org = Organization(name=f"Store {uuid.uuid4().hex[:6]}")
    sqlite_session.add(org)
    sqlite_session.flush()

    def _member(role: str = "cashier", *, full_name: str = "Cash Clerk"):
        user = User(email=f"{role}-{uuid.uuid4().hex[:8]}@example.com", full_name=full_name)
        sqlite_session.add(user)
        sqlite_session.flush()
        sqlite_session.add(OrganizationMembership(organization_id=org.id, user_id=user.id, role=role))
        sqlite_session.commit()
        headers = {"X-Organization-Id": org.id, "X-User-Id": user.id}
        return org, user, headers

    return _member
