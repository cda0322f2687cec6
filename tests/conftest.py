# FILE: tests/conftest.py

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nesa_exam.db import Base, get_db
from nesa_exam.gemini_client import get_oracle
from nesa_exam.main import app
from nesa_exam.routers.auth import User, get_current_user, get_optional_user

from helpers import FakeOracle, grading_oracle_response


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def student():
    return User(id="student-1", name="Sam Student", email="sam@example.com")


@pytest.fixture
def admin():
    return User(id="ezra-admin", name="Ezra", email="ezra@example.com")


@pytest.fixture
def oracle():
    return FakeOracle(handler=grading_oracle_response)


@pytest.fixture
def as_user(student):
    """Mutable holder for the identity the auth dependencies resolve to"""
    return {"user": student}


@pytest.fixture
def client(session_factory, oracle, as_user):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    async def _get_oracle():
        yield oracle

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_oracle] = _get_oracle
    app.dependency_overrides[get_current_user] = lambda: as_user["user"]
    app.dependency_overrides[get_optional_user] = lambda: as_user["user"]
    yield TestClient(app)
    app.dependency_overrides.clear()
