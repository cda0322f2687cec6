# FILE: tests/test_auth.py

import pytest
from fastapi.testclient import TestClient

from nesa_exam.db import get_db
from nesa_exam.main import app
from nesa_exam.models import AuthSession, AuthUser
from nesa_exam.routers import auth
from nesa_exam.routers.auth import User, create_access_token, is_admin


@pytest.mark.parametrize(
    "user, expected",
    [
        (User(id="u1", role="admin"), True),
        (User(id="u2", name="Ezra"), True),
        (User(id="u3", name="  ezra "), True),
        (User(id="u4", email="EZRA@school.nsw.edu.au"), True),
        (User(id="u5", name="Ezra Miller", email="ezra.miller@example.com"), False),
        (User(id="u6", name="Sam", email="sam@example.com"), False),
        (None, False),
    ],
)
def test_is_admin(user, expected):
    assert is_admin(user) is expected


def test_identity_match_can_be_disabled(monkeypatch):
    monkeypatch.setattr(auth.settings, "admin_identity_match", False)
    assert not is_admin(User(id="u2", name="Ezra"))
    assert is_admin(User(id="u1", role="admin"))


@pytest.fixture
def auth_client(session_factory):
    """Client that runs the real token dependencies against the test database."""
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _issue_token(session_factory, username="sam", name="Sam Student", role="student", session_id="sess-1"):
    with session_factory() as db:
        db.add(AuthUser(username=username, password_hash="not-a-real-hash", email=f"{username}@example.com", name=name, role=role))
        db.add(AuthSession(session_id=session_id, username=username))
        db.commit()
    return create_access_token({"sub": username, "jti": session_id})


def test_me_resolves_session_token(auth_client, session_factory):
    token = _issue_token(session_factory)
    res = auth_client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.json() == {"id": "sam", "name": "Sam Student", "email": "sam@example.com", "role": "student"}


def test_revoked_session_is_rejected(auth_client, session_factory):
    token = _issue_token(session_factory)
    with session_factory() as db:
        db.delete(db.get(AuthSession, "sess-1"))
        db.commit()
    res = auth_client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401


def test_token_without_session_claim_is_rejected(auth_client, session_factory):
    _issue_token(session_factory)
    token = create_access_token({"sub": "sam"})
    assert auth_client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).status_code == 401


def test_protected_route_requires_token(auth_client):
    assert auth_client.get("/nesa/attempts").status_code == 401
    assert auth_client.get("/nesa/exams").json() == {"exams": []}


def test_register_validates_input(auth_client):
    res = auth_client.post("/auth/register", json={"username": "ab", "password": "pw", "email": "ab@example.com"})
    assert res.status_code == 400
    res = auth_client.post("/auth/register", json={"username": "sam", "password": "pw", "email": " "})
    assert res.status_code == 400
