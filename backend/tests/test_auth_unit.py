"""Unit tests for authentication helpers and endpoints."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import HTTPException

from app.api.auth import login_user
from app.api.deps import get_user_from_token
from app.core.security import create_access_token, get_password_hash
from app.models import User
from app.schemas import LoginRequest


@pytest.fixture()
def user(db_session):
    db_user = User(
        login="tester",
        hashed_password=get_password_hash("supersecret"),
        display_name="Tester",
    )
    db_session.add(db_user)
    db_session.commit()
    return db_user


def test_login_returns_token_for_the_user(db_session, user):
    credentials = LoginRequest(login="tester", password="supersecret")
    token = login_user(credentials, db_session)

    assert token.token_type == "bearer"
    assert token.user_id == user.id
    assert token.expires_in and token.expires_in > 0
    assert get_user_from_token(token.access_token, db_session).id == user.id


@pytest.mark.parametrize(("login", "password"), [("ghost", "doesnotmatter"), ("tester", "wrongpassword")])
def test_login_rejects_invalid_credentials(db_session, user, login, password):
    with pytest.raises(HTTPException) as exc:
        login_user(LoginRequest(login=login, password=password), db_session)

    assert exc.value.status_code == 401
    assert "Incorrect login" in exc.value.detail


@pytest.mark.parametrize(
    "token_factory",
    [
        lambda user_id: "invalid-token",
        lambda user_id: create_access_token({"name": "no subject"}),
        lambda user_id: create_access_token({"sub": "not-a-number"}),
        lambda user_id: create_access_token({"sub": str(user_id + 100)}),
    ],
)
def test_unusable_tokens_are_rejected(db_session, user, token_factory):
    with pytest.raises(HTTPException) as exc:
        get_user_from_token(token_factory(user.id), db_session)

    assert exc.value.status_code == 401
    assert exc.value.detail == "Could not validate credentials"


def test_expired_token_is_rejected(db_session, user):
    token = create_access_token({"sub": str(user.id)}, expires_delta=timedelta(seconds=-1))

    with pytest.raises(HTTPException) as exc:
        get_user_from_token(token, db_session)

    assert exc.value.detail == "Token has expired"
