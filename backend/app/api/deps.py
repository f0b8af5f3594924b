"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, Path, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from app.core.security import decode_access_token
from app.database import get_db
from app.models import Conversation, User
from app.services import conversations

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

_INVALID_CREDENTIALS = "Could not validate credentials"


def bearer_token(connection: HTTPConnection) -> str | None:
    """Token from ``?token=`` or an ``Authorization: Bearer`` header.

    Browsers cannot set headers on websocket handshakes, so the query
    parameter wins.
    """

    token = connection.query_params.get("token")
    if token:
        return token
    auth_header = connection.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip() or None
    return None


def get_user_from_token(token: str, db: Session) -> User:
    """Resolve a user from a JWT token or raise an HTTP 401 error."""

    payload = decode_access_token(token)
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail=_INVALID_CREDENTIALS
        ) from None

    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=_INVALID_CREDENTIALS)
    return user


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Retrieve the current user from the JWT token."""

    return get_user_from_token(token, db)


def get_member_conversation(
    conversation_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Conversation:
    """The path's conversation, provided the caller actively participates in it."""

    return conversations.load_for_participant(conversation_id, current_user.id, db)
