"""Schemas for authentication endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, constr

Login = constr(strip_whitespace=True, min_length=3, max_length=64)
Password = constr(min_length=8, max_length=128)


class UserCreate(BaseModel):
    """Registration payload; the password is hashed before storing."""

    login: Login = Field(..., description="Unique login, 3-64 characters")
    password: Password
    display_name: constr(strip_whitespace=True, min_length=1, max_length=128) | None = Field(
        default=None, description="Name shown to other participants; defaults to the login"
    )


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    login: str
    display_name: str | None = None
    avatar_url: str | None = None
    created_at: datetime


class LoginRequest(BaseModel):
    login: Login
    password: Password


class Token(BaseModel):
    """Bearer token issued at login."""

    access_token: str
    token_type: str = Field(default="bearer", description="Token type, always 'bearer'")
    expires_in: int | None = Field(default=None, description="Seconds until the token expires")
    user_id: int | None = Field(
        default=None, description="Id of the authenticated user, needed to tell own messages apart"
    )
