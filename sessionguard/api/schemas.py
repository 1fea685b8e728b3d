from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "session_invalid",
    "forbidden",
    "user_banned",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.@-]{3,64}$")


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SignupRequest(BaseModel):
    username: str
    password: str = Field(..., min_length=8, max_length=256)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        normalized = unicodedata.normalize("NFKC", value).strip()
        if not _USERNAME_PATTERN.match(normalized):
            raise ValueError(
                "username must be 3-64 characters of letters, digits, '_', '.', '@' or '-'"
            )
        return normalized


class SignupResponse(BaseModel):
    user_id: str
    username: str


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=256)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return unicodedata.normalize("NFKC", value).strip()


class LoginResponse(BaseModel):
    user_id: str
    session_id: str
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    expires_in: int


class MeResponse(BaseModel):
    user_id: str
    username: Optional[str] = None
    session_id: str
    expires_at: datetime


class SessionInfo(BaseModel):
    session_id: str
    created_at: datetime
    expires_at: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None


class SessionListResponse(BaseModel):
    user_id: str
    sessions: List[SessionInfo]


class KickRequest(BaseModel):
    session_id: Optional[str] = None
    all: bool = False


class KickResponse(BaseModel):
    user_id: str
    kicked: List[str]
    failed: dict[str, str] = Field(default_factory=dict)


class LoginEventInfo(BaseModel):
    id: str
    user_id: Optional[str] = None
    username: str
    success: bool
    reason: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
