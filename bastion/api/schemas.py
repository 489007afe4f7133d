from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from bastion.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "csrf_mismatch",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

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


def _normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    # zero-width characters would make two visually equal emails differ
    cleaned = "".join(c for c in value if c not in "​‌‍﻿")
    normalized = unicodedata.normalize("NFKC", cleaned.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _normalize_email(value)


class TokenResponse(BaseModel):
    access: str
    expires: int
    token_type: Literal["bearer"] = "bearer"


class LoginResponse(TokenResponse):
    user_id: int
    role: str
    csrf_token: Optional[str] = None


class CsrfTokenResponse(BaseModel):
    csrf_token: str


class UserResponse(BaseModel):
    id: int
    email: str
    role: str
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, email=user.email, role=user.role, created_at=user.created_at)


class UserListResponse(BaseModel):
    items: List[UserResponse]
