from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


class Role(str, Enum):
    """Roles a user account can hold."""

    USER = "user"
    ADMIN = "admin"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    email: str
    password_hash: str
    role: str = Role.USER.value
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class RefreshTokenRecord:
    id: int
    user_id: int
    selector: str
    validator_hash: str
    expires_at: int


@dataclass
class Session:
    id: str
    created_at: int
    expires_at: int
    meta: Dict | None = None

    @classmethod
    def new(cls, ttl_seconds: int, now: int, *, meta: Optional[Dict] = None) -> "Session":
        return cls(
            id=secrets.token_urlsafe(32),
            created_at=now,
            expires_at=now + ttl_seconds,
            meta=dict(meta or {}),
        )

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at
