from __future__ import annotations

from typing import Any, Optional, Protocol

from bastion.logging import get_logger
from bastion.service.context import RequestContext
from bastion.storage.models import Session

logger = get_logger(__name__)

SESSION_COOKIE = "session_id"
FLASH_ERROR_KEY = "flash_error"


class SessionBackend(Protocol):
    def create_session(
        self, ttl_seconds: int, now: int, *, meta: Optional[dict] = None
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def set_session_meta(self, session_id: str, meta: dict) -> None: ...

    def revoke_session(self, session_id: str) -> None: ...


class SessionManager:
    """Server-side session lifecycle; the browser only holds the id."""

    def __init__(self, backend: SessionBackend, ttl_seconds: int) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    def load(self, session_id: Optional[str], now: int) -> Optional[Session]:
        if not session_id:
            return None
        session = self.backend.get_session(session_id)
        if session is None:
            return None
        if session.is_expired(now):
            self.backend.revoke_session(session.id)
            return None
        return session

    def ensure(self, ctx: RequestContext, now: int) -> Session:
        if ctx.session is None:
            ctx.session = self.backend.create_session(self.ttl_seconds, now)
            ctx.session_is_new = True
        return ctx.session

    def regenerate(self, ctx: RequestContext, now: int) -> Session:
        """Move the session data to a fresh id, as done on login."""

        old = ctx.session
        meta = dict(old.meta or {}) if old else {}
        meta.pop(FLASH_ERROR_KEY, None)
        ctx.session = self.backend.create_session(self.ttl_seconds, now, meta=meta)
        ctx.session_is_new = True
        if old is not None:
            self.backend.revoke_session(old.id)
            logger.info("session_regenerated")
        return ctx.session

    def update(self, session: Session, **values: Any) -> None:
        meta = dict(session.meta or {})
        meta.update(values)
        session.meta = meta
        self.backend.set_session_meta(session.id, meta)

    def pop(self, session: Session, key: str) -> Any:
        meta = dict(session.meta or {})
        if key not in meta:
            return None
        value = meta.pop(key)
        session.meta = meta
        self.backend.set_session_meta(session.id, meta)
        return value

    def purge_expired(self, now: int) -> int:
        # Redis drops expired keys itself and has no purge
        purge = getattr(self.backend, "purge_expired_sessions", None)
        if purge is None:
            return 0
        removed = purge(now)
        if removed:
            logger.info("sessions_purged", count=removed)
        return removed

    def revoke(self, ctx: RequestContext) -> None:
        if ctx.session is not None:
            self.backend.revoke_session(ctx.session.id)
            ctx.session = None
            ctx.session_is_new = False
