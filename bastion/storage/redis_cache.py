from __future__ import annotations

import json
import time
from typing import Optional

from redis import Redis

from bastion.storage.models import Session


class RedisSessionStore:
    """Server-side sessions kept in Redis, expiring with the session itself.

    Uses the synchronous client; every call is a single round trip, short
    enough to run inside a request without an executor.
    """

    KEY_PREFIX = "auth:session:"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    @staticmethod
    def _ttl_seconds(expires_at: int, now: Optional[int] = None) -> int:
        """Clamp to at least one second; Redis rejects zero or negative TTLs."""

        current = int(time.time()) if now is None else now
        return max(1, expires_at - current)

    def verify_connection(self) -> None:
        self._client.ping()

    def close(self) -> None:
        self._client.close()

    def create_session(
        self, ttl_seconds: int, now: int, *, meta: Optional[dict] = None
    ) -> Session:
        sess = Session.new(ttl_seconds, now, meta=meta)
        payload = {
            "created_at": sess.created_at,
            "expires_at": sess.expires_at,
            "meta": sess.meta or {},
        }
        self._client.set(
            self._key(sess.id),
            json.dumps(payload),
            ex=self._ttl_seconds(sess.expires_at, now),
        )
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        raw = self._client.get(self._key(session_id))
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        return Session(
            id=session_id,
            created_at=int(data.get("created_at", 0)),
            expires_at=int(data.get("expires_at", 0)),
            meta=data.get("meta") or {},
        )

    def set_session_meta(self, session_id: str, meta: dict) -> None:
        sess = self.get_session(session_id)
        if sess is None:
            return
        payload = {
            "created_at": sess.created_at,
            "expires_at": sess.expires_at,
            "meta": dict(meta),
        }
        # keepttl leaves the original expiry in place
        self._client.set(self._key(session_id), json.dumps(payload), keepttl=True)

    def revoke_session(self, session_id: str) -> None:
        self._client.delete(self._key(session_id))
