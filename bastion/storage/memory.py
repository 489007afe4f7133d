from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from bastion.logging import get_logger
from bastion.storage.errors import ConstraintViolation
from bastion.storage.models import RefreshTokenRecord, Role, Session, User


class MemoryStore:
    """In-memory users and refresh tokens for tests and local development.

    When ``fs_root`` is given, the state is snapshotted to
    ``<fs_root>/state/bastion_store.json`` after every write and reloaded on
    start, so a dev server keeps its accounts across restarts.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        # selector -> record
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._user_id_seq: int = 1
        self._refresh_id_seq: int = 1
        # RLock so nested store calls from the same thread do not deadlock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "bastion_store.json"

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(
        self, email: str, password_hash: str, *, role: str = Role.USER.value
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._user_id_seq,
                email=normalized,
                password_hash=password_hash,
                role=Role(role).value,
            )
            self._user_id_seq += 1
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.id)[:limit]

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role).value
            self._persist_state()
            return user

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            # mirror ON DELETE CASCADE
            for selector, record in list(self.refresh_tokens.items()):
                if record.user_id == user_id:
                    self.refresh_tokens.pop(selector, None)
            self._persist_state()
            return True

    # refresh tokens
    def insert_refresh_token(
        self, user_id: int, selector: str, validator_hash: str, expires_at: int
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if selector in self.refresh_tokens:
                raise ConstraintViolation("selector already exists", {"field": "selector"})
            record = RefreshTokenRecord(
                id=self._refresh_id_seq,
                user_id=user_id,
                selector=selector,
                validator_hash=validator_hash,
                expires_at=expires_at,
            )
            self._refresh_id_seq += 1
            self.refresh_tokens[selector] = record
            self._persist_state()
            return record

    def consume_refresh_token(self, selector: str) -> Optional[RefreshTokenRecord]:
        """Delete the record for ``selector`` and return it, atomically."""

        with self._data_lock:
            record = self.refresh_tokens.pop(selector, None)
            if record is not None:
                self._persist_state()
            return record

    def get_refresh_token(self, selector: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(selector)

    def list_refresh_tokens(self, user_id: int) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return [r for r in self.refresh_tokens.values() if r.user_id == user_id]

    def purge_expired_refresh_tokens(self, now: int) -> int:
        with self._data_lock:
            stale = [s for s, r in self.refresh_tokens.items() if r.expires_at < now]
            for selector in stale:
                self.refresh_tokens.pop(selector, None)
            if stale:
                self._persist_state()
            return len(stale)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                {
                    "id": r.id,
                    "user_id": r.user_id,
                    "selector": r.selector,
                    "validator_hash": r.validator_hash,
                    "expires_at": r.expires_at,
                }
                for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["selector"]: RefreshTokenRecord(
                id=int(r["id"]),
                user_id=int(r["user_id"]),
                selector=r["selector"],
                validator_hash=r["validator_hash"],
                expires_at=int(r["expires_at"]),
            )
            for r in data.get("refresh_tokens", [])
        }
        self._user_id_seq = max(self.users, default=0) + 1
        self._refresh_id_seq = (
            max((r.id for r in self.refresh_tokens.values()), default=0) + 1
        )
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "role": user.role,
            "created_at": user.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        created_at = datetime.fromisoformat(data["created_at"])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return User(
            id=int(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            role=data.get("role", Role.USER.value),
            created_at=created_at,
        )


class MemorySessionStore:
    """Process-local session storage used when Redis is not configured."""

    def __init__(self) -> None:
        self.sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def create_session(
        self, ttl_seconds: int, now: int, *, meta: Optional[dict] = None
    ) -> Session:
        sess = Session.new(ttl_seconds, now, meta=meta)
        with self._lock:
            self.sessions[sess.id] = sess
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                return None
            return Session(
                id=sess.id,
                created_at=sess.created_at,
                expires_at=sess.expires_at,
                meta=dict(sess.meta or {}),
            )

    def set_session_meta(self, session_id: str, meta: dict) -> None:
        with self._lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.meta = dict(meta)

    def revoke_session(self, session_id: str) -> None:
        with self._lock:
            self.sessions.pop(session_id, None)

    def purge_expired_sessions(self, now: int) -> int:
        with self._lock:
            stale = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)
