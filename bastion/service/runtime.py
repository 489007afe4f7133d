from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Optional, Union
from urllib.parse import urlparse, urlunparse

from bastion.config import get_settings, reset_settings_cache
from bastion.logging import get_logger
from bastion.service.auth import AuthService
from bastion.service.csrf import CsrfGuard
from bastion.service.refresh_tokens import RefreshTokenStore
from bastion.service.sessions import SessionManager
from bastion.service.tokens import TokenCodec
from bastion.storage.memory import MemorySessionStore, MemoryStore
from bastion.storage.postgres import PostgresStore
from bastion.storage.redis_cache import RedisSessionStore

if TYPE_CHECKING:
    from bastion.api.pipeline import MiddlewarePipeline

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide auth services, read-only after startup."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        # fail fast before touching storage
        self.codec = TokenCodec(
            self.settings.require_jwt_secret(), self.settings.access_token_ttl_seconds
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.session_store: Union[MemorySessionStore, RedisSessionStore, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                candidate = RedisSessionStore(self.settings.redis_url)
                candidate.verify_connection()
                self.session_store = candidate
            except Exception as exc:
                redis_error = exc

        if self.session_store is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; sessions are process-local.",
                mode=fallback_mode,
            )
            self.session_store = MemorySessionStore()

        self.sessions = SessionManager(self.session_store, self.settings.session_ttl_seconds)
        self.csrf = CsrfGuard(
            self.sessions,
            api_prefix=self.settings.api_prefix,
            enabled=self.settings.csrf_enabled,
        )
        self.refresh_tokens = RefreshTokenStore(self.store)
        self.auth = AuthService(
            self.store,
            self.codec,
            self.refresh_tokens,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            login_path=self.settings.login_path,
        )
        # built by the HTTP layer on first use
        self.pipeline: Optional["MiddlewarePipeline"] = None

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.session_store, RedisSessionStore),
            csrf_enabled=self.settings.csrf_enabled,
            secure_cookies=self.settings.secure_cookies,
        )

    def close(self) -> None:
        for resource in (self.session_store, self.store):
            closer = getattr(resource, "close", None)
            if closer is None:
                continue
            try:
                closer()
            except Exception as exc:
                logger.warning(
                    "runtime_close_failed", resource=type(resource).__name__, error=str(exc)
                )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check keeps two threads from both building a runtime.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
