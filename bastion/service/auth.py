from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from bastion.logging import get_logger
from bastion.service.context import IncomingRequest, RequestContext
from bastion.service.errors import (
    ConflictError,
    ForbiddenError,
    RefreshTokenError,
    TokenError,
    UnauthorizedError,
)
from bastion.service.refresh_tokens import RefreshTokenStore
from bastion.service.tokens import ACCESS_TOKEN_TYPE, AccessClaims, TokenCodec
from bastion.storage.errors import ConstraintViolation
from bastion.storage.models import Role, User

logger = get_logger(__name__)

ACCESS_COOKIE = "access"
REFRESH_COOKIE = "refresh"


class UserStore(Protocol):
    def create_user(
        self, email: str, password_hash: str, *, role: str = Role.USER.value
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def delete_user(self, user_id: int) -> bool: ...


@dataclass(frozen=True)
class IssuedTokens:
    access: str
    refresh: str
    access_expires_at: int


def _now(now: Optional[int]) -> int:
    return int(time.time()) if now is None else now


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthService:
    """Access tokens, refresh rotation and the authentication gates."""

    def __init__(
        self,
        store: UserStore,
        codec: TokenCodec,
        refresh_tokens: RefreshTokenStore,
        *,
        refresh_ttl_seconds: int,
        login_path: str = "/login",
    ) -> None:
        self.store = store
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.login_path = login_path
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    # tokens
    def issue_tokens(self, user_id: int, now: Optional[int] = None) -> IssuedTokens:
        now = _now(now)
        # persist the refresh record first; if that raises nothing was issued
        refresh = self.refresh_tokens.issue(user_id, now, self.refresh_ttl_seconds)
        access = self.codec.issue_access(user_id, now)
        return IssuedTokens(
            access=access,
            refresh=refresh,
            access_expires_at=now + self.codec.access_ttl_seconds,
        )

    def validate_access(
        self, token: Optional[str], now: Optional[int] = None
    ) -> Optional[AccessClaims]:
        if not token:
            return None
        try:
            payload = self.codec.decode(token)
        except TokenError:
            return None
        claims = AccessClaims.from_payload(payload)
        if claims is None or claims.type != ACCESS_TOKEN_TYPE:
            return None
        if _now(now) >= claims.exp:
            return None
        return claims

    def refresh(self, handle: str, now: Optional[int] = None) -> IssuedTokens:
        now = _now(now)
        user_id = self.refresh_tokens.redeem(handle, now)
        self.logger.info("refresh_token_rotated", user_id=user_id)
        return self.issue_tokens(user_id, now)

    def revoke_refresh(self, handle: Optional[str]) -> bool:
        if not handle:
            return False
        try:
            return self.refresh_tokens.revoke(handle)
        except RefreshTokenError:
            return False

    def sweep_expired(self, now: Optional[int] = None) -> int:
        removed = self.refresh_tokens.purge_expired(_now(now))
        if removed:
            self.logger.info("refresh_tokens_purged", count=removed)
        return removed

    # identity
    def resolve_identity(
        self,
        request: IncomingRequest,
        ctx: RequestContext,
        now: Optional[int] = None,
    ) -> Optional[User]:
        token = _extract_bearer(request.header("authorization")) or request.cookies.get(
            ACCESS_COOKIE
        )
        claims = self.validate_access(token, now)
        if claims is None:
            return None
        user = self.store.get_user(claims.sub)
        if user is None:
            self.logger.info("access_token_user_missing", user_id=claims.sub)
            return None
        ctx.user = user
        ctx.claims = claims
        return user

    def require_authenticated(self, ctx: RequestContext) -> User:
        if ctx.user is None:
            raise UnauthorizedError(
                redirect_to=None if ctx.wants_json else self.login_path
            )
        return ctx.user

    def require_role(self, ctx: RequestContext, role: str) -> User:
        user = self.require_authenticated(ctx)
        if user.role != Role(role).value:
            self.logger.warning(
                "role_check_failed", user_id=user.id, required=role, actual=user.role
            )
            raise ForbiddenError(
                "forbidden", redirect_to=None if ctx.wants_json else self.login_path
            )
        return user

    # credentials
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def authenticate_credentials(self, email: str, password: str) -> Optional[User]:
        user = self.store.get_user_by_email(email) if email else None
        if user is None:
            # equal argon2 cost for unknown emails
            if self._dummy_hash is None:
                self._dummy_hash = self.hash_password("bastion-dummy-password")
            self._verify(self._dummy_hash, password or "")
            self.logger.warning("login_failed", email=email, reason="unknown_email")
            return None
        if not self._verify(user.password_hash, password or ""):
            self.logger.warning("login_failed", email=email, reason="bad_password")
            return None
        self.logger.info("login_succeeded", user_id=user.id)
        return user

    def _verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def create_user(
        self, email: str, password: str, *, role: str = Role.USER.value
    ) -> User:
        try:
            user = self.store.create_user(email, self.hash_password(password), role=role)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        self.logger.info("user_created", user_id=user.id, role=user.role)
        return user

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    def delete_user(self, user_id: int) -> bool:
        deleted = self.store.delete_user(user_id)
        if deleted:
            self.logger.info("user_deleted", user_id=user_id)
        return deleted
