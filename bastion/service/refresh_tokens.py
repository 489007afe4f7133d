from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Optional, Protocol

from bastion.logging import get_logger
from bastion.service.errors import (
    RefreshTokenExpired,
    RefreshTokenMalformed,
    RefreshTokenNotFound,
    ValidatorMismatch,
)
from bastion.storage.models import RefreshTokenRecord

logger = get_logger(__name__)

SELECTOR_BYTES = 16
VALIDATOR_BYTES = 32


class RefreshTokenBackend(Protocol):
    def insert_refresh_token(
        self, user_id: int, selector: str, validator_hash: str, expires_at: int
    ) -> RefreshTokenRecord: ...

    def consume_refresh_token(self, selector: str) -> Optional[RefreshTokenRecord]: ...

    def purge_expired_refresh_tokens(self, now: int) -> int: ...


def hash_validator(validator: str) -> str:
    return hashlib.sha256(validator.encode("utf-8")).hexdigest()


def split_handle(handle: str) -> tuple[str, str]:
    parts = handle.split(":") if isinstance(handle, str) else []
    if len(parts) != 2 or not all(parts):
        raise RefreshTokenMalformed("refresh token must be selector:validator")
    return parts[0], parts[1]


class RefreshTokenStore:
    """Single-use refresh handles with a selector/validator split.

    Only the SHA-256 of the validator is stored. Redemption removes the
    record before checking expiry or the validator, so a replayed or guessed
    handle burns the record on its first use.
    """

    def __init__(self, backend: RefreshTokenBackend) -> None:
        self.backend = backend

    def issue(self, user_id: int, now: int, ttl: int) -> str:
        selector = secrets.token_hex(SELECTOR_BYTES)
        validator = secrets.token_hex(VALIDATOR_BYTES)
        self.backend.insert_refresh_token(
            user_id, selector, hash_validator(validator), now + ttl
        )
        return f"{selector}:{validator}"

    def redeem(self, handle: str, now: int) -> int:
        selector, validator = split_handle(handle)
        record = self.backend.consume_refresh_token(selector)
        if record is None:
            raise RefreshTokenNotFound("refresh token not found or already used")
        if now > record.expires_at:
            raise RefreshTokenExpired("refresh token expired")
        if not hmac.compare_digest(hash_validator(validator), record.validator_hash):
            logger.warning(
                "refresh_validator_mismatch",
                user_id=record.user_id,
                selector=selector,
            )
            raise ValidatorMismatch("refresh token validator mismatch")
        return record.user_id

    def revoke(self, handle: str) -> bool:
        """Drop the record behind ``handle`` without validating it."""

        selector, _ = split_handle(handle)
        return self.backend.consume_refresh_token(selector) is not None

    def purge_expired(self, now: int) -> int:
        return self.backend.purge_expired_refresh_tokens(now)
