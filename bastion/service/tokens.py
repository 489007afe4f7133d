from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Optional

from bastion.logging import get_logger
from bastion.service.errors import ConfigError, InvalidSignature, MalformedToken

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
_HEADER = {"alg": "HS256", "typ": "JWT"}


@dataclass(frozen=True)
class AccessClaims:
    sub: int
    iat: int
    exp: int
    type: str = ACCESS_TOKEN_TYPE

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Optional["AccessClaims"]:
        """Build claims from a verified payload; None if a field is unusable."""

        try:
            sub, iat, exp = payload["sub"], payload["iat"], payload["exp"]
        except KeyError:
            return None
        # bool is an int subclass; reject it explicitly
        if any(isinstance(v, bool) or not isinstance(v, int) for v in (sub, iat, exp)):
            return None
        return cls(sub=sub, iat=iat, exp=exp, type=str(payload.get("type", "")))


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """HS256 signer and verifier for access tokens."""

    def __init__(self, secret: Optional[str], access_ttl_seconds: int) -> None:
        if not secret:
            raise ConfigError("JWT_SECRET not configured")
        self._key = secret.encode("utf-8")
        self.access_ttl_seconds = access_ttl_seconds

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access(self, subject: int, now: int) -> str:
        return self.encode(
            {
                "sub": subject,
                "iat": now,
                "exp": now + self.access_ttl_seconds,
                "type": ACCESS_TOKEN_TYPE,
            }
        )

    def decode(self, token: str) -> dict[str, Any]:
        """Verify the signature, then parse and return the payload.

        Expiry is not checked here. Raises ``MalformedToken`` or
        ``InvalidSignature``.
        """

        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3:
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts
        try:
            expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        except UnicodeEncodeError:
            raise MalformedToken("token contains non-ascii characters")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise InvalidSignature("token signature mismatch")

        # nothing below runs on an unverified token
        header = self._parse_segment(header_b64, "header")
        if header.get("alg") != _HEADER["alg"]:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise MalformedToken("unsupported token algorithm")
        return self._parse_segment(payload_b64, "payload")

    @staticmethod
    def _parse_segment(segment: str, name: str) -> dict[str, Any]:
        try:
            value = json.loads(_decode_segment(segment))
        except (binascii.Error, ValueError) as exc:
            logger.warning("jwt_segment_decode_failed", segment=name, error=str(exc))
            raise MalformedToken(f"token {name} is not valid JSON") from exc
        if not isinstance(value, dict):
            raise MalformedToken(f"token {name} must be a JSON object")
        return value
