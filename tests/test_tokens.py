"""Unit tests for the HS256 access token codec."""

import base64
import json

import pytest

from bastion.service.errors import ConfigError, InvalidSignature, MalformedToken
from bastion.service.tokens import AccessClaims, TokenCodec

SECRET = "codec-secret-for-unit-tests-0123456789"


@pytest.fixture
def codec():
    return TokenCodec(SECRET, access_ttl_seconds=900)


def _segment(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


class TestConstruction:
    def test_missing_secret_is_config_error(self):
        with pytest.raises(ConfigError):
            TokenCodec(None, access_ttl_seconds=900)

    def test_empty_secret_is_config_error(self):
        with pytest.raises(ConfigError):
            TokenCodec("", access_ttl_seconds=900)


class TestIssueAccess:
    def test_payload_fields(self, codec):
        token = codec.issue_access(42, 1000)
        assert codec.decode(token) == {"sub": 42, "iat": 1000, "exp": 1900, "type": "access"}

    def test_three_unpadded_segments(self, codec):
        token = codec.issue_access(1, 1000)
        parts = token.split(".")
        assert len(parts) == 3
        assert all("=" not in part for part in parts)

    def test_header_is_hs256(self, codec):
        header_b64 = codec.issue_access(1, 1000).split(".")[0]
        header = json.loads(base64.urlsafe_b64decode(header_b64 + "=" * (-len(header_b64) % 4)))
        assert header == {"alg": "HS256", "typ": "JWT"}


class TestDecode:
    def test_expired_payload_still_decodes(self, codec):
        token = codec.issue_access(7, 0)
        assert codec.decode(token)["exp"] == 900

    def test_wrong_secret_rejected(self, codec):
        other = TokenCodec("a-completely-different-secret-value", access_ttl_seconds=900)
        with pytest.raises(InvalidSignature):
            codec.decode(other.issue_access(1, 1000))

    @pytest.mark.parametrize("index", [0, 5, 20, -2, -1])
    def test_any_signature_char_change_rejected(self, codec, index):
        token = codec.issue_access(42, 1000)
        head, payload, sig = token.split(".")
        pos = index % len(sig)
        replacement = "A" if sig[pos] != "A" else "B"
        tampered = f"{head}.{payload}.{sig[:pos]}{replacement}{sig[pos + 1:]}"
        with pytest.raises(InvalidSignature):
            codec.decode(tampered)

    def test_payload_swap_rejected(self, codec):
        head, _, sig = codec.issue_access(1, 1000).split(".")
        forged = _segment({"sub": 1, "iat": 1000, "exp": 99999999, "type": "access"})
        with pytest.raises(InvalidSignature):
            codec.decode(f"{head}.{forged}.{sig}")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_wrong_segment_count_malformed(self, codec, token):
        with pytest.raises(MalformedToken):
            codec.decode(token)

    def test_signed_non_object_payload_malformed(self, codec):
        header = _segment({"alg": "HS256", "typ": "JWT"})
        payload = _segment([1, 2, 3])
        signing_input = f"{header}.{payload}"
        token = f"{signing_input}.{codec._sign(signing_input)}"
        with pytest.raises(MalformedToken):
            codec.decode(token)

    def test_signed_foreign_algorithm_malformed(self, codec):
        header = _segment({"alg": "none", "typ": "JWT"})
        payload = _segment({"sub": 1})
        signing_input = f"{header}.{payload}"
        token = f"{signing_input}.{codec._sign(signing_input)}"
        with pytest.raises(MalformedToken):
            codec.decode(token)

    def test_encode_decode_custom_payload(self, codec):
        token = codec.encode({"sub": 3, "iat": 1, "exp": 2, "type": "refresh"})
        assert codec.decode(token)["type"] == "refresh"


class TestAccessClaims:
    def test_from_payload(self):
        claims = AccessClaims.from_payload({"sub": 42, "iat": 1000, "exp": 1900, "type": "access"})
        assert claims == AccessClaims(sub=42, iat=1000, exp=1900, type="access")

    @pytest.mark.parametrize(
        "payload",
        [
            {"iat": 1, "exp": 2, "type": "access"},
            {"sub": "42", "iat": 1, "exp": 2, "type": "access"},
            {"sub": 42, "iat": 1, "exp": "2", "type": "access"},
            {"sub": True, "iat": 1, "exp": 2, "type": "access"},
        ],
    )
    def test_unusable_fields_give_none(self, payload):
        assert AccessClaims.from_payload(payload) is None
