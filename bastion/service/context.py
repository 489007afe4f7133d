from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from bastion.storage.models import Session, User

if TYPE_CHECKING:
    from bastion.service.tokens import AccessClaims


def _media_type(value: str) -> str:
    return value.split(";", 1)[0].strip().lower()


def _is_json_media(value: str) -> bool:
    media = _media_type(value)
    return media == "application/json" or media.endswith("+json")


@dataclass
class IncomingRequest:
    """Framework-neutral view of an HTTP request.

    Header names are matched case-insensitively. ``form`` only carries fields
    when the host adapter parsed a form-encoded body.
    """

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    form: Mapping[str, Any] = field(default_factory=dict)
    client_ip: Optional[str] = None

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    def has_json_body(self) -> bool:
        return _is_json_media(self.header("content-type", ""))

    def is_json(self) -> bool:
        """True when the caller sends or expects JSON rather than HTML."""

        if self.has_json_body():
            return True
        accept = self.header("accept", "") or ""
        return any(_is_json_media(part) for part in accept.split(","))

    def is_api(self, prefix: str) -> bool:
        prefix = prefix.rstrip("/")
        return self.path == prefix or self.path.startswith(prefix + "/")


@dataclass
class RequestContext:
    """Per-request state threaded through the pipeline and into handlers."""

    request_id: Optional[str] = None
    csp_nonce: Optional[str] = None
    session: Optional[Session] = None
    session_is_new: bool = False
    user: Optional[User] = None
    claims: Optional["AccessClaims"] = None
    wants_json: bool = False
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None
