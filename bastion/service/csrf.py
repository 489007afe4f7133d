from __future__ import annotations

import hmac
import secrets
from typing import Optional

from bastion.logging import get_logger
from bastion.service.context import IncomingRequest
from bastion.service.errors import CsrfMismatchError
from bastion.service.sessions import SessionManager
from bastion.storage.models import Session

logger = get_logger(__name__)

CSRF_META_KEY = "csrf_token"
CSRF_FORM_FIELD = "_csrf"
CSRF_HEADER = "X-CSRF-Token"
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})


class CsrfGuard:
    """Double-submit CSRF tokens bound to the server-side session."""

    def __init__(
        self, sessions: SessionManager, *, api_prefix: str = "/api", enabled: bool = True
    ) -> None:
        self.sessions = sessions
        self.api_prefix = api_prefix
        self.enabled = enabled

    def token_for(self, session: Session) -> str:
        meta = session.meta if isinstance(session.meta, dict) else {}
        token = meta.get(CSRF_META_KEY)
        if isinstance(token, str) and token:
            return token
        token = secrets.token_hex(32)
        self.sessions.update(session, **{CSRF_META_KEY: token})
        return token

    def applies_to(self, request: IncomingRequest) -> bool:
        if not self.enabled or request.method not in STATE_CHANGING_METHODS:
            return False
        if request.is_api(self.api_prefix):
            return False
        # only the body type counts; Accept is settable by cross-site forms
        return not request.has_json_body()

    def verify(self, request: IncomingRequest, session: Optional[Session]) -> None:
        if not self.applies_to(request):
            return
        submitted = request.form.get(CSRF_FORM_FIELD) or request.header(CSRF_HEADER)
        expected = None
        if session is not None and isinstance(session.meta, dict):
            expected = session.meta.get(CSRF_META_KEY)
        if (
            not isinstance(submitted, str)
            or not isinstance(expected, str)
            or not submitted
            or not expected
            or not hmac.compare_digest(submitted.encode(), expected.encode())
        ):
            logger.warning(
                "csrf_mismatch",
                ip=request.client_ip,
                path=request.path,
                method=request.method,
                submitted=bool(submitted),
            )
            raise CsrfMismatchError("missing or invalid CSRF token")
