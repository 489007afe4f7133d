import re

import pytest

from bastion.service.context import IncomingRequest
from bastion.service.csrf import CsrfGuard
from bastion.service.errors import CsrfMismatchError
from bastion.service.sessions import SessionManager
from bastion.storage.memory import MemorySessionStore


@pytest.fixture
def sessions():
    return SessionManager(MemorySessionStore(), ttl_seconds=3600)


@pytest.fixture
def guard(sessions):
    return CsrfGuard(sessions, api_prefix="/api")


@pytest.fixture
def session(sessions):
    return sessions.backend.create_session(3600, 1000)


def _post(path="/profile", *, form=None, headers=None, method="POST"):
    return IncomingRequest(
        method=method,
        path=path,
        headers=headers or {"Content-Type": "application/x-www-form-urlencoded"},
        form=form or {},
        client_ip="203.0.113.9",
    )


class TestTokenFor:
    def test_token_is_64_hex(self, guard, session):
        assert re.fullmatch(r"[0-9a-f]{64}", guard.token_for(session))

    def test_idempotent_and_persisted(self, guard, sessions, session):
        token = guard.token_for(session)
        assert guard.token_for(session) == token
        stored = sessions.backend.get_session(session.id)
        assert stored.meta["csrf_token"] == token
        assert guard.token_for(stored) == token

    def test_distinct_per_session(self, guard, sessions):
        a = sessions.backend.create_session(3600, 1000)
        b = sessions.backend.create_session(3600, 1000)
        assert guard.token_for(a) != guard.token_for(b)


class TestVerify:
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS"])
    def test_safe_methods_pass_without_token(self, guard, method):
        guard.verify(_post(method=method), None)

    def test_post_without_token_rejected(self, guard, session):
        guard.token_for(session)
        with pytest.raises(CsrfMismatchError) as exc_info:
            guard.verify(_post(), session)
        assert exc_info.value.status_code == 403
        assert exc_info.value.error_code == "csrf_mismatch"

    def test_post_without_session_rejected(self, guard):
        with pytest.raises(CsrfMismatchError):
            guard.verify(_post(form={"_csrf": "x" * 64}), None)

    def test_form_field_accepted(self, guard, session):
        token = guard.token_for(session)
        guard.verify(_post(form={"_csrf": token}), session)

    def test_header_accepted(self, guard, session):
        token = guard.token_for(session)
        guard.verify(
            _post(headers={"Content-Type": "application/x-www-form-urlencoded", "X-CSRF-Token": token}),
            session,
        )

    @pytest.mark.parametrize("method", ["PUT", "DELETE", "PATCH"])
    def test_other_state_changing_methods_checked(self, guard, session, method):
        guard.token_for(session)
        with pytest.raises(CsrfMismatchError):
            guard.verify(_post(method=method, form={"_csrf": "wrong"}), session)

    def test_mismatch_rejected(self, guard, session):
        guard.token_for(session)
        with pytest.raises(CsrfMismatchError):
            guard.verify(_post(form={"_csrf": "0" * 64}), session)

    def test_api_path_bypassed(self, guard):
        guard.verify(_post(path="/api/auth/refresh"), None)
        guard.verify(_post(path="/api"), None)

    def test_api_lookalike_path_checked(self, guard):
        with pytest.raises(CsrfMismatchError):
            guard.verify(_post(path="/apiary"), None)

    def test_json_body_bypassed(self, guard):
        guard.verify(_post(headers={"Content-Type": "application/json; charset=utf-8"}), None)

    def test_json_accept_header_alone_not_bypassed(self, guard):
        with pytest.raises(CsrfMismatchError):
            guard.verify(
                _post(
                    headers={
                        "Content-Type": "application/x-www-form-urlencoded",
                        "Accept": "application/json",
                    }
                ),
                None,
            )

    def test_disabled_guard_passes(self, sessions):
        CsrfGuard(sessions, enabled=False).verify(_post(), None)
