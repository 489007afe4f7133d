"""Ordered request pipeline run before every handler.

Stages share one interface, ``handle(request, ctx, call_next)``, and may pass
through, post-process the downstream response, or answer on their own.
:func:`build_pipeline` fixes the order: security headers, CSRF, identity,
role gates.
"""

from __future__ import annotations

import base64
import secrets
from functools import partial
from typing import Awaitable, Callable, Iterable, Optional, Protocol, Sequence

from starlette.responses import Response

from bastion.api.error_handling import _error_response, render_service_error
from bastion.config import Settings
from bastion.logging import get_logger
from bastion.service.auth import AuthService
from bastion.service.context import IncomingRequest, RequestContext
from bastion.service.csrf import CsrfGuard
from bastion.service.errors import ForbiddenError, ServiceError
from bastion.service.sessions import FLASH_ERROR_KEY, SessionManager
from bastion.storage.models import Role

logger = get_logger(__name__)

Handler = Callable[[IncomingRequest, RequestContext], Awaitable[Response]]


class Stage(Protocol):
    async def handle(
        self, request: IncomingRequest, ctx: RequestContext, call_next: Handler
    ) -> Response: ...


class MiddlewarePipeline:
    def __init__(self, stages: Iterable[Stage]) -> None:
        self.stages: tuple[Stage, ...] = tuple(stages)

    async def run(
        self, request: IncomingRequest, ctx: RequestContext, terminal: Handler
    ) -> Response:
        return await self._dispatch(0, terminal, request, ctx)

    async def _dispatch(
        self, index: int, terminal: Handler, request: IncomingRequest, ctx: RequestContext
    ) -> Response:
        if index >= len(self.stages):
            return await terminal(request, ctx)
        call_next = partial(self._dispatch, index + 1, terminal)
        return await self.stages[index].handle(request, ctx, call_next)


def _csp(nonce: str) -> str:
    return (
        "default-src 'self'; "
        f"script-src 'self' 'nonce-{nonce}'; "
        "style-src 'self'; "
        "img-src 'self' data: https:; "
        "font-src 'self' data:; "
        "frame-ancestors 'self'; "
        "base-uri 'self'; "
        "form-action 'self'"
    )


class SecurityHeadersStage:
    def __init__(self, *, api_prefix: str = "/api", hsts: bool = False) -> None:
        self.api_prefix = api_prefix
        self.hsts = hsts

    async def handle(
        self, request: IncomingRequest, ctx: RequestContext, call_next: Handler
    ) -> Response:
        ctx.csp_nonce = base64.b64encode(secrets.token_bytes(16)).decode("ascii")
        try:
            response = await call_next(request, ctx)
        except ServiceError as exc:
            response = render_service_error(exc)
        except Exception as exc:
            # store I/O failures still get the headers
            logger.exception(
                "pipeline_unhandled_exception",
                exc_info=exc,
                path=request.path,
                method=request.method,
                error_type=type(exc).__name__,
            )
            response = _error_response(500, "internal server error", code="server_error")
        headers = response.headers
        headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        headers.setdefault("X-Content-Type-Options", "nosniff")
        headers.setdefault("X-XSS-Protection", "1; mode=block")
        headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        headers.setdefault("Content-Security-Policy", _csp(ctx.csp_nonce))
        headers.setdefault(
            "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
        )
        if request.is_api(self.api_prefix):
            headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        if self.hsts:
            headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
            )
        return response


class CsrfStage:
    def __init__(self, guard: CsrfGuard) -> None:
        self.guard = guard

    async def handle(
        self, request: IncomingRequest, ctx: RequestContext, call_next: Handler
    ) -> Response:
        try:
            self.guard.verify(request, ctx.session)
        except ServiceError as exc:
            return render_service_error(exc)
        return await call_next(request, ctx)


class IdentityStage:
    """Attach the caller's identity to the context; never rejects."""

    def __init__(self, auth: AuthService) -> None:
        self.auth = auth

    async def handle(
        self, request: IncomingRequest, ctx: RequestContext, call_next: Handler
    ) -> Response:
        self.auth.resolve_identity(request, ctx)
        return await call_next(request, ctx)


class RoleGateStage:
    def __init__(
        self,
        role: str,
        prefixes: Sequence[str],
        *,
        login_path: str = "/login",
        sessions: Optional[SessionManager] = None,
    ) -> None:
        self.role = Role(role).value
        self.prefixes = tuple(p.rstrip("/") or "/" for p in prefixes)
        self.login_path = login_path
        self.sessions = sessions

    def matches(self, path: str) -> bool:
        return any(path == p or path.startswith(p + "/") for p in self.prefixes)

    async def handle(
        self, request: IncomingRequest, ctx: RequestContext, call_next: Handler
    ) -> Response:
        if not self.matches(request.path):
            return await call_next(request, ctx)
        user = ctx.user
        if user is not None and user.role == self.role:
            return await call_next(request, ctx)

        logger.warning(
            "role_gate_rejected",
            path=request.path,
            required=self.role,
            user_id=user.id if user else None,
            ip=request.client_ip,
        )
        message = f"{self.role.capitalize()} access required"
        if ctx.wants_json:
            return render_service_error(ForbiddenError(message))
        if self.sessions is not None and ctx.session is not None:
            self.sessions.update(ctx.session, **{FLASH_ERROR_KEY: message})
        return render_service_error(ForbiddenError(message, redirect_to=self.login_path))


def build_pipeline(
    settings: Settings,
    auth: AuthService,
    csrf: CsrfGuard,
    *,
    sessions: Optional[SessionManager] = None,
) -> MiddlewarePipeline:
    stages: list[Stage] = [
        SecurityHeadersStage(api_prefix=settings.api_prefix, hsts=settings.secure_cookies)
    ]
    if settings.csrf_enabled:
        stages.append(CsrfStage(csrf))
    stages.append(IdentityStage(auth))
    if settings.admin_path_prefixes:
        stages.append(
            RoleGateStage(
                Role.ADMIN.value,
                settings.admin_path_prefixes,
                login_path=settings.login_path,
                sessions=sessions,
            )
        )
    return MiddlewarePipeline(stages)
