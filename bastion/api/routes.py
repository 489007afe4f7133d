from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import ValidationError as PydanticValidationError

from bastion.api.error_handling import _error_response
from bastion.api.schemas import (
    CsrfTokenResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    TokenResponse,
    UserListResponse,
    UserResponse,
)
from bastion.config import Settings
from bastion.logging import get_logger
from bastion.service.auth import ACCESS_COOKIE, REFRESH_COOKIE, IssuedTokens
from bastion.service.context import RequestContext
from bastion.service.errors import (
    AuthenticationError,
    NotFoundError,
    RefreshTokenError,
    ServerError,
    ValidationError,
)
from bastion.service.runtime import get_runtime
from bastion.service.sessions import FLASH_ERROR_KEY, SESSION_COOKIE
from bastion.storage.models import Role, User

logger = get_logger(__name__)

router = APIRouter()


def get_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "context", None)
    if ctx is None:
        raise ServerError("request context missing")
    return ctx


async def get_user(ctx: RequestContext = Depends(get_context)) -> User:
    return get_runtime().auth.require_authenticated(ctx)


async def get_admin_user(ctx: RequestContext = Depends(get_context)) -> User:
    return get_runtime().auth.require_role(ctx, Role.ADMIN.value)


def _ok(data, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="ok", data=data).model_dump(mode="json"),
    )


def _apply_auth_cookies(response: Response, tokens: IssuedTokens, settings: Settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh,
        max_age=settings.refresh_token_ttl_seconds,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        path="/",
    )
    # readable by page scripts for bearer calls
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access,
        expires=datetime.fromtimestamp(tokens.access_expires_at, tz=timezone.utc),
        httponly=False,
        secure=settings.secure_cookies,
        samesite="lax",
        path="/",
    )


def _clear_auth_cookies(response: Response, settings: Settings, *, access: bool = True) -> None:
    names = (REFRESH_COOKIE, ACCESS_COOKIE) if access else (REFRESH_COOKIE,)
    for name in names:
        response.delete_cookie(
            name,
            path="/",
            secure=settings.secure_cookies,
            httponly=name == REFRESH_COOKIE,
            samesite="lax",
        )


async def _read_credentials(request: Request) -> LoginRequest:
    content_type = request.headers.get("content-type", "")
    try:
        if "json" in content_type.lower():
            try:
                payload = await request.json()
            except ValueError:
                raise ValidationError("request body is not valid JSON")
            if not isinstance(payload, dict):
                raise ValidationError("request body must be a JSON object")
            return LoginRequest.model_validate(payload)
        form = await request.form()
        return LoginRequest(
            email=str(form.get("email") or ""), password=str(form.get("password") or "")
        )
    except PydanticValidationError as exc:
        raise ValidationError(
            "invalid credentials payload",
            detail={"errors": [err["msg"] for err in exc.errors()]},
        )


@router.get("/csrf-token", tags=["auth"])
async def csrf_token(ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    session = runtime.sessions.ensure(ctx, int(time.time()))
    return _ok(CsrfTokenResponse(csrf_token=runtime.csrf.token_for(session)))


@router.post("/login", tags=["auth"])
async def login(request: Request, ctx: RequestContext = Depends(get_context)):
    """Exchange email and password for access and refresh cookies.

    Browser form posts are redirected; JSON callers receive the tokens in
    the envelope. The session id is rotated on success.
    """
    runtime = get_runtime()
    settings = runtime.settings
    now = int(time.time())
    user: Optional[User] = None
    try:
        credentials = await _read_credentials(request)
    except ValidationError:
        if ctx.wants_json:
            raise
    else:
        user = runtime.auth.authenticate_credentials(credentials.email, credentials.password)

    if user is None:
        if ctx.wants_json:
            raise AuthenticationError("invalid credentials")
        session = runtime.sessions.ensure(ctx, now)
        runtime.sessions.update(session, **{FLASH_ERROR_KEY: "Invalid credentials"})
        return RedirectResponse(settings.login_path, status_code=303)

    session = runtime.sessions.regenerate(ctx, now)
    tokens = runtime.auth.issue_tokens(user.id, now)
    if ctx.wants_json:
        response: Response = _ok(
            LoginResponse(
                access=tokens.access,
                expires=tokens.access_expires_at,
                user_id=user.id,
                role=user.role,
                csrf_token=runtime.csrf.token_for(session),
            )
        )
    else:
        response = RedirectResponse(settings.login_redirect_path, status_code=303)
    _apply_auth_cookies(response, tokens, settings)
    return response


@router.post("/api/auth/refresh", tags=["auth"])
async def refresh_tokens(request: Request):
    runtime = get_runtime()
    settings = runtime.settings
    handle = request.cookies.get(REFRESH_COOKIE)
    if not handle:
        raise AuthenticationError("no refresh token")
    try:
        tokens = runtime.auth.refresh(handle)
    except RefreshTokenError as exc:
        logger.info("refresh_rejected", reason=type(exc).__name__)
        response = _error_response(401, "invalid or expired refresh token", code="unauthorized")
        _clear_auth_cookies(response, settings, access=False)
        return response
    response = _ok(TokenResponse(access=tokens.access, expires=tokens.access_expires_at))
    _apply_auth_cookies(response, tokens, settings)
    return response


@router.post("/logout", tags=["auth"])
async def logout(request: Request, ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    settings = runtime.settings
    revoked = runtime.auth.revoke_refresh(request.cookies.get(REFRESH_COOKIE))
    logger.info(
        "logout",
        user_id=ctx.user.id if ctx.user else None,
        refresh_revoked=revoked,
    )
    runtime.sessions.revoke(ctx)
    if ctx.wants_json:
        response: Response = _ok({"logged_out": True})
    else:
        response = RedirectResponse(settings.login_path, status_code=303)
    _clear_auth_cookies(response, settings)
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=settings.secure_cookies,
        httponly=True,
        samesite="lax",
    )
    return response


@router.get("/profile", tags=["users"])
async def profile(user: User = Depends(get_user)):
    return _ok(UserResponse.from_user(user))


@router.get("/api/me", tags=["users"])
async def me(user: User = Depends(get_user)):
    return _ok(UserResponse.from_user(user))


@router.get("/admin", tags=["admin"])
async def admin_home(admin: User = Depends(get_admin_user)):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=1000)
    return _ok({"admin": UserResponse.from_user(admin), "user_count": len(users)})


@router.get("/api/admin/users", tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=1000, description="Maximum users to return"),
    admin: User = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=limit)
    return _ok(UserListResponse(items=[UserResponse.from_user(u) for u in users]))


@router.delete("/api/admin/users/{user_id}", tags=["admin"])
async def admin_delete_user(
    user_id: int = Path(..., ge=1),
    admin: User = Depends(get_admin_user),
):
    runtime = get_runtime()
    if user_id == admin.id:
        raise ValidationError("cannot delete your own account")
    if not runtime.auth.delete_user(user_id):
        raise NotFoundError("user not found", detail={"user_id": user_id})
    logger.info("admin_user_deleted", admin_id=admin.id, user_id=user_id)
    return _ok({"deleted": True, "user_id": user_id})
