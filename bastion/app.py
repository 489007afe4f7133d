from __future__ import annotations

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response

from bastion.api.error_handling import register_exception_handlers
from bastion.api.pipeline import MiddlewarePipeline, build_pipeline
from bastion.api.routes import router
from bastion.config import Settings
from bastion.logging import get_correlation_id, get_logger, set_correlation_id
from bastion.service.context import IncomingRequest, RequestContext
from bastion.service.csrf import STATE_CHANGING_METHODS
from bastion.service.runtime import Runtime, get_runtime
from bastion.service.sessions import SESSION_COOKIE

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def _sweep_expired(runtime: Runtime, now: int | None = None) -> Dict[str, int]:
    """Drop expired refresh records and process-local sessions."""
    now = int(time.time()) if now is None else now
    return {
        "refresh_tokens": runtime.auth.sweep_expired(now),
        "sessions": runtime.sessions.purge_expired(now),
    }


async def _run_refresh_sweep(runtime: Runtime, interval_seconds: int) -> None:
    """Run the expiry sweep on a fixed interval."""
    while True:
        try:
            await asyncio.to_thread(_sweep_expired, runtime)
        except Exception as exc:
            logger.error("refresh_sweep_failed", error=str(exc))
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime at startup so a missing secret stops the process."""
    global _sweep_task
    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_refresh_sweep(runtime, runtime.settings.refresh_sweep_interval_seconds)
    )
    logger.info("startup_complete", version=__version__)

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Bastion", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def _pipeline_for(runtime: Runtime) -> MiddlewarePipeline:
    if runtime.pipeline is None:
        runtime.pipeline = build_pipeline(
            runtime.settings, runtime.auth, runtime.csrf, sessions=runtime.sessions
        )
    return runtime.pipeline


async def _incoming_request(request: Request) -> IncomingRequest:
    form: Dict[str, Any] = {}
    content_type = request.headers.get("content-type", "").lower()
    if request.method.upper() in STATE_CHANGING_METHODS and content_type.startswith(
        _FORM_CONTENT_TYPES
    ):
        # body() first so the cached bytes are replayed to the route handler
        await request.body()
        parsed = await request.form()
        form = {k: v for k, v in parsed.items() if isinstance(v, str)}
    return IncomingRequest(
        method=request.method,
        path=request.url.path,
        headers=dict(request.headers),
        cookies=dict(request.cookies),
        form=form,
        client_ip=request.client.host if request.client else None,
    )


@app.middleware("http")
async def run_auth_pipeline(request: Request, call_next):
    """Adapt the ASGI request, load the session and run the pipeline."""
    runtime = get_runtime()
    settings = runtime.settings
    incoming = await _incoming_request(request)
    ctx = RequestContext(
        request_id=get_correlation_id(),
        session=runtime.sessions.load(incoming.cookies.get(SESSION_COOKIE), int(time.time())),
        wants_json=incoming.is_json() or incoming.is_api(settings.api_prefix),
    )
    request.state.context = ctx

    async def terminal(_incoming: IncomingRequest, _ctx: RequestContext) -> Response:
        return await call_next(request)

    response = await _pipeline_for(runtime).run(incoming, ctx, terminal)
    if ctx.session is not None and ctx.session_is_new:
        response.set_cookie(
            SESSION_COOKIE,
            ctx.session.id,
            max_age=settings.session_ttl_seconds,
            httponly=True,
            secure=settings.secure_cookies,
            samesite="lax",
            path="/",
        )
    return response


# wraps the pipeline so its log lines carry the id
@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take X-Request-ID from the client or generate one, and echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and session-store connectivity."""
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    sessions_ok = await _run_bounded("sessions", runtime.session_store.verify_connection)
    checks["sessions"] = {
        "status": "healthy" if sessions_ok else "unhealthy",
        "type": type(runtime.session_store).__name__,
    }
    return {
        "status": "healthy" if db_ok and sessions_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
