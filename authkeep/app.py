from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authkeep.api.error_handling import register_exception_handlers
from authkeep.api.routes import router
from authkeep.config import Settings
from authkeep.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(interval_seconds: int) -> None:
    """Background loop that drops expired or revoked refresh sessions."""
    from authkeep.service.runtime import get_runtime

    interval = max(interval_seconds, 60)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await get_runtime().auth.purge_sessions()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort maintenance
                logger.warning("session_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    from authkeep.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_session_sweep(runtime.settings.session_sweep_interval_seconds)
    )
    logger.info("session_sweep_scheduled", interval=runtime.settings.session_sweep_interval_seconds)
    yield
    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    # Local dev hosts only; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id and echo it as ``X-Request-ID``.

    A client-supplied ``X-Request-ID`` is reused; otherwise a new UUID is
    generated. Every log line emitted while handling the request carries it.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return response


HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def health() -> Dict[str, Any]:
    """Report store, Redis and filesystem health plus the version."""
    from authkeep.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:  # pragma: no cover - defensive logging path
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    checks["store"] = {"status": "healthy", "type": "memory"}
    overall_healthy = True

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    fs_path = Path(runtime.store.fs_root)

    def _fs_probe() -> None:
        if not fs_path.is_dir():
            raise FileNotFoundError(fs_path)
        health_file = fs_path / ".health_check"
        health_file.write_text(datetime.now(timezone.utc).isoformat())
        health_file.read_text()
        health_file.unlink(missing_ok=True)

    fs_ok = await _run_bounded("filesystem", _fs_probe)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
    overall_healthy = overall_healthy and fs_ok

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }


def create_app() -> FastAPI:
    application = FastAPI(title="Authkeep", version=__version__, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )
    application.middleware("http")(add_security_headers)
    application.middleware("http")(add_correlation_id)
    register_exception_handlers(application)
    application.include_router(router)
    application.get("/healthz")(health)
    return application


app = create_app()
