from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mentorauth.api.error_handling import register_exception_handlers
from mentorauth.api.routes import router
from mentorauth.config import Settings, get_settings
from mentorauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
_MIN_SWEEP_INTERVAL_SECONDS = 60


def _sweep_tokens(runtime) -> Dict[str, int]:
    return {
        "refresh_tokens": runtime.tokens.cleanup_expired_tokens(),
        "otps": runtime.otp.purge_expired(),
    }


def _sweep_devices(runtime) -> Dict[str, int]:
    return {"devices": runtime.devices.cleanup_inactive_devices()}


async def _run_periodic(name: str, func: Callable[[], Any], interval_seconds: int) -> None:
    """Run a blocking maintenance job in a worker thread every ``interval_seconds``."""
    interval = max(interval_seconds, _MIN_SWEEP_INTERVAL_SECONDS)
    try:
        while True:
            try:
                result = await asyncio.to_thread(func)
                logger.info("maintenance_sweep_completed", job=name, result=result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # retried on the next cycle
                logger.warning(
                    "maintenance_sweep_failed",
                    job=name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("maintenance_sweep_cancelled", job=name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from mentorauth.service.runtime import get_runtime

    runtime = get_runtime()
    settings = runtime.settings
    tasks: List[asyncio.Task] = [
        asyncio.create_task(
            _run_periodic(
                "token_cleanup",
                lambda: _sweep_tokens(runtime),
                settings.token_cleanup_interval_seconds,
            )
        ),
        asyncio.create_task(
            _run_periodic(
                "device_cleanup",
                lambda: _sweep_devices(runtime),
                settings.device_cleanup_interval_seconds,
            )
        ),
    ]
    logger.info("maintenance_sweeps_started", jobs=len(tasks))

    yield

    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    runtime.notifier.shutdown(wait=True)
    logger.info("runtime_cleanup_complete")


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def health() -> Dict[str, Any]:
    """Probe the store and, when configured, Redis."""
    from mentorauth.service.runtime import get_runtime

    runtime = get_runtime()
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
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Mentor Auth", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Device-Id"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Use the client's X-Request-ID, or a fresh UUID, for log correlation."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    return app


app = create_app()
