from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI

from rideauth.api.error_handling import register_exception_handlers
from rideauth.api.routes import router
from rideauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Cache-Control": "no-store",
}


async def _run_periodic_maintenance(interval_seconds: int) -> None:
    """Sweep expired sessions, codes and rate-limit windows until cancelled."""
    from rideauth.service.runtime import get_runtime

    interval = max(interval_seconds, 30)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(get_runtime().run_maintenance)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - next round retries
                logger.warning("maintenance_round_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from rideauth.service.runtime import get_runtime

    runtime = get_runtime()
    maintenance_task: asyncio.Task | None = None
    if runtime.settings.maintenance_interval_seconds > 0:
        maintenance_task = asyncio.create_task(
            _run_periodic_maintenance(runtime.settings.maintenance_interval_seconds)
        )

    yield

    if maintenance_task is not None:
        maintenance_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await maintenance_task
    try:
        get_runtime().close()
        logger.info("runtime_closed")
    except Exception as exc:
        logger.error("runtime_close_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="rideauth", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        for name, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of a request with its X-Request-ID (or a new one)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz", tags=["ops"])
    def healthz():
        return {"status": "ok", "version": __version__}

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
