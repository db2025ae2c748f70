from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stepflow.api.error_handling import register_exception_handlers
from stepflow.api.routes import router
from stepflow.config import get_settings
from stepflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the scheduler on startup; abort runs and stop jobs on shutdown."""
    from stepflow.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        await runtime.start()
        logger.info("runtime_started", scheduler_running=runtime.scheduler.running)
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        await get_runtime().shutdown()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    origins = get_settings().cors_allow_origins
    if origins:
        return origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app = FastAPI(title="Stepflow", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate ``X-Request-ID`` (or a fresh uuid) into logs and the response."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from stepflow.service.runtime import get_runtime

    runtime = get_runtime()
    model_configured = getattr(runtime.llm.provider, "is_configured", True)
    return {
        "status": "healthy",
        "version": __version__,
        "checks": {
            "scheduler": {"status": "running" if runtime.scheduler.running else "stopped"},
            "model": {"status": "configured" if model_configured else "offline"},
            "email": {"status": "configured" if runtime.email.is_configured else "not_configured"},
        },
        "activeRuns": len(runtime.engine.active_runs()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
