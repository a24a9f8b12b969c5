from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from sundaykit.api.error_handling import register_exception_handlers
from sundaykit.api.routes import router
from sundaykit.api.schemas import Envelope, HealthResponse
from sundaykit.config import Settings
from sundaykit.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Resume in-flight monitors on startup; stop them and close clients on shutdown."""
    from sundaykit.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.resume_monitors_on_startup:
            resumed = await runtime.resume_monitors()
            logger.info("monitors_resumed_on_startup", **resumed)
    except Exception as exc:
        logger.error("startup_resume_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Sundaykit Provisioner", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag each request with X-Request-ID (client supplied or generated) for log tracing."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=Envelope)
async def health():
    from sundaykit.service.runtime import get_runtime

    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=HealthResponse(
            status="healthy",
            store=runtime.store_type,
            redis_enabled=runtime.cache is not None,
        ),
    )
