from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from carebridge.api.error_handling import register_exception_handlers
from carebridge.api.middleware import CSRFProtection, add_correlation_id
from carebridge.api.routes import router
from carebridge.config import Settings, get_settings
from carebridge.logging import get_logger
from carebridge.service.runtime import Runtime, get_runtime, set_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the guard sweepers on startup and stop them on shutdown."""
    runtime = get_runtime()
    await runtime.start_sweepers()
    logger.info("guard_sweepers_started", sweepers=[s.name for s in runtime.sweepers])

    yield

    try:
        await runtime.stop_sweepers()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the guarded application.

    Passing ``settings`` installs a fresh runtime built from them; otherwise
    the process-wide runtime is created lazily from the environment.
    """
    if settings is not None:
        set_runtime(Runtime(settings))
    else:
        settings = get_settings()

    app = FastAPI(title="CareBridge Guard", version=__version__, lifespan=lifespan)
    # Last registered middleware runs first
    app.middleware("http")(CSRFProtection(settings))
    app.middleware("http")(add_correlation_id)
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
