from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from . import __version__
from .api.routes import router as api_router
from .core.config import Settings, get_settings
from .core.logging import configure_logging, get_logger
from .orchestration.runtime import SentraRuntime

logger = get_logger(name=__name__)

RuntimeFactory = Callable[[Settings], SentraRuntime]


def create_app(
    settings: Settings | None = None,
    *,
    runtime_factory: RuntimeFactory | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.observability.log_level, json_output=settings.observability.log_json)
    factory = runtime_factory or SentraRuntime.from_settings

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        runtime = factory(settings)
        app.state.runtime = runtime
        try:
            async with runtime.lifecycle():
                yield
        finally:
            app.state.runtime = None

    app = FastAPI(title="Sentra", version=__version__, lifespan=app_lifespan)
    app.state.settings = settings
    app.state.runtime = None
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        return {"message": "Sentra orchestrator running"}

    if settings.observability.prometheus_enabled:

        @app.get("/metrics", tags=["observability"])
        async def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
