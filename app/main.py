from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.core.logging import configure_logging
from app.api.traces import router as traces_router
from app.dependencies import get_recorder
from observability.middleware import TracingMiddleware
from observability.recorder import TraceRecorder

def create_app(recorder: Optional[TraceRecorder] = None) -> FastAPI:
    """
    Build the service app. Tests pass their own recorder.
    """
    recorder = recorder or get_recorder()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        yield
        await recorder.shutdown()

    app = FastAPI(
        title=settings.service_name,
        lifespan=lifespan
    )
    app.state.recorder = recorder

    # Traces every webhook/cron request that reaches the app
    app.add_middleware(
        TracingMiddleware,
        recorder=recorder,
        skip_paths=settings.tracing_skip_paths,
        cron_prefix=settings.cron_path_prefix,
    )

    # CORS middleware - allow dashboard frontend to call API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(traces_router, prefix="/v1")

    @app.get("/health")
    async def health():
        return {"status": "ok", "tracing": recorder.is_enabled()}

    return app

app = create_app()
