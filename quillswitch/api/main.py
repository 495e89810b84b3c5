"""FastAPI application entry point."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .dependencies import get_orchestrator
from .routes import errors, mappings, migrations, schemas

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Recover interrupted projects on startup, stop the scheduler on shutdown."""
    orchestrator = get_orchestrator()
    recovered = orchestrator.recover_interrupted()
    logger.info(f"QuillSwitch API started ({len(recovered)} interrupted projects paused)")
    yield
    if orchestrator.scheduler is not None:
        orchestrator.scheduler.shutdown()
    logger.info("QuillSwitch API stopped")


def create_app() -> FastAPI:
    logging.basicConfig(
        level=os.getenv("QUILLSWITCH_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(
        title="QuillSwitch API",
        description="Control surface for CRM migration projects",
        version="1.0.0",
        lifespan=lifespan,
    )

    origins_env = os.getenv("QUILLSWITCH_CORS_ORIGINS", "")
    origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]
    if not origins:
        origins = ["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(migrations.router, prefix="/api/migrations", tags=["migrations"])
    app.include_router(errors.router, prefix="/api/errors", tags=["errors"])
    app.include_router(mappings.router, prefix="/api/mappings", tags=["mappings"])
    app.include_router(schemas.router, prefix="/api/schemas", tags=["schemas"])

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app
