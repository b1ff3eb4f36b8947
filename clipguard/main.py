"""
ClipGuard FastAPI application.

API Structure (v1):
- POST /v1/jobs - Upload a video and start the pipeline
- GET  /v1/jobs/{id} - Persisted job status
- GET  /v1/jobs/{id}/events - SSE progress stream
- WS   /v1/ws?organization=... - Subscription socket
- GET  /v1/health - Service and backend status
"""
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clipguard.api.broadcaster import ProgressBroadcaster, RepositoryTopicAuthorizer
from clipguard.api.routes import router
from clipguard.classifiers.registry import select_backend
from clipguard.core.config import settings
from clipguard.core.logging import get_logger, setup_logging
from clipguard.db.connection import init_db
from clipguard.db.repository import JobRepository
from clipguard.pipeline.orchestrator import PipelineOrchestrator

logger = get_logger("main")


def init_directories():
    for path in (settings.upload_dir, settings.processed_dir, settings.temp_dir):
        os.makedirs(path, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    setup_logging(settings.log_level)
    logger.info("Starting ClipGuard service")
    logger.info(f"Upload directory: {settings.upload_dir}")
    logger.info(f"Temp directory: {settings.temp_dir}")
    logger.info(f"Database: {settings.database_url.split('@')[1] if '@' in settings.database_url else settings.database_url}")

    init_directories()
    init_db()

    backend = select_backend(settings)
    broadcaster = ProgressBroadcaster(RepositoryTopicAuthorizer(JobRepository), settings.subscriber_queue_size)
    app.state.backend = backend
    app.state.broadcaster = broadcaster
    app.state.orchestrator = PipelineOrchestrator(
        broadcaster=broadcaster,
        backend=backend,
        repository=JobRepository,
        config=settings,
    )

    yield

    # Shutdown
    logger.info("Shutting down ClipGuard service")
    await backend.close()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Video upload vetting pipeline with live progress",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.version,
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
