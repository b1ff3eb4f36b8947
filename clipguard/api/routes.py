"""
HTTP routes: job creation, status, progress streams and health.
"""
import asyncio
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, Request, UploadFile, WebSocket
from fastapi.responses import StreamingResponse

from clipguard.api.schemas import HealthResponse, VideoJobDTO
from clipguard.api.sse import event_generator
from clipguard.api.websocket import WebSocketSession
from clipguard.core.config import settings
from clipguard.core.errors import JobNotFoundError, MetadataError, SubscriptionDenied
from clipguard.core.logging import get_logger
from clipguard.db.models import generate_uuid
from clipguard.db.repository import JobRepository
from clipguard.utils.ffmpeg import probe_metadata

logger = get_logger("api.routes")

router = APIRouter()


def get_organization(
    x_organization: Optional[str] = Header(None),
    organization: Optional[str] = Query(None),
) -> str:
    """Tenant of the caller. EventSource cannot set headers, so a query parameter is accepted too."""
    org = x_organization or organization
    if not org:
        raise HTTPException(status_code=400, detail="Missing X-Organization header")
    return org


@router.post("/jobs", response_model=VideoJobDTO, status_code=201)
async def create_job(
    request: Request,
    file: UploadFile = File(...),
    organization: str = Depends(get_organization),
):
    """
    Upload a video and start processing it.

    **Example:**
    ```bash
    curl -X POST http://localhost:8000/v1/jobs \\
         -H "X-Organization: acme" \\
         -F "file=@video.mp4"
    ```
    """
    job_id = generate_uuid()
    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    source_path = upload_dir / f"{job_id}{Path(file.filename or '').suffix or '.mp4'}"

    content = await file.read()
    source_path.write_bytes(content)
    logger.info(f"Received upload {file.filename} ({len(content)} bytes) for {organization}")

    loop = asyncio.get_event_loop()
    try:
        metadata = await loop.run_in_executor(None, probe_metadata, str(source_path))
    except MetadataError as e:
        logger.warning(f"Rejected upload {file.filename}: {e} ({e.cause.value})")
        source_path.unlink(missing_ok=True)
        raise HTTPException(status_code=400, detail=e.user_message)

    job = JobRepository.create(
        organization=organization,
        source_path=str(source_path),
        metadata=metadata.to_dict(),
        filename=file.filename,
        job_id=job_id,
    )
    request.app.state.orchestrator.start(job.id)
    return job


@router.get("/jobs/{job_id}", response_model=VideoJobDTO)
async def get_job(job_id: str, organization: str = Depends(get_organization)):
    """Persisted status of a job. Jobs of other organizations are reported as missing."""
    try:
        return JobRepository.get_for_organization(job_id, organization)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.get("/jobs/{job_id}/events")
async def job_events(job_id: str, request: Request, organization: str = Depends(get_organization)):
    """
    Server-Sent Events stream of a job's progress. Ends after the terminal event.

    Returns:
        StreamingResponse with text/event-stream content type
    """
    broadcaster = request.app.state.broadcaster
    try:
        subscription = broadcaster.subscribe(organization, job_id)
    except SubscriptionDenied:
        raise HTTPException(status_code=404, detail="Job not found")

    snapshot = JobRepository.get(job_id)
    return StreamingResponse(
        event_generator(broadcaster, subscription, snapshot),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable nginx buffering
        }
    )


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, organization: Optional[str] = None):
    """Subscription socket; see clipguard.api.websocket for the message protocol."""
    if not organization:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    session = WebSocketSession(websocket, websocket.app.state.broadcaster, organization)
    await session.run()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    backend = request.app.state.backend
    return HealthResponse(
        status="healthy",
        version=settings.version,
        classifier_backend=backend.name,
        classifier_available=backend.available,
    )
