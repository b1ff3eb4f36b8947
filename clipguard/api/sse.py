"""
Server-Sent Events stream for job progress.
SSE is better than WebSocket for one-directional updates: simpler, auto-reconnects, HTTP-based.
"""
import asyncio
import json
from typing import Any, Dict, Optional

from clipguard.api.broadcaster import ProgressBroadcaster, Subscription
from clipguard.api.schemas import VideoJobDTO
from clipguard.core.logging import get_logger
from clipguard.pipeline.events import ProgressEvent

logger = get_logger("api.sse")


def event_message(event: ProgressEvent) -> Dict[str, Any]:
    """Wire message shared by the SSE and WebSocket transports."""
    return {"type": "complete" if event.terminal else "progress", **event.to_dict()}


def terminal_event_for(job: VideoJobDTO) -> ProgressEvent:
    """Describe an already-finished job as its terminal event."""
    return ProgressEvent(
        job_id=job.id,
        organization=job.organization,
        stage=job.stage.value,
        fraction_complete=job.overall_progress,
        display_status=job.display_status,
        sensitivity_status=job.sensitivity_status.value if job.sensitivity_verdict else None,
        terminal=True,
    )


def format_sse(event: ProgressEvent) -> str:
    # SSE format: "data: {json}\n\n"
    return f"data: {json.dumps(event_message(event))}\n\n"


async def event_generator(
    broadcaster: ProgressBroadcaster,
    subscription: Subscription,
    snapshot: Optional[VideoJobDTO] = None,
):
    """
    Yield formatted SSE messages for one subscription until the terminal event.

    The caller subscribes before reading `snapshot`, so a job that finished in
    between is still seen through one path or the other.
    """
    try:
        if snapshot is not None and snapshot.stage.is_terminal:
            yield format_sse(terminal_event_for(snapshot))
            return

        async for event in subscription.events():
            yield format_sse(event)
            if event.terminal:
                break
    except asyncio.CancelledError:
        logger.info(f"SSE stream cancelled for job {subscription.job_id}")
        raise
    finally:
        broadcaster.unsubscribe(subscription)
