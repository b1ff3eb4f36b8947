"""
WebSocket subscription protocol for job progress.

Client -> server:
    {"type": "subscribe", "jobId": "..."}
    {"type": "unsubscribe", "jobId": "..."}
Server -> client:
    {"type": "subscribed", "jobId": "..."}
    {"type": "progress" | "complete", ...event}
    {"type": "error", "jobId": "...", "message": "..."}

One socket may observe any number of jobs of its organization.
"""
import asyncio
from typing import Any, Dict

from fastapi import WebSocket, WebSocketDisconnect

from clipguard.api.broadcaster import ProgressBroadcaster, Subscription
from clipguard.api.sse import event_message, terminal_event_for
from clipguard.core.errors import SubscriptionDenied
from clipguard.core.logging import get_logger
from clipguard.db.repository import JobRepository

logger = get_logger("api.websocket")


class WebSocketSession:
    """Subscriptions held by one connected socket."""

    def __init__(self, websocket: WebSocket, broadcaster: ProgressBroadcaster, organization: str, repository=None):
        self.websocket = websocket
        self.broadcaster = broadcaster
        self.organization = organization
        self.repository = repository or JobRepository
        self.subscriptions: Dict[str, Subscription] = {}
        self._pumps: Dict[str, asyncio.Task] = {}
        self._send_lock = asyncio.Lock()

    async def send(self, message: Dict[str, Any]):
        async with self._send_lock:
            await self.websocket.send_json(message)

    async def run(self):
        """Serve the socket until the client disconnects."""
        logger.info(f"WebSocket connected for {self.organization}")
        try:
            while True:
                message = await self.websocket.receive_json()
                await self.handle(message)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected for {self.organization}")
        finally:
            await self.close()

    async def handle(self, message: Dict[str, Any]):
        kind = message.get("type") if isinstance(message, dict) else None
        job_id = message.get("jobId") if isinstance(message, dict) else None

        if kind == "subscribe" and job_id:
            await self.subscribe(job_id)
        elif kind == "unsubscribe" and job_id:
            await self.unsubscribe(job_id)
        else:
            await self.send({"type": "error", "jobId": job_id, "message": "Unsupported message"})

    async def subscribe(self, job_id: str):
        # Already subscribed: acknowledge without a second subscription
        if job_id in self.subscriptions:
            await self.send({"type": "subscribed", "jobId": job_id})
            return

        try:
            subscription = self.broadcaster.subscribe(self.organization, job_id)
        except SubscriptionDenied:
            await self.send({"type": "error", "jobId": job_id, "message": "Job not found"})
            return

        # Read after subscribing, so a job finishing in between is seen one way or the other
        snapshot = self.repository.get(job_id)
        if snapshot is not None and snapshot.stage.is_terminal:
            self.broadcaster.unsubscribe(subscription)
            await self.send({"type": "subscribed", "jobId": job_id})
            await self.send(event_message(terminal_event_for(snapshot)))
            return

        self.subscriptions[job_id] = subscription
        self._pumps[job_id] = asyncio.create_task(self._pump(subscription))
        await self.send({"type": "subscribed", "jobId": job_id})

    async def unsubscribe(self, job_id: str):
        pump = self._pumps.pop(job_id, None)
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
        subscription = self.subscriptions.pop(job_id, None)
        if subscription is not None:
            self.broadcaster.unsubscribe(subscription)

    async def _pump(self, subscription: Subscription):
        """Forward one topic's events to the socket until its terminal event."""
        try:
            async for event in subscription.events():
                await self.send(event_message(event))
                if event.terminal:
                    break
        except Exception as e:
            logger.warning(f"Failed to forward event for job {subscription.job_id}: {e}")
        finally:
            if self.subscriptions.get(subscription.job_id) is subscription:
                self.subscriptions.pop(subscription.job_id, None)
                self._pumps.pop(subscription.job_id, None)
            self.broadcaster.unsubscribe(subscription)

    async def close(self):
        for job_id in list(self.subscriptions):
            await self.unsubscribe(job_id)
