"""
Remote progress consumer.

Observes jobs through two channels at once:
- the WebSocket subscription socket (aiohttp), fast but lossy
- polling GET /jobs/{id} every poll interval (httpx), slow but reliable

Subscriptions are recorded as intents and replayed on every (re)connect.
Terminal listeners fire at most once per job, whichever channel saw the
terminal state first.

Usage:
    consumer = ProgressConsumer("http://localhost:8000", "acme")
    consumer.on_terminal(lambda job: print(job.phase, job.verdict))
    await consumer.start()
    await consumer.subscribe(job_id)
"""
import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Set

import aiohttp
import httpx

from clipguard.client.reconcile import ObservedJob, mark_error, merge_event, merge_snapshot
from clipguard.core.config import settings
from clipguard.core.logging import get_logger

logger = get_logger("client.consumer")

Listener = Callable[[ObservedJob], Any]


class ProgressConsumer:
    """Keeps an ObservedJob per subscribed job up to date."""

    def __init__(
        self,
        base_url: str,
        organization: str,
        api_prefix: str = "/v1",
        poll_interval: Optional[float] = None,
        reconnect_delay: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.organization = organization
        self.api_prefix = api_prefix
        self.poll_interval = poll_interval or settings.poll_interval_sec
        self.reconnect_delay = reconnect_delay or settings.reconnect_delay_sec

        self.jobs: Dict[str, ObservedJob] = {}
        self._intents: Dict[str, None] = {}  # insertion-ordered set
        self._notified: Set[str] = set()
        self._pollers: Dict[str, asyncio.Task] = {}
        self._terminal_listeners: List[Listener] = []
        self._update_listeners: List[Listener] = []

        self._http_client = http_client
        self._session = session
        self._owns_http_client = http_client is None
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._connection_task: Optional[asyncio.Task] = None
        self._stopped = False
        self.connections = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def ws_url(self) -> str:
        if self.base_url.startswith("https://"):
            root = "wss://" + self.base_url[len("https://"):]
        elif self.base_url.startswith("http://"):
            root = "ws://" + self.base_url[len("http://"):]
        else:
            root = self.base_url
        return f"{root}{self.api_prefix}/ws"

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def start(self):
        """Open the push channel in the background. Safe to call once."""
        self._stopped = False
        if self._connection_task is None or self._connection_task.done():
            self._connection_task = asyncio.create_task(self._connection_loop())

    async def stop(self):
        self._stopped = True
        tasks = list(self._pollers.values())
        if self._connection_task is not None:
            tasks.append(self._connection_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pollers.clear()
        self._connection_task = None

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        if self._owns_http_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def __aenter__(self) -> "ProgressConsumer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    def on_terminal(self, listener: Listener):
        self._terminal_listeners.append(listener)

    def on_update(self, listener: Listener):
        self._update_listeners.append(listener)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe(self, job_id: str):
        """Observe a job. Idempotent; works before any connection exists."""
        job = self.jobs.setdefault(job_id, ObservedJob(job_id=job_id))
        if job.terminal:
            return

        self._intents[job_id] = None
        if job_id not in self._pollers:
            self._pollers[job_id] = asyncio.create_task(self._poll_loop(job_id))
        if self.connected:
            await self._send_subscribe(self._ws, job_id)

    async def unsubscribe(self, job_id: str):
        self._intents.pop(job_id, None)
        poller = self._pollers.pop(job_id, None)
        if poller is not None and poller is not asyncio.current_task():
            poller.cancel()
        await self._send_unsubscribe(job_id)

    @property
    def pending_intents(self) -> List[str]:
        return list(self._intents)

    # =========================================================================
    # Push channel
    # =========================================================================

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _send_subscribe(self, ws, job_id: str):
        await ws.send_json({"type": "subscribe", "jobId": job_id})

    async def _send_unsubscribe(self, job_id: str):
        """Release the server-side subscription; a dropped socket releases it anyway."""
        if not self.connected:
            return
        try:
            await self._ws.send_json({"type": "unsubscribe", "jobId": job_id})
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.debug(f"Unsubscribe for {job_id} not sent: {e}")

    async def _replay_intents(self, ws):
        for job_id in list(self._intents):
            await self._send_subscribe(ws, job_id)

    async def _connection_loop(self):
        """Connect, replay intents, read until the socket drops, wait, repeat."""
        while not self._stopped:
            try:
                session = self._get_session()
                async with session.ws_connect(self.ws_url, params={"organization": self.organization}) as ws:
                    self._ws = ws
                    self.connections += 1
                    logger.info(f"Connected to {self.ws_url} (connection #{self.connections})")
                    await self._replay_intents(ws)
                    async for message in ws:
                        if message.type == aiohttp.WSMsgType.TEXT:
                            try:
                                payload = message.json()
                            except ValueError:
                                logger.warning(f"Ignoring malformed progress message: {str(message.data)[:200]!r}")
                                continue
                            await self.handle_message(payload)
                        elif message.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                            break
            except (aiohttp.ClientError, ConnectionError, OSError) as e:
                logger.warning(f"Progress socket error: {e}")
            except Exception as e:
                logger.error(f"Progress socket handler failed: {e}", exc_info=True)
            finally:
                self._ws = None

            if self._stopped:
                break
            logger.info(f"Progress socket closed, reconnecting in {self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)

    async def handle_message(self, message: Dict[str, Any]):
        if not isinstance(message, dict):
            return
        kind = message.get("type")
        job_id = message.get("jobId")

        if kind in ("progress", "complete") and job_id:
            prior = self.jobs.get(job_id)
            if prior is None:
                return  # Not ours any more
            await self._apply(merge_event(prior, message))
        elif kind == "subscribed":
            logger.debug(f"Subscribed to job {job_id}")
        elif kind == "error":
            logger.warning(f"Server rejected subscription for job {job_id}: {message.get('message')}")
            if job_id in self._intents:
                await self._give_up(job_id, message.get("message") or "Subscription rejected")

    # =========================================================================
    # Polling
    # =========================================================================

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(10.0))
        return self._http_client

    async def poll_once(self, job_id: str) -> ObservedJob:
        """Fetch the persisted status once and merge it."""
        client = self._get_http_client()
        response = await client.get(
            f"{self.api_prefix}/jobs/{job_id}",
            headers={"X-Organization": self.organization},
        )
        response.raise_for_status()
        return await self._apply(merge_snapshot(self.jobs[job_id], response.json()))

    async def _poll_loop(self, job_id: str):
        try:
            while True:
                try:
                    job = await self.poll_once(job_id)
                except httpx.HTTPStatusError as e:
                    if e.response.status_code == 404:
                        await self._give_up(job_id, "Job not found")
                        return
                    logger.warning(f"Polling job {job_id} failed: {e}")
                    job = self.jobs.get(job_id)
                except (httpx.HTTPError, ValueError) as e:
                    logger.warning(f"Polling job {job_id} failed: {e}")
                    job = self.jobs.get(job_id)
                if job is None or job.settled:
                    return
                await asyncio.sleep(self.poll_interval)
        finally:
            if self._pollers.get(job_id) is asyncio.current_task():
                del self._pollers[job_id]

    # =========================================================================
    # State
    # =========================================================================

    async def _apply(self, job: ObservedJob) -> ObservedJob:
        self.jobs[job.job_id] = job
        for listener in self._update_listeners:
            await self._call(listener, job)

        if job.terminal:
            self._intents.pop(job.job_id, None)
            poller = self._pollers.pop(job.job_id, None)
            if poller is not None and poller is not asyncio.current_task():
                poller.cancel()
            if job.job_id not in self._notified:
                self._notified.add(job.job_id)
                logger.info(f"Job {job.job_id} reached {job.phase.value}")
                await self._send_unsubscribe(job.job_id)
                for listener in self._terminal_listeners:
                    await self._call(listener, job)
        return job

    async def _give_up(self, job_id: str, message: str):
        """Stop watching a job the server will not show us."""
        prior = self.jobs.get(job_id)
        if prior is None or prior.settled:
            return
        logger.warning(f"Giving up on job {job_id}: {message}")
        self._intents.pop(job_id, None)
        poller = self._pollers.pop(job_id, None)
        if poller is not None and poller is not asyncio.current_task():
            poller.cancel()
        job = mark_error(prior, message)
        self.jobs[job_id] = job
        for listener in self._update_listeners:
            await self._call(listener, job)

    async def _call(self, listener: Listener, job: ObservedJob):
        try:
            result = listener(job)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Listener failed for job {job.job_id}: {e}", exc_info=True)

    async def wait_terminal(self, job_id: str, timeout: Optional[float] = None) -> ObservedJob:
        """Block until a job is seen in a terminal phase, or given up on (Phase.ERROR)."""
        async def _wait():
            while True:
                job = self.jobs.get(job_id)
                if job is not None and job.settled:
                    return job
                await asyncio.sleep(0.05)

        return await asyncio.wait_for(_wait(), timeout=timeout)
