"""
Test the remote progress consumer: intent replay, polling fallback, single terminal notification.
"""
import asyncio
import json

import aiohttp
import httpx
import pytest

from clipguard.client.consumer import ProgressConsumer
from clipguard.client.reconcile import Phase


class FakeMessage:
    type = aiohttp.WSMsgType.TEXT

    def __init__(self, payload):
        self.data = json.dumps(payload)

    def json(self):
        return json.loads(self.data)


class MalformedMessage(FakeMessage):
    def __init__(self, text):
        self.data = text


class FakeWebSocket:
    """Yields scripted messages, then behaves like a dropped connection unless held open."""

    def __init__(self, messages=(), hold=False):
        self.messages = [m if isinstance(m, FakeMessage) else FakeMessage(m) for m in messages]
        self.hold = hold
        self.sent = []
        self.closed = False

    async def send_json(self, data):
        self.sent.append(data)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            await asyncio.sleep(0)
            yield message
        while self.hold and not self.closed:
            await asyncio.sleep(0.01)

    async def close(self):
        self.closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True


class FakeSession:
    """Hands out scripted sockets; refuses connections once they run out."""

    def __init__(self, sockets):
        self.sockets = list(sockets)
        self.connects = []
        self.closed = False

    def ws_connect(self, url, params=None):
        self.connects.append((url, params))
        if not self.sockets:
            raise aiohttp.ClientConnectionError("connection refused")
        return self.sockets.pop(0)

    async def close(self):
        self.closed = True


def status_client(snapshots):
    """httpx client whose GET /v1/jobs/{id} walks through `snapshots` per job."""
    calls = {}

    def handler(request: httpx.Request) -> httpx.Response:
        job_id = request.url.path.rsplit("/", 1)[-1]
        sequence = snapshots[job_id]
        index = min(calls.get(job_id, 0), len(sequence) - 1)
        calls[job_id] = calls.get(job_id, 0) + 1
        body = sequence[index]
        if body is None:
            return httpx.Response(503)
        if isinstance(body, int):
            return httpx.Response(body)
        return httpx.Response(200, json=body)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://server")
    return client, calls


def snapshot(job_id, stage, progress):
    return {"id": job_id, "stage": stage, "overallProgress": progress,
            "sensitivityStatus": "safe" if stage == "completed" else "pending"}


async def wait_for(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


def test_ws_url_derived_from_base_url():
    assert ProgressConsumer("http://localhost:8000/", "acme").ws_url == "ws://localhost:8000/v1/ws"
    assert ProgressConsumer("https://example.com", "acme").ws_url == "wss://example.com/v1/ws"


@pytest.mark.asyncio
async def test_intents_replayed_on_every_connection():
    client, _ = status_client({"job1": [snapshot("job1", "analyzing", 35)]})
    first = FakeWebSocket([{"type": "subscribed", "jobId": "job1"},
                           {"type": "progress", "jobId": "job1", "stage": "analyzing", "fractionComplete": 40}])
    second = FakeWebSocket([{"type": "subscribed", "jobId": "job1"}])
    session = FakeSession([first, second])

    consumer = ProgressConsumer("http://server", "acme", poll_interval=5, reconnect_delay=0.01,
                                http_client=client, session=session)
    await consumer.subscribe("job1")
    await consumer.subscribe("job1")  # idempotent before connecting
    await consumer.start()
    try:
        await wait_for(lambda: len(session.connects) >= 3)
    finally:
        await consumer.stop()
        await client.aclose()

    assert first.sent == [{"type": "subscribe", "jobId": "job1"}]
    assert second.sent == [{"type": "subscribe", "jobId": "job1"}]
    assert session.connects[0] == ("ws://server/v1/ws", {"organization": "acme"})
    assert consumer.jobs["job1"].progress == 40


@pytest.mark.asyncio
async def test_terminal_notified_once_across_push_poll_and_replay():
    client, _ = status_client({"job1": [snapshot("job1", "processing", 10), snapshot("job1", "completed", 100)]})
    complete = {"type": "complete", "jobId": "job1", "stage": "completed", "fractionComplete": 100,
                "sensitivityStatus": "safe"}
    session = FakeSession([FakeWebSocket([complete, complete]), FakeWebSocket([complete])])

    notified = []
    consumer = ProgressConsumer("http://server", "acme", poll_interval=0.02, reconnect_delay=0.01,
                                http_client=client, session=session)
    consumer.on_terminal(notified.append)
    await consumer.subscribe("job1")
    await consumer.start()
    try:
        await wait_for(lambda: len(session.connects) >= 3)
        await consumer.subscribe("job1")
        await consumer.poll_once("job1")
    finally:
        await consumer.stop()
        await client.aclose()

    assert len(notified) == 1
    assert notified[0].phase == Phase.COMPLETED
    assert consumer.pending_intents == []


@pytest.mark.asyncio
async def test_polling_catches_job_finished_before_subscription():
    client, calls = status_client({"job1": [snapshot("job1", "completed", 100)]})
    session = FakeSession([])  # push channel never comes up

    notified = []
    consumer = ProgressConsumer("http://server", "acme", poll_interval=2.0, reconnect_delay=0.05,
                                http_client=client, session=session)
    consumer.on_terminal(notified.append)
    await consumer.start()
    try:
        await asyncio.sleep(0.05)
        await consumer.subscribe("job1")
        job = await consumer.wait_terminal("job1", timeout=2.0)
    finally:
        await consumer.stop()
        await client.aclose()

    assert job.phase == Phase.COMPLETED
    assert len(notified) == 1
    assert calls["job1"] == 1


@pytest.mark.asyncio
async def test_polling_survives_errors_and_stops_on_terminal():
    client, calls = status_client({"job1": [None, snapshot("job1", "compressing", 60),
                                            snapshot("job1", "flagged", 100)]})
    updates = []
    consumer = ProgressConsumer("http://server", "acme", poll_interval=0.01, http_client=client,
                                session=FakeSession([]))
    consumer.on_update(lambda job: updates.append(job.progress))
    await consumer.subscribe("job1")
    try:
        job = await consumer.wait_terminal("job1", timeout=2.0)
        await asyncio.sleep(0.05)
    finally:
        await consumer.stop()
        await client.aclose()

    assert job.phase == Phase.FLAGGED
    assert calls["job1"] == 3
    assert updates == [60, 100]


@pytest.mark.asyncio
async def test_async_listeners_are_awaited():
    client, _ = status_client({"job1": [snapshot("job1", "completed", 100)]})
    seen = []

    async def listener(job):
        await asyncio.sleep(0)
        seen.append(job.job_id)

    consumer = ProgressConsumer("http://server", "acme", poll_interval=0.01, http_client=client,
                                session=FakeSession([]))
    consumer.on_terminal(listener)
    await consumer.subscribe("job1")
    try:
        await consumer.wait_terminal("job1", timeout=2.0)
    finally:
        await consumer.stop()
        await client.aclose()

    assert seen == ["job1"]


@pytest.mark.asyncio
async def test_malformed_frame_does_not_stop_reconnecting():
    client, _ = status_client({"job1": [snapshot("job1", "analyzing", 35)]})
    first = FakeWebSocket([MalformedMessage("not json"), ["not", "an", "object"],
                           {"type": "progress", "jobId": "job1", "stage": "analyzing", "fractionComplete": 45}])
    second = FakeWebSocket([{"type": "subscribed", "jobId": "job1"}])
    session = FakeSession([first, second])

    consumer = ProgressConsumer("http://server", "acme", poll_interval=5, reconnect_delay=0.01,
                                http_client=client, session=session)
    await consumer.subscribe("job1")
    await consumer.start()
    try:
        await wait_for(lambda: len(session.connects) >= 3)
        assert not consumer._connection_task.done()
    finally:
        await consumer.stop()
        await client.aclose()

    assert consumer.jobs["job1"].progress == 45
    assert second.sent == [{"type": "subscribe", "jobId": "job1"}]


@pytest.mark.asyncio
async def test_terminal_push_releases_server_subscription():
    client, _ = status_client({"job1": [snapshot("job1", "compressing", 60)]})
    complete = {"type": "complete", "jobId": "job1", "stage": "completed", "fractionComplete": 100}
    socket = FakeWebSocket([complete], hold=True)
    session = FakeSession([socket])

    consumer = ProgressConsumer("http://server", "acme", poll_interval=5, reconnect_delay=0.01,
                                http_client=client, session=session)
    await consumer.subscribe("job1")
    await consumer.start()
    try:
        await wait_for(lambda: consumer.jobs["job1"].terminal)
    finally:
        await consumer.stop()
        await client.aclose()

    assert socket.sent == [{"type": "subscribe", "jobId": "job1"},
                           {"type": "unsubscribe", "jobId": "job1"}]


@pytest.mark.asyncio
async def test_terminal_poll_releases_server_subscription():
    client, _ = status_client({"job1": [snapshot("job1", "compressing", 60), snapshot("job1", "completed", 100)]})
    socket = FakeWebSocket([{"type": "subscribed", "jobId": "job1"}], hold=True)
    session = FakeSession([socket])

    consumer = ProgressConsumer("http://server", "acme", poll_interval=0.05, reconnect_delay=0.01,
                                http_client=client, session=session)
    await consumer.start()
    await wait_for(lambda: consumer.connected)
    await consumer.subscribe("job1")
    try:
        await wait_for(lambda: consumer.jobs["job1"].terminal)
    finally:
        await consumer.stop()
        await client.aclose()

    assert {"type": "unsubscribe", "jobId": "job1"} in socket.sent
    assert socket.sent.count({"type": "unsubscribe", "jobId": "job1"}) == 1


@pytest.mark.asyncio
async def test_unknown_job_is_given_up_after_not_found():
    client, calls = status_client({"job1": [404]})
    notified = []
    consumer = ProgressConsumer("http://server", "acme", poll_interval=0.01, http_client=client,
                                session=FakeSession([]))
    consumer.on_terminal(notified.append)
    await consumer.subscribe("job1")
    try:
        job = await consumer.wait_terminal("job1", timeout=2.0)
        await asyncio.sleep(0.05)
    finally:
        await consumer.stop()
        await client.aclose()

    assert job.phase == Phase.ERROR
    assert job.display_status == "Job not found"
    assert calls["job1"] == 1
    assert consumer.pending_intents == []
    assert notified == []


@pytest.mark.asyncio
async def test_rejected_subscription_is_given_up():
    client, _ = status_client({"job1": [snapshot("job1", "processing", 10)]})
    consumer = ProgressConsumer("http://server", "acme", poll_interval=5, http_client=client,
                                session=FakeSession([]))
    await consumer.subscribe("job1")
    try:
        await consumer.handle_message({"type": "error", "jobId": "job1", "message": "Job not found"})
    finally:
        await consumer.stop()
        await client.aclose()

    assert consumer.jobs["job1"].phase == Phase.ERROR
    assert consumer.pending_intents == []
