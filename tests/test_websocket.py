"""
Test the WebSocket subscription session against in-memory fakes.
"""
import asyncio
from types import SimpleNamespace

import pytest

from clipguard.api.broadcaster import ProgressBroadcaster, TopicAuthorizer
from clipguard.api.websocket import WebSocketSession
from clipguard.db.models import JobStage, SensitivityStatus
from clipguard.pipeline.events import ProgressEvent


class AllowAll(TopicAuthorizer):
    def authorize(self, organization, job_id):
        return True


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)


class FakeRepository:
    def __init__(self, jobs):
        self.jobs = jobs

    def get(self, job_id):
        return self.jobs.get(job_id)


def job(job_id, stage):
    finished = stage == JobStage.COMPLETED
    return SimpleNamespace(
        id=job_id,
        organization="acme",
        stage=stage,
        overall_progress=100 if finished else 30,
        display_status="Completed" if finished else "Analyzing...",
        sensitivity_status=SensitivityStatus.SAFE if finished else SensitivityStatus.PENDING,
        sensitivity_verdict={"status": "safe"} if finished else None,
    )


@pytest.fixture
def broadcaster():
    return ProgressBroadcaster(AllowAll(), queue_size=10)


@pytest.mark.asyncio
async def test_finished_jobs_hold_no_subscription(broadcaster):
    jobs = {f"job{i}": job(f"job{i}", JobStage.COMPLETED) for i in range(50)}
    socket = FakeSocket()
    session = WebSocketSession(socket, broadcaster, "acme", repository=FakeRepository(jobs))

    for job_id in jobs:
        await session.subscribe(job_id)

    assert session.subscriptions == {}
    assert session._pumps == {}
    assert broadcaster.subscriber_count() == 0

    first = socket.sent[:2]
    assert first[0] == {"type": "subscribed", "jobId": "job0"}
    assert first[1]["type"] == "complete"
    assert first[1]["jobId"] == "job0"
    assert first[1]["stage"] == "completed"
    assert first[1]["sensitivityStatus"] == "safe"


@pytest.mark.asyncio
async def test_live_job_is_forwarded_until_terminal(broadcaster):
    socket = FakeSocket()
    session = WebSocketSession(socket, broadcaster, "acme",
                               repository=FakeRepository({"job1": job("job1", JobStage.ANALYZING)}))

    await session.subscribe("job1")
    assert broadcaster.subscriber_count("acme", "job1") == 1

    broadcaster.publish(ProgressEvent(job_id="job1", organization="acme", stage="completed",
                                      fraction_complete=100, terminal=True))
    for _ in range(50):
        if "job1" not in session.subscriptions:
            break
        await asyncio.sleep(0.01)

    assert socket.sent[-1]["type"] == "complete"
    assert session.subscriptions == {}
    assert broadcaster.subscriber_count() == 0
