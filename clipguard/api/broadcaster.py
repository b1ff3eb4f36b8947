"""
Progress broadcaster for real-time pipeline updates.

Fans ProgressEvents out to every subscription on an (organization, job)
topic. Delivery is at-most-once with no replay: an observer only sees what
is published while it is subscribed. A slow observer whose queue fills up
is dropped; the publisher never waits.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, Optional, Set

from clipguard.core.config import settings
from clipguard.core.errors import SubscriptionDenied
from clipguard.core.logging import get_logger
from clipguard.pipeline.events import ProgressEvent

logger = get_logger("api.broadcaster")


class TopicAuthorizer(ABC):
    """Decides whether an organization may observe a job."""

    @abstractmethod
    def authorize(self, organization: str, job_id: str) -> bool:
        pass


class RepositoryTopicAuthorizer(TopicAuthorizer):
    """Admits a subscription only when the job exists and belongs to the organization."""

    def __init__(self, repository=None):
        if repository is None:
            from clipguard.db.repository import JobRepository
            repository = JobRepository
        self.repository = repository

    def authorize(self, organization: str, job_id: str) -> bool:
        job = self.repository.get(job_id)
        return job is not None and job.organization == organization


class Subscription:
    """One observer's membership in a job topic, backed by a bounded queue."""

    def __init__(self, organization: str, job_id: str, maxsize: int = 100):
        self.organization = organization
        self.job_id = job_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, event: ProgressEvent) -> bool:
        """Non-blocking enqueue. Returns False when the queue is full."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self):
        """Stop the subscription and wake any reader."""
        if self.closed:
            return
        self.closed = True
        # Make room for the end-of-stream marker
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)

    async def next_event(self) -> Optional[ProgressEvent]:
        """Next event, or None once the subscription is closed."""
        if self.closed and self.queue.empty():
            return None
        return await self.queue.get()

    async def events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self.next_event()
            if event is None:
                return
            yield event


class ProgressBroadcaster:
    """Manage job topic subscriptions, grouped by organization."""

    def __init__(self, authorizer: TopicAuthorizer, queue_size: Optional[int] = None):
        self.authorizer = authorizer
        self.queue_size = queue_size or settings.subscriber_queue_size
        # organization -> job_id -> subscriptions
        self._topics: Dict[str, Dict[str, Set[Subscription]]] = {}

    def subscribe(self, organization: str, job_id: str) -> Subscription:
        """
        Join a job topic.

        Raises:
            SubscriptionDenied: the job is not visible to this organization
        """
        if not self.authorizer.authorize(organization, job_id):
            raise SubscriptionDenied(organization, job_id)

        subscription = Subscription(organization, job_id, maxsize=self.queue_size)
        jobs = self._topics.setdefault(organization, {})
        jobs.setdefault(job_id, set()).add(subscription)
        logger.info(f"Subscribed to job {job_id} for {organization} (total: {len(jobs[job_id])})")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        """Remove a subscription and prune empty topics."""
        subscription.close()
        jobs = self._topics.get(subscription.organization)
        if not jobs:
            return
        subscribers = jobs.get(subscription.job_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del jobs[subscription.job_id]
            logger.debug(f"All subscriptions closed for job {subscription.job_id}")
        if not jobs:
            del self._topics[subscription.organization]

    def publish(self, event: ProgressEvent) -> int:
        """
        Deliver an event to current subscribers of its topic.

        Returns:
            Number of subscriptions the event was delivered to
        """
        subscribers = self._topics.get(event.organization, {}).get(event.job_id)
        if not subscribers:
            return 0

        delivered = 0
        dropped = []
        for subscription in list(subscribers):
            if subscription.offer(event):
                delivered += 1
            else:
                logger.warning(f"Queue full for job {event.job_id}, dropping slow subscriber")
                dropped.append(subscription)

        for subscription in dropped:
            self.unsubscribe(subscription)
        return delivered

    def subscriber_count(self, organization: Optional[str] = None, job_id: Optional[str] = None) -> int:
        if organization is None:
            return sum(len(s) for jobs in self._topics.values() for s in jobs.values())
        jobs = self._topics.get(organization, {})
        if job_id is None:
            return sum(len(s) for s in jobs.values())
        return len(jobs.get(job_id, ()))

    def has_topic(self, organization: str, job_id: Optional[str] = None) -> bool:
        if job_id is None:
            return organization in self._topics
        return job_id in self._topics.get(organization, {})
