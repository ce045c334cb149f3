"""
Notification Dispatcher
=======================

In-process publish/subscribe fan-out of incident lifecycle events.

Topics are ``incident:{id}`` for a single incident or the wildcard
``incident:*`` for every incident. Delivery is best-effort and not
durable: events published while nobody listens are discarded.

Inside a running event loop every subscription owns a bounded queue and a
worker task, so events reach each listener in publish order while a slow
or failing listener cannot hold up the publisher or other listeners.
Plain (non-async) listeners run in the default thread pool executor so a
blocking call never stalls the event loop.
Without a running loop, delivery happens inline.
"""

import asyncio
import inspect
import threading
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from config import settings
from core import ValidationException
from incidents.domain import LifecycleEvent
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

TOPIC_PREFIX = "incident:"
WILDCARD_TOPIC = "incident:*"

Listener = Callable[[LifecycleEvent], Union[None, Awaitable[None]]]


def topic_for(incident_id: str) -> str:
    """Topic carrying the events of one incident."""
    return f"{TOPIC_PREFIX}{incident_id}"


def validate_topic(topic: Any) -> str:
    if not isinstance(topic, str) or not topic.startswith(TOPIC_PREFIX) \
            or not topic[len(TOPIC_PREFIX):].strip():
        raise ValidationException(
            f"Invalid topic '{topic}'; expected 'incident:<id>' or '{WILDCARD_TOPIC}'",
            {"field": "topic", "value": str(topic)}
        )
    return topic


def is_async_listener(listener: Any) -> bool:
    """True for coroutine functions, including async callables and partials of them."""
    return inspect.iscoroutinefunction(listener) \
        or inspect.iscoroutinefunction(getattr(listener, "__call__", None))


class Subscription:
    """Handle returned by ``subscribe``; pass it back to ``unsubscribe``."""

    def __init__(self, topic: str, listener: Listener, queue_size: int):
        self.id = str(uuid.uuid4())
        self.topic = topic
        self.listener = listener
        self.active = True
        self.dropped = 0
        self._queue_size = queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_wildcard(self) -> bool:
        return self.topic == WILDCARD_TOPIC

    def __repr__(self) -> str:
        return f"Subscription(id={self.id!r}, topic={self.topic!r}, active={self.active})"


class NotificationDispatcher:
    """
    Fans lifecycle events out to subscribers.

    Usage:
        dispatcher = NotificationDispatcher()
        handle = dispatcher.subscribe("incident:*", on_event)
        dispatcher.publish(event)
        dispatcher.unsubscribe(handle)
    """

    def __init__(self, queue_size: Optional[int] = None):
        self._queue_size = queue_size or settings.notification_queue_size
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()

    # ========== Subscription management ==========

    def subscribe(self, topic: str, listener: Listener) -> Subscription:
        """
        Register ``listener`` for ``topic``.

        Raises:
            ValidationException: if the topic is malformed or listener is not callable
        """
        validate_topic(topic)
        if not callable(listener):
            raise ValidationException("Listener must be callable", {"field": "listener"})

        subscription = Subscription(topic, listener, self._queue_size)
        with self._lock:
            self._subscriptions[subscription.id] = subscription

        logger.debug(
            "Subscription added",
            extra={"subscription_id": subscription.id, "topic": topic}
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription. Unsubscribing twice is a no-op."""
        with self._lock:
            removed = self._subscriptions.pop(subscription.id, None)
        subscription.active = False
        if removed is None:
            return

        worker = subscription._worker
        if worker is not None and not worker.done():
            worker.cancel()
        logger.debug(
            "Subscription removed",
            extra={"subscription_id": subscription.id, "topic": subscription.topic}
        )

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            if topic is None:
                return len(self._subscriptions)
            return sum(1 for sub in self._subscriptions.values() if sub.topic == topic)

    # ========== Publishing ==========

    def publish(self, event: LifecycleEvent) -> int:
        """
        Deliver ``event`` to the incident's subscribers and to wildcard subscribers.

        Never raises because of a listener and never waits for one.

        Returns:
            Number of subscriptions the event was handed to
        """
        targets = self._targets_for(event.incident_id)
        if not targets:
            return 0

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        delivered = 0
        for subscription in targets:
            if loop is None:
                self._deliver_inline(subscription, event)
                delivered += 1
            elif self._enqueue(subscription, event, loop):
                delivered += 1
        return delivered

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        loop = asyncio.get_running_loop()
        with self._lock:
            queues = [
                sub._queue for sub in self._subscriptions.values()
                if sub._queue is not None and sub._loop is loop
            ]
        for queue in queues:
            await queue.join()

    async def close(self) -> None:
        """Stop all workers and drop every subscription."""
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()

        workers = []
        for subscription in subscriptions:
            subscription.active = False
            worker = subscription._worker
            if worker is not None and not worker.done():
                worker.cancel()
                workers.append(worker)
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Notification dispatcher closed", extra={"subscriptions": len(subscriptions)})

    # ========== Internals ==========

    def _targets_for(self, incident_id: str) -> List[Subscription]:
        topic = topic_for(incident_id)
        with self._lock:
            return [
                sub for sub in self._subscriptions.values()
                if sub.topic == topic or sub.is_wildcard
            ]

    def _enqueue(
        self,
        subscription: Subscription,
        event: LifecycleEvent,
        loop: asyncio.AbstractEventLoop
    ) -> bool:
        if subscription._loop is not loop or subscription._worker is None \
                or subscription._worker.done():
            subscription._queue = asyncio.Queue(maxsize=subscription._queue_size)
            subscription._loop = loop
            subscription._worker = loop.create_task(
                self._run(subscription, subscription._queue)
            )

        try:
            subscription._queue.put_nowait(event)
        except asyncio.QueueFull:
            subscription.dropped += 1
            logger.warning(
                "Subscriber queue full, event dropped",
                extra={
                    "subscription_id": subscription.id,
                    "topic": subscription.topic,
                    "event_type": event.type.value,
                    "incident_id": event.incident_id,
                    "dropped": subscription.dropped,
                }
            )
            return False
        return True

    async def _run(self, subscription: Subscription, queue: asyncio.Queue) -> None:
        """Per-subscription worker draining its queue in FIFO order."""
        while True:
            event = await queue.get()
            try:
                await self._invoke(subscription, event)
            finally:
                queue.task_done()

    async def _invoke(self, subscription: Subscription, event: LifecycleEvent) -> None:
        listener = subscription.listener
        try:
            if is_async_listener(listener):
                await listener(event)
            else:
                # Plain listeners may block; run them off the event loop
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(None, listener, event)
                if inspect.isawaitable(result):
                    await result
        except Exception:
            logger.exception(
                "Listener failed",
                extra={
                    "subscription_id": subscription.id,
                    "topic": subscription.topic,
                    "event_type": event.type.value,
                    "incident_id": event.incident_id,
                }
            )

    def _deliver_inline(self, subscription: Subscription, event: LifecycleEvent) -> None:
        try:
            result = subscription.listener(event)
            if inspect.isawaitable(result):
                if inspect.iscoroutine(result):
                    result.close()
                logger.error(
                    "Async listener cannot run without an event loop",
                    extra={"subscription_id": subscription.id, "topic": subscription.topic}
                )
        except Exception:
            logger.exception(
                "Listener failed",
                extra={
                    "subscription_id": subscription.id,
                    "topic": subscription.topic,
                    "event_type": event.type.value,
                    "incident_id": event.incident_id,
                }
            )
