"""Topic-filtered event subscriptions.

The job service pushes change events as server-sent events on
`GET /events?topic=<filter>&topic=<filter>...`. A topic filter is a
'/'-separated path where '+' matches exactly one level and a trailing '#'
matches any number of remaining levels (including none).

Two channels implement the same interface:

- SSEEventChannel reads the service's event stream over HTTP.
- LocalEventChannel is an in-process broker: publish() delivers to every
  open subscription with a matching filter. Used for embedding and tests.

Either way, raw messages are decoded into Events once, here, and malformed
messages are logged and skipped.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Sequence

import httpx

from errors import DataValidationError, InvalidTopicFilter
from models.events import Event, decode_event
from services.cancellation import CancelScope
from services.job_service_client import JobServiceClient

logger = logging.getLogger(__name__)


class TopicFilter:
    """Matcher for one subscription topic filter."""

    def __init__(self, pattern: str):
        levels = pattern.split("/")
        for i, level in enumerate(levels):
            if len(level) > 1 and ("+" in level or "#" in level):
                raise InvalidTopicFilter(f"Invalid filter {pattern!r}: wildcards have to be by themselves", pattern)
            if level == "#" and i != len(levels) - 1:
                raise InvalidTopicFilter(f"Invalid filter {pattern!r}: '#' must be last", pattern)
        self.pattern = pattern
        self._levels = levels

    def matches(self, topic: str) -> bool:
        topic_levels = topic.split("/")
        for i, level in enumerate(self._levels):
            if level == "#":
                return True
            if i >= len(topic_levels):
                return False
            if level != "+" and level != topic_levels[i]:
                return False
        return len(topic_levels) == len(self._levels)

    def __repr__(self) -> str:
        return f"TopicFilter({self.pattern!r})"


class Subscription(ABC):
    """Async iterator of decoded events, in arrival order."""

    def __init__(self, topics: Sequence[str]):
        self.topics = list(topics)
        self.closed = False

    def __aiter__(self):
        return self

    @abstractmethod
    async def __anext__(self) -> Event:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class EventChannel(ABC):
    """Something that can open subscriptions."""

    @abstractmethod
    async def subscribe(self, topics: Sequence[str], scope: Optional[CancelScope] = None) -> Subscription:
        """Open a subscription. Returns once events are flowing."""
        ...


# ========== Server-sent events ==========


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the data of each server-sent event from a stream of lines.

    Comment lines (keep-alives) and id/retry fields are ignored; multi-line
    data is joined with newlines.
    """
    data: List[str] = []
    async for line in lines:
        if not line:
            if data:
                yield "\n".join(data)
            data = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data.append(value)
    if data:
        yield "\n".join(data)


class SSESubscription(Subscription):
    def __init__(self, topics: Sequence[str], response: httpx.Response):
        super().__init__(topics)
        self._response = response
        self._messages = iter_sse_data(response.aiter_lines())

    async def __anext__(self) -> Event:
        while not self.closed:
            try:
                data = await self._messages.__anext__()
            except StopAsyncIteration:
                logger.info(f"Event stream for {self.topics} ended")
                await self.close()
                raise
            except httpx.HTTPError as e:
                logger.warning(f"Event stream for {self.topics} failed: {e}")
                await self.close()
                raise StopAsyncIteration
            try:
                return decode_event(data)
            except DataValidationError as e:
                logger.warning(f"Skipping malformed event: {e}")
        raise StopAsyncIteration

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._response.aclose()


class SSEEventChannel(EventChannel):
    """Event channel backed by the service's server-sent event stream."""

    def __init__(self, client: JobServiceClient, events_url: str = "/events"):
        self.client = client
        self.events_url = events_url

    async def subscribe(self, topics: Sequence[str], scope: Optional[CancelScope] = None) -> Subscription:
        for topic in topics:
            TopicFilter(topic)
        params = [("topic", topic) for topic in topics]
        response = await self.client.open_stream(self.events_url, params=params, scope=scope)
        logger.debug(f"Subscribed to {list(topics)}")
        return SSESubscription(topics, response)


# ========== In-process broker ==========


class LocalSubscription(Subscription):
    def __init__(self, channel: "LocalEventChannel", topics: Sequence[str]):
        super().__init__(topics)
        self.filters = [TopicFilter(topic) for topic in topics]
        self._channel = channel
        self._queue: "asyncio.Queue[Optional[Event]]" = asyncio.Queue()

    def matches(self, topic: str) -> bool:
        return any(f.matches(topic) for f in self.filters)

    def deliver(self, event: Event) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def __anext__(self) -> Event:
        if self.closed:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._channel._subscriptions.discard(self)
        self._queue.put_nowait(None)


class LocalEventChannel(EventChannel):
    """In-process broker delivering published events to matching subscriptions."""

    def __init__(self):
        self._subscriptions = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(self, topics: Sequence[str], scope: Optional[CancelScope] = None) -> Subscription:
        if scope is not None:
            scope.check()
        subscription = LocalSubscription(self, topics)
        self._subscriptions.add(subscription)
        return subscription

    def publish(self, event) -> int:
        """Deliver an Event (or its wire dict) to matching subscriptions.

        Returns the number of subscriptions it was delivered to.
        """
        if not isinstance(event, Event):
            event = decode_event(event)
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(event.topic):
                subscription.deliver(event)
                delivered += 1
        return delivered
