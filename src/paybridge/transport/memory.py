"""
In-process event bus.

Implements the same pull contract as the remote bus: every subscription on a
topic sees every event (fan-out), delivery only happens against outstanding
fetch credit, and a subscription that is not fetched from for
``idle_timeout`` seconds goes stale and is closed.

Each topic keeps only its most recent ``retention`` events; a subscription
that falls behind the retained window skips ahead to the oldest one kept.

Used by the test-suite, the ``loopback`` command and local development.
It is not durable and not meant for long-running production traffic.
"""

from __future__ import annotations

import hashlib
import logging
import struct
import threading
import time
from typing import Optional, Sequence

from paybridge.errors import SubscriptionClosed, TransportFailure
from paybridge.transport.bus import (
    ConsumerEvent,
    EventBus,
    ProducerEvent,
    PublishResult,
    ReplayPreset,
    SchemaInfo,
    Subscription,
    TopicInfo,
)
from paybridge.transport.envelope import DEFAULT_SCHEMA_JSON

logger = logging.getLogger(__name__)

MAX_PENDING_EVENTS = 100
DEFAULT_RETENTION = 10_000


def schema_id_for(schema_json: str) -> str:
    return hashlib.sha1(schema_json.encode("utf-8")).hexdigest()[:22]


class _Topic:
    def __init__(self, name: str, schema_id: str):
        self.name = name
        self.schema_id = schema_id
        self.log: list[ConsumerEvent] = []
        self.offset = 0  # absolute position of log[0]
        self.subscriptions: list["InMemorySubscription"] = []

    @property
    def end(self) -> int:
        return self.offset + len(self.log)

    def trim(self, retention: int) -> None:
        excess = len(self.log) - retention
        if excess > 0:
            del self.log[:excess]
            self.offset += excess


class InMemorySubscription(Subscription):
    def __init__(
        self,
        bus: "InMemoryEventBus",
        topic: _Topic,
        position: int,
        idle_timeout: Optional[float],
        max_pending: int,
    ):
        self._bus = bus
        self._topic = topic
        self._position = position
        self._idle_timeout = idle_timeout
        self._max_pending = max_pending
        self._credit = 0
        self._closed = False
        self._last_fetch = time.monotonic()
        self.fetch_count = 0

    @property
    def closed(self) -> bool:
        with self._bus._cond:
            self._check_idle()
            return self._closed

    @property
    def credit(self) -> int:
        return self._credit

    def fetch(self, num_requested: int) -> None:
        with self._bus._cond:
            self._check_idle()
            if self._closed:
                raise SubscriptionClosed(f"Subscription on {self._topic.name} is closed")
            self._credit = min(self._credit + max(0, num_requested), self._max_pending)
            self._last_fetch = time.monotonic()
            self.fetch_count += 1
            self._bus._cond.notify_all()

    def receive(self, timeout: Optional[float] = None) -> Optional[list[ConsumerEvent]]:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._bus._cond:
            while True:
                self._check_idle()
                if self._closed:
                    raise SubscriptionClosed(f"Subscription on {self._topic.name} is closed")
                if self._position < self._topic.offset:
                    logger.warning(
                        f"Subscription on {self._topic.name} fell behind retention, "
                        f"skipped {self._topic.offset - self._position} events"
                    )
                    self._position = self._topic.offset
                available = self._topic.end - self._position
                if self._credit > 0 and available > 0:
                    count = min(self._credit, available)
                    start = self._position - self._topic.offset
                    batch = self._topic.log[start:start + count]
                    self._position += count
                    self._credit -= count
                    return batch
                wait = self._next_wakeup(deadline)
                if wait is not None and wait <= 0:
                    return None
                self._bus._cond.wait(wait)

    def close(self) -> None:
        with self._bus._cond:
            self._close_locked()

    # Called with the bus condition held.
    def _check_idle(self) -> None:
        if self._closed or self._idle_timeout is None:
            return
        if time.monotonic() - self._last_fetch > self._idle_timeout:
            logger.info(f"Subscription on {self._topic.name} went stale after {self._idle_timeout:g}s without fetch")
            self._close_locked()

    def _close_locked(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._topic.subscriptions.remove(self)
        except ValueError:
            pass
        self._bus._cond.notify_all()

    def _next_wakeup(self, deadline: Optional[float]) -> Optional[float]:
        now = time.monotonic()
        waits = []
        if deadline is not None:
            waits.append(deadline - now)
        if self._idle_timeout is not None:
            waits.append(max(0.001, self._last_fetch + self._idle_timeout - now + 0.001))
        return min(waits) if waits else None


class InMemoryEventBus(EventBus):
    def __init__(
        self,
        schema_json: str = DEFAULT_SCHEMA_JSON,
        idle_timeout: Optional[float] = None,
        max_pending: int = MAX_PENDING_EVENTS,
        retention: Optional[int] = DEFAULT_RETENTION,
    ):
        self._cond = threading.Condition()
        self._default_schema = schema_json
        self._schemas: dict[str, str] = {}
        self._topics: dict[str, _Topic] = {}
        self._idle_timeout = idle_timeout
        self._max_pending = max_pending
        self._retention = retention  # None keeps every event
        self._sequence = 0
        self._closed = False
        self.publish_error: Optional[str] = None  # set to make every publish fail

    def create_topic(self, name: str, schema_json: Optional[str] = None) -> TopicInfo:
        schema_json = schema_json or self._default_schema
        schema_id = schema_id_for(schema_json)
        with self._cond:
            self._schemas[schema_id] = schema_json
            topic = self._topics.get(name)
            if topic is None:
                topic = _Topic(name, schema_id)
                self._topics[name] = topic
            else:
                topic.schema_id = schema_id
            return TopicInfo(topic_name=name, schema_id=topic.schema_id)

    def _topic(self, name: str) -> _Topic:
        topic = self._topics.get(name)
        if topic is None:
            self.create_topic(name)
            topic = self._topics[name]
        return topic

    def get_topic(self, topic: str) -> TopicInfo:
        with self._cond:
            t = self._topic(topic)
            return TopicInfo(topic_name=t.name, schema_id=t.schema_id)

    def get_schema(self, schema_id: str) -> SchemaInfo:
        with self._cond:
            schema_json = self._schemas.get(schema_id)
        if schema_json is None:
            raise TransportFailure(f"Unknown schema id: {schema_id}")
        return SchemaInfo(schema_id=schema_id, schema_json=schema_json)

    def publish(self, topic: str, events: Sequence[ProducerEvent]) -> list[PublishResult]:
        with self._cond:
            if self._closed:
                raise TransportFailure("Event bus is closed")
            t = self._topic(topic)
            results = []
            for event in events:
                if self.publish_error is not None:
                    results.append(PublishResult(correlation_key=event.id, error=self.publish_error))
                    continue
                if event.schema_id != t.schema_id:
                    results.append(PublishResult(
                        correlation_key=event.id,
                        error=f"Schema {event.schema_id} does not match topic schema {t.schema_id}",
                    ))
                    continue
                self._sequence += 1
                replay_id = struct.pack(">Q", self._sequence)
                t.log.append(ConsumerEvent(
                    replay_id=replay_id, schema_id=event.schema_id, payload=event.payload, id=event.id,
                ))
                results.append(PublishResult(correlation_key=event.id, replay_id=replay_id))
            if self._retention is not None:
                t.trim(self._retention)
            self._cond.notify_all()
            return results

    def subscribe(
        self,
        topic: str,
        replay_preset: ReplayPreset = ReplayPreset.LATEST,
        replay_id: Optional[bytes] = None,
    ) -> InMemorySubscription:
        with self._cond:
            if self._closed:
                raise TransportFailure("Event bus is closed")
            t = self._topic(topic)
            if replay_preset == ReplayPreset.EARLIEST:
                position = t.offset
            elif replay_preset == ReplayPreset.CUSTOM:
                position = self._position_after(t, replay_id)
            else:
                position = t.end
            sub = InMemorySubscription(self, t, position, self._idle_timeout, self._max_pending)
            t.subscriptions.append(sub)
            return sub

    @staticmethod
    def _position_after(topic: _Topic, replay_id: Optional[bytes]) -> int:
        for index, event in enumerate(topic.log):
            if event.replay_id == replay_id:
                return topic.offset + index + 1
        raise TransportFailure(f"Unknown replay id: {replay_id!r}")

    def events(self, topic: str) -> list[ConsumerEvent]:
        """Snapshot of the events ``topic`` still retains."""
        with self._cond:
            return list(self._topic(topic).log)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            for t in self._topics.values():
                for sub in list(t.subscriptions):
                    sub._close_locked()
            self._cond.notify_all()
