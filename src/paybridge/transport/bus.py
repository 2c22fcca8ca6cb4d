"""
Event bus boundary.

The bus is a pull-based pub/sub: a subscriber only receives events it has
asked for with ``fetch(n)``, and must keep asking (also when idle) or the
subscription goes stale and is closed by the bus.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

DEFAULT_TOPIC = "/event/KodyPayment__e"


class ReplayPreset(str, Enum):
    LATEST = "LATEST"
    EARLIEST = "EARLIEST"
    CUSTOM = "CUSTOM"


@dataclass(frozen=True)
class TopicInfo:
    topic_name: str
    schema_id: str
    can_publish: bool = True
    can_subscribe: bool = True


@dataclass(frozen=True)
class SchemaInfo:
    schema_id: str
    schema_json: str


@dataclass(frozen=True)
class ProducerEvent:
    id: str
    schema_id: str
    payload: bytes


@dataclass(frozen=True)
class ConsumerEvent:
    replay_id: bytes
    schema_id: str
    payload: bytes
    id: str = ""


@dataclass(frozen=True)
class PublishResult:
    correlation_key: str  # ProducerEvent.id this result answers
    replay_id: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Subscription(ABC):

    @abstractmethod
    def fetch(self, num_requested: int) -> None:
        """Ask for up to ``num_requested`` more events. Raises SubscriptionClosed."""
        raise NotImplementedError

    @abstractmethod
    def receive(self, timeout: Optional[float] = None) -> Optional[list[ConsumerEvent]]:
        """Next batch, or None on timeout. Raises SubscriptionClosed."""
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def closed(self) -> bool:
        raise NotImplementedError


class EventBus(ABC):

    @abstractmethod
    def get_topic(self, topic: str) -> TopicInfo:
        raise NotImplementedError

    @abstractmethod
    def get_schema(self, schema_id: str) -> SchemaInfo:
        raise NotImplementedError

    @abstractmethod
    def publish(self, topic: str, events: Sequence[ProducerEvent]) -> list[PublishResult]:
        """Publish and wait for the bus acknowledgement. Raises TransportFailure."""
        raise NotImplementedError

    @abstractmethod
    def subscribe(
        self,
        topic: str,
        replay_preset: ReplayPreset = ReplayPreset.LATEST,
        replay_id: Optional[bytes] = None,
    ) -> Subscription:
        raise NotImplementedError

    def close(self) -> None:
        pass
