"""
Correlator: synchronous request/response over the shared payment topic.

``send_and_wait`` publishes a request envelope under a fresh correlation id
and blocks until the matching response arrives on the correlator's own
subscription. Many callers can wait at once; each waits on its own pending
record, and the background listener only ever deposits into records that a
caller has already registered.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from typing import Any, Optional, Union

from pydantic import BaseModel

from paybridge.errors import CorrelationTimeout, StreamStartTimeout, TransportFailure
from paybridge.models.envelope import Envelope, EventMetadata
from paybridge.models.payment import dump_message
from paybridge.registry import MethodRegistry, default_registry
from paybridge.subscription import PullSubscriber, SubscriberState
from paybridge.transport.bus import DEFAULT_TOPIC, ConsumerEvent, EventBus, ReplayPreset
from paybridge.transport.envelope import EnvelopeCodec

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"SUCCESS", "COMPLETED", "FAILED", "CANCELLED", "EXPIRED"})
PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"

Payload = Union[str, dict, BaseModel, None]


def _has_terminal_marker(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    status = node.get("status")
    if isinstance(status, str) and status.upper() in TERMINAL_STATUSES:
        return True
    return node.get("paid") is True


def is_terminal_response(envelope: Envelope) -> bool:
    """True if a streamed response ends the exchange (final payment state or an error)."""
    if envelope.is_error:
        return True
    if PAYMENT_CONFIRMED in envelope.payload:
        return True
    try:
        document = json.loads(envelope.payload)
    except ValueError:
        return False
    # only the document itself and its "response" member carry the payment state
    if _has_terminal_marker(document):
        return True
    return isinstance(document, dict) and _has_terminal_marker(document.get("response"))


def _payload_text(payload: Payload) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, BaseModel):
        return dump_message(payload)
    return json.dumps(payload, separators=(",", ":"))


class PendingRequest:
    """One caller's outstanding request. Written by the listener, read by the caller."""

    def __init__(self, correlation_id: str, streaming: bool = False):
        self.correlation_id = correlation_id
        self.streaming = streaming
        self.responses: list[Envelope] = []
        self.terminal = False
        self._cond = threading.Condition()

    def deposit(self, envelope: Envelope) -> bool:
        with self._cond:
            if self.terminal and not self.streaming:
                return False
            self.responses.append(envelope)
            if not self.streaming or is_terminal_response(envelope):
                self.terminal = True
            self._cond.notify_all()
            return True

    def wait_first(self, timeout: float) -> Optional[Envelope]:
        with self._cond:
            self._cond.wait_for(lambda: bool(self.responses), timeout=max(timeout, 0.0))
            return self.responses[0] if self.responses else None

    def wait_terminal(self, deadline: float) -> Envelope:
        """Most recent response once a terminal one arrived or ``deadline`` (monotonic) passed."""
        with self._cond:
            self._cond.wait_for(lambda: self.terminal, timeout=max(deadline - time.monotonic(), 0.0))
            return self.responses[-1]


class Correlator:
    def __init__(
        self,
        bus: EventBus,
        codec: EnvelopeCodec,
        *,
        topic: str = DEFAULT_TOPIC,
        registry: Optional[MethodRegistry] = None,
        fetch_size: int = 100,
        keepalive_interval: float = 5.0,
        initial_response_timeout: float = 10.0,
        default_credential: Optional[str] = None,
    ):
        self._bus = bus
        self._codec = codec
        self._topic = topic
        self._registry = registry if registry is not None else default_registry()
        self._initial_response_timeout = initial_response_timeout
        self._default_credential = default_credential
        self._pending: dict[str, PendingRequest] = {}
        self._lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._subscriber = PullSubscriber(
            bus,
            topic,
            self._on_event,
            name="correlator",
            fetch_size=fetch_size,
            keepalive_interval=keepalive_interval,
            replay_preset=ReplayPreset.LATEST,
        )

    @property
    def state(self) -> SubscriberState:
        return self._subscriber.state

    def start(self) -> None:
        with self._start_lock:
            if self._subscriber.state == SubscriberState.IDLE:
                self._subscriber.start()

    def close(self) -> None:
        self._subscriber.stop()

    def __enter__(self) -> "Correlator":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def send_and_wait(
        self,
        method: str,
        payload: Payload = None,
        credential: Optional[str] = None,
        timeout: float = 30.0,
        correlation_id: Optional[str] = None,
    ) -> Envelope:
        """
        Publish a request and block for its response.

        For streaming methods, returns the most recent response once a
        terminal one arrives or ``timeout`` elapses. Raises CorrelationTimeout,
        StreamStartTimeout or TransportFailure.
        """
        started = time.monotonic()
        self.start()
        if self._subscriber.state == SubscriberState.CLOSED:
            raise TransportFailure("Correlator subscription is closed")

        correlation_id = correlation_id or str(uuid.uuid4())
        pending = PendingRequest(correlation_id, streaming=self._registry.is_streaming(method))
        with self._lock:
            if correlation_id in self._pending:
                raise ValueError(f"Correlation id already pending: {correlation_id}")
            self._pending[correlation_id] = pending
        try:
            self._publish(correlation_id, method, _payload_text(payload), credential or self._default_credential)
            if pending.streaming:
                return self._await_stream(pending, started + timeout, timeout)
            response = pending.wait_first(timeout - (time.monotonic() - started))
            if response is None:
                logger.warning(f"Timeout waiting for {method} - Correlation: {correlation_id}")
                raise CorrelationTimeout(correlation_id, timeout)
            logger.info(f"Received {response.method} - Correlation: {correlation_id}")
            return response
        finally:
            with self._lock:
                self._pending.pop(correlation_id, None)

    def _await_stream(self, pending: PendingRequest, deadline: float, timeout: float) -> Envelope:
        grace = min(self._initial_response_timeout, timeout)
        if pending.wait_first(grace) is None:
            logger.warning(f"No initial stream response - Correlation: {pending.correlation_id}")
            raise StreamStartTimeout(pending.correlation_id, grace)
        latest = pending.wait_terminal(deadline)
        if pending.terminal:
            logger.info(f"Stream completed after {len(pending.responses)} responses - "
                        f"Correlation: {pending.correlation_id}")
        else:
            logger.warning(f"Stream deadline reached after {len(pending.responses)} responses - "
                           f"Correlation: {pending.correlation_id}")
        return latest

    def _publish(self, correlation_id: str, method: str, payload: str, credential: Optional[str]) -> None:
        envelope = Envelope(
            correlation_id=correlation_id,
            method=method,
            payload=payload,
            credential=credential or None,
            metadata=EventMetadata(created_by_id=self._codec.identity),
        )
        try:
            results = self._bus.publish(self._topic, [self._codec.encode(envelope)])
        except TransportFailure:
            raise
        except Exception as e:
            raise TransportFailure(f"Failed to publish event: {e}", {"correlation_id": correlation_id}) from e
        failed = [r for r in results if not r.ok]
        if not results or failed:
            error = failed[0].error if failed else "no publish result"
            raise TransportFailure(f"Failed to publish event: {error}", {"correlation_id": correlation_id})
        logger.info(f"Published {method} - Correlation: {correlation_id}")

    def _on_event(self, event: ConsumerEvent) -> None:
        envelope = self._codec.decode(event)
        if envelope is None:
            return
        if not envelope.is_response:
            logger.debug(f"Ignoring non-response method: {envelope.method}")
            return
        with self._lock:
            pending = self._pending.get(envelope.correlation_id)
        if pending is None:
            logger.debug(f"No waiter for correlation {envelope.correlation_id}")
            return
        pending.deposit(envelope)
