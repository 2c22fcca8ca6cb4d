"""
Responder: the long-running side of the bridge.

Pulls events from the payment topic, picks out request envelopes, dispatches
each through the method registry to the payment service and publishes the
correlated response (or an error response) back onto the same topic.

Each request runs on a worker from the responder's own thread pool, so a
long payment stream never holds up the listen loop or other requests.
Nothing carries over between requests, and no failure while handling one
reaches the listen loop.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterator, Optional

from pydantic import BaseModel

from paybridge.errors import TransportFailure
from paybridge.models.envelope import ERROR_METHOD, Envelope, EventMetadata, mask_credential
from paybridge.models.payment import dump_message
from paybridge.registry import MethodRegistry, Operation
from paybridge.subscription import PullSubscriber, SubscriberState
from paybridge.transport.bus import DEFAULT_TOPIC, ConsumerEvent, EventBus, ReplayPreset
from paybridge.transport.envelope import EnvelopeCodec

logger = logging.getLogger(__name__)

CREDENTIAL_REQUIRED_MESSAGE = "API key is required in event payload"
HEARTBEAT_INTERVAL_S = 300.0
DEFAULT_MAX_WORKERS = 8


def error_payload(error_type: str, message: str, **extra: Any) -> str:
    return json.dumps({"error": {"type": error_type, "message": message, **extra}}, separators=(",", ":"))


class Responder:
    def __init__(
        self,
        bus: EventBus,
        codec: EnvelopeCodec,
        registry: MethodRegistry,
        backend: Any,
        *,
        topic: str = DEFAULT_TOPIC,
        require_credential: bool = True,
        default_credential: Optional[str] = None,
        fetch_size: int = 10,
        keepalive_interval: float = 5.0,
        replay_preset: ReplayPreset = ReplayPreset.LATEST,
        replay_id: Optional[bytes] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self._bus = bus
        self._codec = codec
        self._registry = registry
        self._backend = backend
        self._topic = topic
        self._require_credential = require_credential
        self._default_credential = default_credential
        self._max_workers = max_workers
        self._workers: Optional[ThreadPoolExecutor] = None
        self._subscriber = PullSubscriber(
            bus,
            topic,
            self.handle_event,
            name="responder",
            fetch_size=fetch_size,
            keepalive_interval=keepalive_interval,
            replay_preset=replay_preset,
            replay_id=replay_id,
        )

    @property
    def state(self) -> SubscriberState:
        return self._subscriber.state

    def start(self) -> None:
        topic_info = self._bus.get_topic(self._topic)
        if not topic_info.can_publish or not topic_info.can_subscribe:
            raise TransportFailure(f"Topic {self._topic} must allow both subscribe and publish")
        logger.info(f"Responder initialized with {len(self._registry)} methods:")
        for op in self._registry:
            logger.info(f"   {op.request_method} -> {op.response_method}")
        self._workers = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="responder-worker")
        try:
            self._subscriber.start()
        except Exception:
            self._shutdown_workers()
            raise

    def run_forever(self, heartbeat_interval: float = HEARTBEAT_INTERVAL_S) -> None:
        """Start (if needed) and block until the subscription closes."""
        if self._subscriber.state == SubscriberState.IDLE:
            self.start()
        while not self._subscriber.wait_closed(heartbeat_interval):
            logger.info("Still listening...")

    def stop(self) -> None:
        self._subscriber.stop()
        self._shutdown_workers()

    def _shutdown_workers(self) -> None:
        workers, self._workers = self._workers, None
        if workers is not None:
            # queued requests are dropped; in-flight calls finish on their own
            workers.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "Responder":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()

    def handle_event(self, event: ConsumerEvent) -> None:
        envelope = self._codec.decode(event)
        if envelope is None:
            logger.debug(f"Dropping malformed event {event.replay_id.hex()}")
            return
        if not envelope.is_request:
            logger.debug(f"Ignoring non-request method: {envelope.method}")
            return
        workers = self._workers
        if workers is None:
            logger.warning(f"Responder stopped, dropping {envelope.method} - Correlation: {envelope.correlation_id}")
            return
        workers.submit(self.process, envelope)

    def process(self, request: Envelope) -> None:
        """Dispatch one request envelope and publish every response it produces."""
        logger.info(f"Processing request {request.method} - Correlation: {request.correlation_id}")
        for response in self.dispatch(request):
            self._publish(response)

    def dispatch(self, request: Envelope) -> Iterator[Envelope]:
        """Response envelopes for one request envelope; never raises."""
        correlation_id = request.correlation_id
        credential = request.credential
        if not credential:
            if self._require_credential:
                logger.warning(f"Rejecting {request.method} without API key - Correlation: {correlation_id}")
                yield self._error(correlation_id, "UNAUTHENTICATED", CREDENTIAL_REQUIRED_MESSAGE)
                return
            credential = self._default_credential or ""
        logger.info(f"Using API key: {mask_credential(credential)}")

        operation = self._registry.lookup(request.method)
        if operation is None:
            known = self._registry.known_methods()
            logger.error(f"Unsupported method: {request.method} (Available: {', '.join(known)})")
            yield self._error(
                correlation_id,
                "UNSUPPORTED_METHOD",
                f"Unsupported method: {request.method}. Known methods: {', '.join(known)}",
                method=request.method,
                knownMethods=known,
            )
            return

        try:
            for message in self._invoke(operation, request.payload, credential):
                yield self._response(correlation_id, operation.response_method, message)
        except Exception as e:
            logger.error(f"Error processing {request.method} - Correlation: {correlation_id}", exc_info=True)
            yield self._error(correlation_id, "INTERNAL", f"Error: {e}")

    def _invoke(self, operation: Operation, payload: str, credential: str) -> Iterator[BaseModel]:
        request = operation.parse_request(payload)
        logger.debug(f"Request: {dump_message(request)}")
        result = operation.invoke(self._backend, request, credential)
        if operation.streaming:
            yield from result
        else:
            yield result

    def _response(self, correlation_id: str, method: str, message: BaseModel) -> Envelope:
        payload = dump_message(message)
        logger.debug(f"Response: {payload}")
        return Envelope(
            correlation_id=correlation_id,
            method=method,
            payload=payload,
            metadata=EventMetadata(created_by_id=self._codec.identity),
        )

    def _error(self, correlation_id: str, error_type: str, message: str, **extra: Any) -> Envelope:
        return Envelope(
            correlation_id=correlation_id,
            method=ERROR_METHOD,
            payload=error_payload(error_type, message, **extra),
            metadata=EventMetadata(created_by_id=self._codec.identity),
        )

    def _publish(self, envelope: Envelope) -> None:
        try:
            results = self._bus.publish(self._topic, [self._codec.encode(envelope)])
        except Exception:
            logger.error(f"Error publishing response - Correlation: {envelope.correlation_id}", exc_info=True)
            return
        for result in results:
            if not result.ok:
                logger.error(f"Publish error - Correlation: {envelope.correlation_id}: {result.error}")
            else:
                logger.info(f"Response sent {envelope.method} - Correlation: {envelope.correlation_id}")
