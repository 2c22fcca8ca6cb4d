"""Shared fixtures: in-memory bus, codec and a scripted payment backend."""

import time
from typing import Any

import pytest

from paybridge.correlator import Correlator
from paybridge.responder import Responder
from paybridge.registry import default_registry
from paybridge.transport.bus import DEFAULT_TOPIC
from paybridge.transport.envelope import EnvelopeCodec
from paybridge.transport.memory import InMemoryEventBus

USER_ID = "005TESTUSER"


class FakeBackend:
    """Stands in for BackendClient. ``unary[op]`` / ``streams[op]`` script the answers.

    A unary entry may be a model, an exception, or a callable taking the request.
    A stream entry is a list of models, exceptions (raised in place) and floats
    (seconds to sleep before the next item).
    """

    def __init__(self):
        self.unary: dict[str, Any] = {}
        self.streams: dict[str, list[Any]] = {}
        self.calls: list[tuple[str, Any, str]] = []

    def invoke(self, operation, request, credential, response_type):
        self.calls.append((operation, request, credential))
        result = self.unary[operation]
        if isinstance(result, Exception):
            raise result
        if callable(result) and not isinstance(result, type):
            return result(request)
        return result

    def invoke_stream(self, operation, request, credential, response_type):
        self.calls.append((operation, request, credential))
        return self._stream(self.streams.get(operation, []))

    @staticmethod
    def _stream(items):
        for item in items:
            if isinstance(item, Exception):
                raise item
            if isinstance(item, float):
                time.sleep(item)
                continue
            yield item


@pytest.fixture
def bus():
    b = InMemoryEventBus()
    yield b
    b.close()


@pytest.fixture
def codec(bus):
    return EnvelopeCodec.from_bus(bus, DEFAULT_TOPIC, identity=USER_ID)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def responder(bus, codec, backend):
    r = Responder(bus, codec, default_registry(), backend, keepalive_interval=0.2)
    r.start()
    yield r
    r.stop()


@pytest.fixture
def correlator(bus, codec):
    c = Correlator(bus, codec, keepalive_interval=0.2, initial_response_timeout=2.0)
    c.start()
    yield c
    c.close()
