"""
paybridge — payment correlation proxy.

Carries payment requests from a publish/subscribe event bus to the payment
RPC service and correlates the responses back to the waiting caller.
"""

from paybridge.config import BridgeConfig, load_config
from paybridge.correlator import Correlator
from paybridge.errors import (
    BackendError,
    BridgeError,
    ConfigError,
    CorrelationTimeout,
    StreamStartTimeout,
    TransportFailure,
)
from paybridge.models.envelope import Envelope
from paybridge.registry import MethodRegistry, Operation, default_registry
from paybridge.responder import Responder
from paybridge.transport.envelope import EnvelopeCodec
from paybridge.transport.http import BackendClient
from paybridge.transport.memory import InMemoryEventBus

__version__ = "0.1.0"
__all__ = [
    "BridgeConfig",
    "load_config",
    "Correlator",
    "Responder",
    "Envelope",
    "EnvelopeCodec",
    "MethodRegistry",
    "Operation",
    "default_registry",
    "BackendClient",
    "InMemoryEventBus",
    "BridgeError",
    "BackendError",
    "ConfigError",
    "CorrelationTimeout",
    "StreamStartTimeout",
    "TransportFailure",
]
