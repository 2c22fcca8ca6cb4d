"""
paybridge error types.

Everything raised to a caller carries a stable ``code`` next to the message.
Per-event failures inside the responder never surface here; they are turned
into error response envelopes instead.
"""

from typing import Any, Optional


class BridgeError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class ConfigError(BridgeError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("config_error", message, details)


class TransportFailure(BridgeError):
    """The bus did not acknowledge a publish, or refused the operation."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("transport_failure", message, details)


class SubscriptionClosed(BridgeError):
    def __init__(self, message: str = "Subscription closed"):
        super().__init__("subscription_closed", message)


class CorrelationTimeout(BridgeError):
    def __init__(self, correlation_id: str, timeout: float, code: str = "correlation_timeout",
                 message: Optional[str] = None):
        super().__init__(
            code,
            message or f"Timeout waiting for response after {timeout:g} seconds",
            {"correlation_id": correlation_id, "timeout": timeout},
        )
        self.correlation_id = correlation_id
        self.timeout = timeout


class StreamStartTimeout(CorrelationTimeout):
    """No first response for a streaming call: the request most likely never reached the backend."""

    def __init__(self, correlation_id: str, timeout: float):
        super().__init__(
            correlation_id,
            timeout,
            code="stream_start_timeout",
            message=f"No initial response received after {timeout:g} seconds",
        )


class BackendError(BridgeError):
    pass


class BackendTransportError(BackendError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("backend_transport_error", message, details)


class RpcError(BackendError):
    """An error status returned by the payment service itself (invalid_argument, permission_denied, ...)."""

    def __init__(self, status: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("rpc_error", message, details)
        self.status = status
