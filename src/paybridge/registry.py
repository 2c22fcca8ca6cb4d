"""
Method registry: the closed table of operations the responder can dispatch.

Each entry ties a request method name to its request/response shapes, the
response method name and the function that calls the payment service.
Adding an operation means adding one entry to ``default_registry()``.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Optional

from pydantic import BaseModel

from paybridge.errors import RpcError
from paybridge.models.envelope import REQUEST_PREFIX, response_method_for
from paybridge.models.payment import (
    GetPaymentsRequest,
    GetPaymentsResponse,
    PaymentDetailsRequest,
    PaymentDetailsResponse,
    PaymentError,
    PaymentInitiationRequest,
    PaymentInitiationResponse,
    RefundRequest,
    RefundResponse,
)
from paybridge.transport.http import BackendClient

logger = logging.getLogger(__name__)

# (backend, parsed request, credential) -> response, or an iterator of responses for streaming entries
Invoke = Callable[[Any, BaseModel, str], Any]


@dataclass(frozen=True)
class Operation:
    request_method: str
    response_method: str
    request_type: type[BaseModel]
    response_type: type[BaseModel]
    invoke: Invoke
    streaming: bool = False

    def parse_request(self, payload: str) -> BaseModel:
        """Payload JSON -> request shape. Unknown fields are ignored; an empty payload is an empty request."""
        if not payload or not payload.strip():
            return self.request_type()
        return self.request_type.model_validate_json(payload)


class MethodRegistry:
    def __init__(self, operations: Iterable[Operation] = ()):
        self._operations: dict[str, Operation] = {}
        for op in operations:
            self.register(op)

    def register(self, operation: Operation) -> None:
        if not operation.request_method.startswith(REQUEST_PREFIX):
            raise ValueError(f"Not a request method: {operation.request_method}")
        if operation.request_method in self._operations:
            raise ValueError(f"Duplicate request method: {operation.request_method}")
        self._operations[operation.request_method] = operation

    def lookup(self, request_method: str) -> Optional[Operation]:
        return self._operations.get(request_method)

    def known_methods(self) -> list[str]:
        return list(self._operations)

    def is_streaming(self, request_method: str) -> bool:
        op = self._operations.get(request_method)
        return op is not None and op.streaming

    def __iter__(self) -> Iterator[Operation]:
        return iter(list(self._operations.values()))

    def __len__(self) -> int:
        return len(self._operations)

    def __contains__(self, request_method: object) -> bool:
        return request_method in self._operations


# --- ecom.v1 backend calls ---

def _unary(rpc: str, response_type: type[BaseModel]) -> Invoke:
    """Unary call whose RPC error status becomes the response's typed error."""
    def call(backend: BackendClient, request: BaseModel, credential: str) -> BaseModel:
        try:
            return backend.invoke(rpc, request, credential, response_type)
        except RpcError as e:
            logger.warning(f"{rpc} returned {e.status}: {e.message}")
            return response_type(error=PaymentError.from_rpc(e))
    return call


def _initiate_payment_stream(backend: BackendClient, request: BaseModel, credential: str) -> Iterator[BaseModel]:
    try:
        yield from backend.invoke_stream("InitiatePaymentStream", request, credential, PaymentDetailsResponse)
    except RpcError as e:
        logger.warning(f"InitiatePaymentStream returned {e.status}: {e.message}")
        yield PaymentDetailsResponse(error=PaymentError.from_rpc(e))


def _refund(backend: BackendClient, request: BaseModel, credential: str) -> RefundResponse:
    # Refund is server-streaming; the first message carries the outcome.
    try:
        with closing(backend.invoke_stream("Refund", request, credential, RefundResponse)) as stream:
            first = next(stream, None)
    except RpcError as e:
        logger.warning(f"Refund returned {e.status}: {e.message}")
        return RefundResponse(status="FAILED", failure_reason=f"Error: {e.message}")
    if first is None:
        return RefundResponse(status="FAILED", failure_reason="No response received from payment service")
    return first


def _entry(
    request_method: str,
    request_type: type[BaseModel],
    response_type: type[BaseModel],
    invoke: Invoke,
    streaming: bool = False,
) -> Operation:
    return Operation(
        request_method=request_method,
        response_method=response_method_for(request_method),
        request_type=request_type,
        response_type=response_type,
        invoke=invoke,
        streaming=streaming,
    )


def default_registry() -> MethodRegistry:
    return MethodRegistry([
        _entry("request.ecom.v1.InitiatePayment", PaymentInitiationRequest, PaymentInitiationResponse,
               _unary("InitiatePayment", PaymentInitiationResponse)),
        _entry("request.ecom.v1.InitiatePaymentStream", PaymentInitiationRequest, PaymentDetailsResponse,
               _initiate_payment_stream, streaming=True),
        _entry("request.ecom.v1.PaymentDetails", PaymentDetailsRequest, PaymentDetailsResponse,
               _unary("PaymentDetails", PaymentDetailsResponse)),
        _entry("request.ecom.v1.GetPayments", GetPaymentsRequest, GetPaymentsResponse,
               _unary("GetPayments", GetPaymentsResponse)),
        _entry("request.ecom.v1.Refund", RefundRequest, RefundResponse, _refund),
    ])
