"""
ecom.v1 payment messages, in their protobuf JSON form (lowerCamelCase names).

Requests drop unknown fields; responses keep them so that anything the
payment service adds is passed through to the caller untouched.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from paybridge.errors import RpcError


class RequestMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ResponseMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


def dump_message(message: BaseModel) -> str:
    """Compact protobuf-style JSON: camelCase keys, unset fields omitted."""
    return message.model_dump_json(by_alias=True, exclude_none=True)


def dump_message_dict(message: BaseModel) -> dict[str, Any]:
    return message.model_dump(mode="json", by_alias=True, exclude_none=True)


class PaymentError(ResponseMessage):
    """Typed error variant carried inside a response."""
    type: str = "UNKNOWN"
    message: str = ""

    @classmethod
    def from_rpc(cls, error: RpcError) -> "PaymentError":
        return cls(type=error.status.upper(), message=f"Error: {error.message}")


# --- InitiatePayment / InitiatePaymentStream ---

class ExpirySettings(RequestMessage):
    show_timer: Optional[bool] = None
    expiring_seconds: Optional[int] = None


class PaymentInitiationRequest(RequestMessage):
    store_id: Optional[str] = None
    payment_reference: Optional[str] = None
    amount_minor_units: Optional[int] = None
    currency: Optional[str] = None
    order_id: Optional[str] = None
    order_metadata: Optional[str] = None
    return_url: Optional[str] = None
    payer_statement: Optional[str] = None
    payer_email_address: Optional[str] = None
    payer_ip_address: Optional[str] = None
    payer_locale: Optional[str] = None
    tokenize_payer: Optional[bool] = None
    expiry: Optional[ExpirySettings] = None


class InitiationResult(ResponseMessage):
    payment_id: Optional[str] = None
    payment_url: Optional[str] = None


class PaymentInitiationResponse(ResponseMessage):
    response: Optional[InitiationResult] = None
    error: Optional[PaymentError] = None


# --- PaymentDetails ---

class PaymentDetailsRequest(RequestMessage):
    store_id: Optional[str] = None
    payment_id: Optional[str] = None
    payment_reference: Optional[str] = None


class PaymentDetails(ResponseMessage):
    payment_id: Optional[str] = None
    payment_reference: Optional[str] = None
    order_id: Optional[str] = None
    order_metadata: Optional[str] = None
    status: Optional[str] = None  # PENDING | SUCCESS | FAILED | CANCELLED | EXPIRED
    payment_data_json: Optional[str] = None
    date_created: Optional[str] = None
    date_paid: Optional[str] = None


class PaymentDetailsResponse(ResponseMessage):
    response: Optional[PaymentDetails] = None
    error: Optional[PaymentError] = None


# --- GetPayments ---

class PageCursor(RequestMessage):
    page: Optional[int] = None
    page_size: Optional[int] = None


class GetPaymentsFilter(RequestMessage):
    order_id: Optional[str] = None
    created_before: Optional[str] = None


class GetPaymentsRequest(RequestMessage):
    store_id: Optional[str] = None
    page_cursor: Optional[PageCursor] = None
    filter: Optional[GetPaymentsFilter] = None


class PaymentsPage(ResponseMessage):
    payments: list[PaymentDetails] = []
    total: Optional[int] = None


class GetPaymentsResponse(ResponseMessage):
    response: Optional[PaymentsPage] = None
    error: Optional[PaymentError] = None


# --- Refund ---

class RefundRequest(RequestMessage):
    store_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[str] = None  # decimal string, e.g. "10.00"


class RefundResponse(ResponseMessage):
    status: Optional[str] = None  # PENDING | REQUESTED | FAILED
    failure_reason: Optional[str] = None
    payment_id: Optional[str] = None
    date_created: Optional[str] = None
    total_paid_amount: Optional[str] = None
    total_amount_refunded: Optional[str] = None
    remaining_amount: Optional[str] = None
    total_amount_requested: Optional[str] = None
    payment_transaction_id: Optional[str] = None
