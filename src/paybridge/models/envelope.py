"""
Bus envelope: the record exchanged on the payment topic.
"""

import time
from typing import Optional

from pydantic import BaseModel, Field

REQUEST_PREFIX = "request."
RESPONSE_PREFIX = "response."
ERROR_METHOD = "response.error"


def is_request_method(method: Optional[str]) -> bool:
    return bool(method) and method.startswith(REQUEST_PREFIX)  # type: ignore[union-attr]


def is_response_method(method: Optional[str]) -> bool:
    """Response-shaped: ``response.<ns>.<version>.<Op>`` or the error sentinel."""
    return bool(method) and method.startswith(RESPONSE_PREFIX)  # type: ignore[union-attr]


def response_method_for(request_method: str) -> str:
    return RESPONSE_PREFIX + request_method[len(REQUEST_PREFIX):]


MASK_PREFIX_LEN = 8


def mask_credential(credential: Optional[str]) -> str:
    if not credential:
        return "<none>"
    # at most half the key, never more than 8 characters
    shown = min(MASK_PREFIX_LEN, len(credential) // 2)
    return f"{credential[:shown]}***"


class EventMetadata(BaseModel):
    created_date: int = Field(default_factory=lambda: int(time.time() * 1000))  # epoch millis
    created_by_id: str = ""


class Envelope(BaseModel):
    correlation_id: str
    method: str
    payload: str = ""
    credential: Optional[str] = Field(default=None, repr=False)
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @property
    def is_request(self) -> bool:
        return is_request_method(self.method)

    @property
    def is_response(self) -> bool:
        return is_response_method(self.method)

    @property
    def is_error(self) -> bool:
        return self.method == ERROR_METHOD
