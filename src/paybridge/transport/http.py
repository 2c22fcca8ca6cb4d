"""
Payment service client.

One ``httpx.Client`` per call: the caller's API key rides in the
``X-API-Key`` header of a channel nobody else uses, and the channel is closed
before the call returns or raises. Calls use the Connect protocol with JSON
codec (unary and server-streaming), so the host must serve Connect (a Connect
server or a gateway in front of the gRPC service). A gRPC-only answer is
reported as a protocol mismatch. No pooling, no retry.
"""

import json
import logging
import struct
from typing import Any, Iterator, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from paybridge.errors import BackendTransportError, RpcError
from paybridge.models.envelope import mask_credential
from paybridge.models.payment import dump_message_dict

logger = logging.getLogger(__name__)

DEFAULT_SERVICE = "com.kodypay.grpc.ecom.v1.KodyEcomPaymentsService"
CREDENTIAL_HEADER = "X-API-Key"
USER_AGENT = "paybridge/0.1.0"

FLAG_END_STREAM = 0x02
GRPC_CONTENT_TYPE = "application/grpc"
_FRAME_HEADER = struct.Struct(">BI")

M = TypeVar("M", bound=BaseModel)


def pack_frame(message: dict[str, Any], flags: int = 0) -> bytes:
    data = json.dumps(message, separators=(",", ":")).encode("utf-8")
    return _FRAME_HEADER.pack(flags, len(data)) + data


def iter_frames(chunks: Iterator[bytes]) -> Iterator[tuple[int, bytes]]:
    """Split a Connect streaming body into (flags, data) frames."""
    buffer = b""
    for chunk in chunks:
        buffer += chunk
        while len(buffer) >= _FRAME_HEADER.size:
            flags, length = _FRAME_HEADER.unpack_from(buffer)
            end = _FRAME_HEADER.size + length
            if len(buffer) < end:
                break
            yield flags, buffer[_FRAME_HEADER.size:end]
            buffer = buffer[end:]
    if buffer:
        raise BackendTransportError(f"Truncated stream frame ({len(buffer)} trailing bytes)")


class BackendClient:
    def __init__(
        self,
        hostname: str,
        port: int = 443,
        *,
        use_tls: bool = True,
        service: str = DEFAULT_SERVICE,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        scheme = "https" if use_tls else "http"
        self._base_url = f"{scheme}://{hostname}:{port}"
        self._service = service
        self._timeout = timeout
        self._transport = transport
        self.channels_opened = 0

    @property
    def base_url(self) -> str:
        return self._base_url

    def _open_channel(self, credential: str) -> httpx.Client:
        self.channels_opened += 1
        return httpx.Client(
            base_url=self._base_url,
            headers={
                CREDENTIAL_HEADER: credential,
                "Connect-Protocol-Version": "1",
                "User-Agent": USER_AGENT,
            },
            timeout=self._timeout,
            transport=self._transport,
        )

    def _path(self, operation: str) -> str:
        return f"/{self._service}/{operation}"

    def invoke(self, operation: str, request: BaseModel, credential: str, response_type: type[M]) -> M:
        """Unary call. Raises RpcError for an error status, BackendTransportError for channel failures."""
        logger.info(f"Calling {operation} (key {mask_credential(credential)})")
        with self._open_channel(credential) as channel:
            try:
                resp = channel.post(
                    self._path(operation),
                    json=dump_message_dict(request),
                    headers={"Content-Type": "application/json"},
                )
            except httpx.HTTPError as e:
                raise BackendTransportError(f"{operation} failed: {e}") from e
            self._check_protocol(operation, resp)
            if resp.status_code != 200:
                raise self._error_from_response(operation, resp.status_code, resp.content)
            try:
                return response_type.model_validate(resp.json())
            except (ValueError, ValidationError) as e:
                raise BackendTransportError(f"{operation} returned an unreadable response: {e}") from e

    def invoke_stream(
        self, operation: str, request: BaseModel, credential: str, response_type: type[M],
    ) -> Iterator[M]:
        """Server-streaming call. The channel is closed when the iterator ends or is closed."""
        logger.info(f"Opening stream {operation} (key {mask_credential(credential)})")
        with self._open_channel(credential) as channel:
            try:
                with channel.stream(
                    "POST",
                    self._path(operation),
                    content=pack_frame(dump_message_dict(request)),
                    headers={"Content-Type": "application/connect+json"},
                ) as resp:
                    self._check_protocol(operation, resp)
                    if resp.status_code != 200:
                        raise self._error_from_response(operation, resp.status_code, resp.read())
                    for flags, data in iter_frames(resp.iter_bytes()):
                        if flags & FLAG_END_STREAM:
                            self._check_end_stream(operation, data)
                            return
                        try:
                            yield response_type.model_validate_json(data)
                        except ValidationError as e:
                            raise BackendTransportError(f"{operation} sent an unreadable message: {e}") from e
            except httpx.HTTPError as e:
                raise BackendTransportError(f"{operation} failed: {e}") from e

    @staticmethod
    def _check_protocol(operation: str, resp: httpx.Response) -> None:
        content_type = resp.headers.get("content-type", "")
        if resp.status_code == 415 or content_type.startswith(GRPC_CONTENT_TYPE):
            raise BackendTransportError(
                f"{operation}: payment service does not accept the Connect protocol "
                f"(HTTP {resp.status_code}, content-type {content_type or '<none>'})",
                {"operation": operation, "http_status": resp.status_code, "protocol": "connect"},
            )

    @staticmethod
    def _check_end_stream(operation: str, data: bytes) -> None:
        try:
            trailer = json.loads(data or b"{}")
        except ValueError as e:
            raise BackendTransportError(f"{operation} sent an unreadable end-of-stream frame") from e
        error = trailer.get("error") if isinstance(trailer, dict) else None
        if error:
            raise RpcError(error.get("code", "unknown"), error.get("message", ""), {"operation": operation})

    @staticmethod
    def _error_from_response(operation: str, status_code: int, body: bytes) -> Exception:
        try:
            error = json.loads(body)
        except ValueError:
            error = None
        if isinstance(error, dict) and "code" in error:
            return RpcError(error["code"], error.get("message", ""), {"operation": operation, "http_status": status_code})
        return BackendTransportError(
            f"{operation}: HTTP {status_code}: {body[:200].decode('utf-8', 'replace')}",
            {"operation": operation, "http_status": status_code},
        )
