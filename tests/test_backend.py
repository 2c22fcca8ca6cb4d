"""Payment service client over httpx.MockTransport."""

import json

import httpx
import pytest

from paybridge.errors import BackendTransportError, RpcError
from paybridge.models.payment import (
    GetPaymentsRequest,
    GetPaymentsResponse,
    PaymentDetailsResponse,
    PaymentInitiationRequest,
)
from paybridge.transport.http import (
    CREDENTIAL_HEADER,
    DEFAULT_SERVICE,
    FLAG_END_STREAM,
    BackendClient,
    iter_frames,
    pack_frame,
)


def make_client(handler) -> BackendClient:
    return BackendClient("payments.test", 443, transport=httpx.MockTransport(handler))


def _unframe(body: bytes) -> list:
    return [json.loads(data) for _, data in iter_frames(iter([body]))]


class TestUnary:

    def test_request_shape_and_credential_header(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json={"response": {"payments": [{"paymentId": "P1"}], "total": 1}})

        client = make_client(handler)
        result = client.invoke("GetPayments", GetPaymentsRequest(store_id="S1"), "K-secret", GetPaymentsResponse)

        assert result.response.payments[0].payment_id == "P1"
        request = seen[0]
        assert request.url.path == f"/{DEFAULT_SERVICE}/GetPayments"
        assert request.url.host == "payments.test"
        assert request.headers[CREDENTIAL_HEADER] == "K-secret"
        assert request.headers["Connect-Protocol-Version"] == "1"
        assert json.loads(request.content) == {"storeId": "S1"}

    def test_new_channel_per_call(self):
        keys = []

        def handler(request: httpx.Request):
            keys.append(request.headers[CREDENTIAL_HEADER])
            return httpx.Response(200, json={})

        client = make_client(handler)
        client.invoke("GetPayments", GetPaymentsRequest(), "K1", GetPaymentsResponse)
        client.invoke("GetPayments", GetPaymentsRequest(), "K2", GetPaymentsResponse)
        assert client.channels_opened == 2
        assert keys == ["K1", "K2"]

    def test_unknown_response_fields_kept(self):
        client = make_client(lambda request: httpx.Response(200, json={"response": {"total": 3}, "newField": 1}))
        result = client.invoke("GetPayments", GetPaymentsRequest(), "K", GetPaymentsResponse)
        assert result.model_dump(by_alias=True)["newField"] == 1

    def test_connect_error_status(self):
        client = make_client(lambda request: httpx.Response(
            403, json={"code": "permission_denied", "message": "bad key"}))
        with pytest.raises(RpcError) as exc:
            client.invoke("GetPayments", GetPaymentsRequest(), "K", GetPaymentsResponse)
        assert exc.value.status == "permission_denied"
        assert exc.value.message == "bad key"

    def test_non_connect_error_body(self):
        client = make_client(lambda request: httpx.Response(502, text="<html>bad gateway</html>"))
        with pytest.raises(BackendTransportError) as exc:
            client.invoke("GetPayments", GetPaymentsRequest(), "K", GetPaymentsResponse)
        assert exc.value.details["http_status"] == 502

    def test_connection_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(BackendTransportError):
            client.invoke("GetPayments", GetPaymentsRequest(), "K", GetPaymentsResponse)

    def test_unreadable_body(self):
        client = make_client(lambda request: httpx.Response(200, text="not json"))
        with pytest.raises(BackendTransportError):
            client.invoke("GetPayments", GetPaymentsRequest(), "K", GetPaymentsResponse)


class TestStream:

    def test_frames_until_end_of_stream(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            body = (
                pack_frame({"response": {"paymentId": "P1", "status": "PENDING"}})
                + pack_frame({"response": {"paymentId": "P1", "status": "SUCCESS"}})
                + pack_frame({}, flags=FLAG_END_STREAM)
            )
            return httpx.Response(200, content=body, headers={"Content-Type": "application/connect+json"})

        client = make_client(handler)
        messages = list(client.invoke_stream(
            "InitiatePaymentStream", PaymentInitiationRequest(store_id="S1"), "K", PaymentDetailsResponse))

        assert [m.response.status for m in messages] == ["PENDING", "SUCCESS"]
        assert seen[0].headers["Content-Type"] == "application/connect+json"
        assert _unframe(seen[0].content) == [{"storeId": "S1"}]

    def test_end_of_stream_error(self):
        body = (
            pack_frame({"response": {"status": "PENDING"}})
            + pack_frame({"error": {"code": "deadline_exceeded", "message": "too slow"}}, flags=FLAG_END_STREAM)
        )
        client = make_client(lambda request: httpx.Response(200, content=body))
        stream = client.invoke_stream("InitiatePaymentStream", PaymentInitiationRequest(), "K", PaymentDetailsResponse)
        assert next(stream).response.status == "PENDING"
        with pytest.raises(RpcError) as exc:
            next(stream)
        assert exc.value.status == "deadline_exceeded"

    def test_stream_error_status_before_body(self):
        client = make_client(lambda request: httpx.Response(401, json={"code": "unauthenticated", "message": "no"}))
        with pytest.raises(RpcError):
            list(client.invoke_stream("Refund", PaymentInitiationRequest(), "K", PaymentDetailsResponse))


class TestProtocolMismatch:

    def test_grpc_only_unary_answer(self):
        client = make_client(lambda request: httpx.Response(
            200, headers={"content-type": "application/grpc", "grpc-status": "12"}))
        with pytest.raises(BackendTransportError) as exc:
            client.invoke("GetPayments", GetPaymentsRequest(), "K", GetPaymentsResponse)
        assert "Connect protocol" in exc.value.message
        assert exc.value.details["protocol"] == "connect"

    def test_unsupported_media_type_on_stream(self):
        client = make_client(lambda request: httpx.Response(415, text="unsupported"))
        with pytest.raises(BackendTransportError) as exc:
            list(client.invoke_stream("InitiatePaymentStream", PaymentInitiationRequest(), "K", PaymentDetailsResponse))
        assert exc.value.details == {"operation": "InitiatePaymentStream", "http_status": 415, "protocol": "connect"}

    def test_grpc_web_answer_on_stream(self):
        client = make_client(lambda request: httpx.Response(
            200, headers={"content-type": "application/grpc-web+proto"}, content=b"\x00"))
        with pytest.raises(BackendTransportError):
            list(client.invoke_stream("Refund", PaymentInitiationRequest(), "K", PaymentDetailsResponse))


class TestFrames:

    def test_frame_split_across_chunks(self):
        data = pack_frame({"a": 1}) + pack_frame({"b": 2}, flags=FLAG_END_STREAM)
        chunks = [data[:3], data[3:9], data[9:]]
        frames = list(iter_frames(iter(chunks)))
        assert frames[0] == (0, b'{"a":1}')
        assert frames[1][0] == FLAG_END_STREAM

    def test_truncated_frame(self):
        data = pack_frame({"a": 1})[:-2]
        with pytest.raises(BackendTransportError):
            list(iter_frames(iter([data])))
