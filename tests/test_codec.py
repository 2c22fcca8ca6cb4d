"""Envelope <-> Avro record."""

import io
import json

import avro.io
import avro.schema

from paybridge.models.envelope import Envelope, EventMetadata
from paybridge.transport.bus import ConsumerEvent, DEFAULT_TOPIC
from paybridge.transport.envelope import DEFAULT_SCHEMA_JSON, EnvelopeCodec
from paybridge.transport.memory import InMemoryEventBus, schema_id_for

REPLAY = b"\x00" * 7 + b"\x01"


def _consumed(codec, envelope):
    produced = codec.encode(envelope)
    return ConsumerEvent(replay_id=REPLAY, schema_id=produced.schema_id, payload=produced.payload)


def _raw_event(schema_json, record):
    schema = avro.schema.parse(schema_json)
    buffer = io.BytesIO()
    avro.io.DatumWriter(schema).write(record, avro.io.BinaryEncoder(buffer))
    return ConsumerEvent(replay_id=REPLAY, schema_id=schema_id_for(schema_json), payload=buffer.getvalue())


class TestEncodeDecode:

    def test_request_fields_survive(self, codec):
        env = Envelope(
            correlation_id="c-1",
            method="request.ecom.v1.GetPayments",
            payload='{"storeId":"S1"}',
            credential="K-123456789",
            metadata=EventMetadata(created_date=1700000000000, created_by_id="005X"),
        )
        decoded = codec.decode(_consumed(codec, env))
        assert decoded.correlation_id == "c-1"
        assert decoded.method == "request.ecom.v1.GetPayments"
        assert json.loads(decoded.payload) == {"storeId": "S1"}
        assert decoded.credential == "K-123456789"
        assert decoded.metadata.created_date == 1700000000000
        assert decoded.metadata.created_by_id == "005X"

    def test_missing_credential_stays_absent(self, codec):
        env = Envelope(correlation_id="c-2", method="response.ecom.v1.Refund", payload="{}")
        decoded = codec.decode(_consumed(codec, env))
        assert decoded.credential is None

    def test_identity_fills_created_by(self, codec):
        env = Envelope(correlation_id="c-3", method="request.ecom.v1.Refund")
        decoded = codec.decode(_consumed(codec, env))
        assert decoded.metadata.created_by_id == codec.identity
        assert decoded.payload == ""

    def test_producer_event_ids_are_unique(self, codec):
        env = Envelope(correlation_id="c-4", method="request.ecom.v1.Refund")
        assert codec.encode(env).id != codec.encode(env).id


class TestMalformed:

    def test_garbage_bytes(self, codec):
        event = ConsumerEvent(replay_id=REPLAY, schema_id=codec.schema_id, payload=b"\xff\xfe\x00garbage")
        assert codec.decode(event) is None

    def test_record_without_correlation_id(self, codec):
        event = _raw_event(DEFAULT_SCHEMA_JSON, {
            "CreatedDate": 1, "CreatedById": "005X",
            "correlation_id__c": None, "method__c": "request.ecom.v1.Refund",
            "payload__c": "{}", "api_key__c": None,
        })
        assert codec.decode(event) is None

    def test_record_without_method(self, codec):
        event = _raw_event(DEFAULT_SCHEMA_JSON, {
            "CreatedDate": 1, "CreatedById": "005X",
            "correlation_id__c": "c-5", "method__c": None,
            "payload__c": "{}", "api_key__c": None,
        })
        assert codec.decode(event) is None

    def test_unknown_schema_without_lookup(self):
        codec = EnvelopeCodec(schema_id_for(DEFAULT_SCHEMA_JSON), DEFAULT_SCHEMA_JSON)
        event = ConsumerEvent(replay_id=REPLAY, schema_id="nope", payload=b"")
        assert codec.decode(event) is None


class TestSchemaVariants:

    def test_schema_without_credential_field(self):
        schema_json = json.dumps({
            "type": "record", "name": "Slim__e", "namespace": "com.sforce.eventbus",
            "fields": [
                {"name": "CreatedDate", "type": "long"},
                {"name": "CreatedById", "type": "string"},
                {"name": "correlation_id__c", "type": ["null", "string"], "default": None},
                {"name": "method__c", "type": ["null", "string"], "default": None},
                {"name": "payload__c", "type": ["null", "string"], "default": None},
                {"name": "Extra__c", "type": ["null", "string"], "default": None},
            ],
        })
        bus = InMemoryEventBus(schema_json=schema_json)
        codec = EnvelopeCodec.from_bus(bus, DEFAULT_TOPIC)
        env = Envelope(correlation_id="c-6", method="request.ecom.v1.Refund", credential="K")
        decoded = codec.decode(_consumed(codec, env))
        assert decoded.correlation_id == "c-6"
        assert decoded.credential is None

    def test_writer_schema_resolved_through_bus(self, bus, codec):
        other_json = DEFAULT_SCHEMA_JSON.replace("KodyPayment__e", "KodyPaymentV2__e")
        bus.create_topic("/event/Other__e", other_json)
        event = _raw_event(other_json, {
            "CreatedDate": 5, "CreatedById": "005Y",
            "correlation_id__c": "c-7", "method__c": "response.error",
            "payload__c": None, "api_key__c": None,
        })
        decoded = codec.decode(event)
        assert decoded.correlation_id == "c-7"
        assert decoded.is_error
        assert decoded.payload == ""
