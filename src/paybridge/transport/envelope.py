"""
Envelope codec: Envelope <-> Avro binary record of the payment topic schema.

Only fields the topic schema declares are written; everything else takes the
schema default. Undecodable bytes and records without a correlation id or
method come back as None.
"""

import io
import json
import logging
import uuid
from typing import Any, Callable, Optional

import avro.io
import avro.schema

from paybridge.models.envelope import Envelope, EventMetadata
from paybridge.transport.bus import ConsumerEvent, EventBus, ProducerEvent, SchemaInfo

logger = logging.getLogger(__name__)

FIELD_CREATED_DATE = "CreatedDate"
FIELD_CREATED_BY = "CreatedById"
FIELD_CORRELATION_ID = "correlation_id__c"
FIELD_METHOD = "method__c"
FIELD_PAYLOAD = "payload__c"
FIELD_CREDENTIAL = "api_key__c"

DEFAULT_SCHEMA_JSON = json.dumps({
    "type": "record",
    "name": "KodyPayment__e",
    "namespace": "com.sforce.eventbus",
    "fields": [
        {"name": FIELD_CREATED_DATE, "type": "long", "doc": "CreatedDate:DateTime"},
        {"name": FIELD_CREATED_BY, "type": "string", "doc": "CreatedBy:EntityId"},
        {"name": FIELD_CORRELATION_ID, "type": ["null", "string"], "default": None},
        {"name": FIELD_METHOD, "type": ["null", "string"], "default": None},
        {"name": FIELD_PAYLOAD, "type": ["null", "string"], "default": None},
        {"name": FIELD_CREDENTIAL, "type": ["null", "string"], "default": None},
    ],
}, separators=(",", ":"))


class EnvelopeCodec:
    def __init__(
        self,
        schema_id: str,
        schema_json: str,
        identity: str = "",
        schema_lookup: Optional[Callable[[str], SchemaInfo]] = None,
    ):
        self.schema_id = schema_id
        self.identity = identity
        self._schema = avro.schema.parse(schema_json)
        self._field_names = {f.name for f in self._schema.fields}
        self._schemas: dict[str, Any] = {schema_id: self._schema}
        self._schema_lookup = schema_lookup

    @classmethod
    def from_bus(cls, bus: EventBus, topic: str, identity: str = "") -> "EnvelopeCodec":
        """Fetch the topic schema once at startup."""
        info = bus.get_topic(topic)
        schema = bus.get_schema(info.schema_id)
        return cls(schema.schema_id, schema.schema_json, identity=identity, schema_lookup=bus.get_schema)

    def encode(self, envelope: Envelope) -> ProducerEvent:
        record: dict[str, Any] = {}
        for field in self._schema.fields:
            if field.has_default:
                record[field.name] = field.default
        self._set_if_exists(record, FIELD_CREATED_DATE, envelope.metadata.created_date)
        self._set_if_exists(record, FIELD_CREATED_BY, envelope.metadata.created_by_id or self.identity)
        self._set_if_exists(record, FIELD_CORRELATION_ID, envelope.correlation_id)
        self._set_if_exists(record, FIELD_METHOD, envelope.method)
        self._set_if_exists(record, FIELD_PAYLOAD, envelope.payload)
        if envelope.credential:
            self._set_if_exists(record, FIELD_CREDENTIAL, envelope.credential)

        buffer = io.BytesIO()
        avro.io.DatumWriter(self._schema).write(record, avro.io.BinaryEncoder(buffer))
        return ProducerEvent(id=str(uuid.uuid4()), schema_id=self.schema_id, payload=buffer.getvalue())

    def decode(self, event: ConsumerEvent) -> Optional[Envelope]:
        """Decode a bus event. Returns None if it is not a well-formed envelope."""
        schema = self._writer_schema(event.schema_id)
        if schema is None:
            return None
        try:
            reader = avro.io.DatumReader(schema)
            record = reader.read(avro.io.BinaryDecoder(io.BytesIO(event.payload)))
        except Exception as e:
            logger.debug(f"Dropping undecodable event {event.replay_id.hex()}: {e}")
            return None
        if not isinstance(record, dict):
            return None

        correlation_id = record.get(FIELD_CORRELATION_ID)
        method = record.get(FIELD_METHOD)
        if not correlation_id or not method:
            return None
        return Envelope(
            correlation_id=correlation_id,
            method=method,
            payload=record.get(FIELD_PAYLOAD) or "",
            credential=record.get(FIELD_CREDENTIAL) or None,
            metadata=EventMetadata(
                created_date=record.get(FIELD_CREATED_DATE) or 0,
                created_by_id=record.get(FIELD_CREATED_BY) or "",
            ),
        )

    def _set_if_exists(self, record: dict[str, Any], name: str, value: Any) -> None:
        if name in self._field_names:
            record[name] = value

    def _writer_schema(self, schema_id: str) -> Optional[Any]:
        schema = self._schemas.get(schema_id)
        if schema is not None or self._schema_lookup is None:
            return schema
        try:
            info = self._schema_lookup(schema_id)
            schema = avro.schema.parse(info.schema_json)
        except Exception as e:
            logger.warning(f"Cannot resolve schema {schema_id}: {e}")
            return None
        self._schemas[schema_id] = schema
        return schema
