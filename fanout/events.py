from boto3.dynamodb.types import (
    TypeDeserializer,
    TypeSerializer,
)
from dataclasses import (
    dataclass,
    field,
)
from datetime import (
    datetime,
    timezone,
)
from enum import (
    Enum,
)
from json import (
    dumps,
    loads,
)
from types import (
    MappingProxyType,
)
from typing import (
    Any,
    Mapping,
    Optional,
)

NEW_IMAGE = "NewImage"
OLD_IMAGE = "OldImage"


class EventType(Enum):
    INSERT = "INSERT"
    MODIFY = "MODIFY"
    REMOVE = "REMOVE"


@dataclass(frozen=True)
class ChangeEvent:
    """
    attributes is the item after the change and old_attributes the item
    before it, the stream's NewImage and OldImage. A REMOVE has no
    attributes.
    """

    partition_key: str
    sequence_number: int
    event_type: EventType
    attributes: Mapping[str, Any]
    approximate_arrival_time: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc))
    old_attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Callers keep their dicts, the event gets read-only views of copies
        object.__setattr__(
            self, "attributes", MappingProxyType(dict(self.attributes)))
        object.__setattr__(
            self, "old_attributes", MappingProxyType(dict(self.old_attributes)))

    @property
    def key(self) -> tuple:
        return (self.partition_key, self.sequence_number)

    def image(self, name: str) -> Mapping[str, Any]:
        if name == OLD_IMAGE:
            return self.old_attributes

        return self.attributes


@dataclass(frozen=True)
class OutboundMessage:
    body: Mapping[str, Any]
    trace_parent: Optional[str] = None
    parent_span: Optional[str] = None
    source_key: Optional[tuple] = None

    def to_json(self) -> str:
        payload = dict(self.body)
        payload["trace_parent"] = self.trace_parent
        payload["parent_span"] = self.parent_span
        if self.source_key is not None:
            payload["source_partition_key"], payload["source_sequence_number"] = self.source_key

        return dumps(payload, default=str, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> "OutboundMessage":
        body = loads(text)
        source_key = None
        if "source_partition_key" in body:
            source_key = (
                body.pop("source_partition_key"),
                body.pop("source_sequence_number", None),
            )

        return cls(
            trace_parent=body.pop("trace_parent", None),
            parent_span=body.pop("parent_span", None),
            body=body,
            source_key=source_key,
        )


@dataclass
class QueuedMessage:
    message_id: str
    message: OutboundMessage
    receive_count: int = 0


@dataclass(frozen=True)
class DeliveryBatch:
    queue: str
    messages: tuple = ()

    def __len__(self) -> int:
        return len(self.messages)

    def __iter__(self):
        return iter(self.messages)

    @property
    def message_ids(self) -> list:
        return [queued.message_id for queued in self.messages]


def dynamo_obj_to_python_obj(dynamo_obj: dict) -> dict:
    deserializer = TypeDeserializer()

    return {
        k: deserializer.deserialize(v)
        for k, v in dynamo_obj.items()
    }


def python_obj_to_dynamo_obj(python_obj: dict) -> dict:
    serializer = TypeSerializer()

    return {
        k: serializer.serialize(v)
        for k, v in python_obj.items()
    }


def from_stream_record(record: dict, partition_key_name: str = "PK") -> ChangeEvent:
    """
    Build a ChangeEvent from a DynamoDB stream record, either the
    lambda event source shape or the dynamodbstreams get_records shape:

    {
        "eventName": "INSERT",
        "dynamodb": {
            "ApproximateCreationDateTime": 1689605602,
            "Keys": {"PK": {"S": "tok123"}},
            "NewImage": {"PK": {"S": "tok123"}, "Type": {"S": "SubscriberToken"}},
            "SequenceNumber": "946475000000000000011227028182"
        }
    }
    """
    stream_record = record["dynamodb"]
    keys = dynamo_obj_to_python_obj(stream_record.get("Keys", {}))
    arrival = stream_record.get("ApproximateCreationDateTime")

    if isinstance(arrival, datetime):
        arrival_time = arrival
    elif arrival is not None:
        arrival_time = datetime.fromtimestamp(float(arrival), tz=timezone.utc)
    else:
        arrival_time = datetime.now(timezone.utc)

    return ChangeEvent(
        partition_key=str(keys.get(partition_key_name, "")),
        sequence_number=int(stream_record["SequenceNumber"]),
        event_type=EventType(record["eventName"]),
        attributes=dynamo_obj_to_python_obj(stream_record.get(NEW_IMAGE, {})),
        approximate_arrival_time=arrival_time,
        old_attributes=dynamo_obj_to_python_obj(stream_record.get(OLD_IMAGE, {})),
    )
