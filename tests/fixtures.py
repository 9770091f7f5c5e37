from awslambdaric.lambda_context import (
    LambdaContext,
)
from json import (
    dumps,
)
from pytest import (
    fixture,
)
from time import (
    time,
)

from fanout.events import (
    ChangeEvent,
    EventType,
    python_obj_to_dynamo_obj,
)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@fixture
def context() -> LambdaContext:
    context = LambdaContext(
        "6f2ad8e4-1b8d-4d5e-9a43-1f1c3c6f2b7a",
        None,
        None,
        int(time() * 1000) + 60000,
        "arn:aws:lambda:us-east-1:012345678901:function:newsletter",
    )

    yield context


@fixture
def clock() -> FakeClock:
    yield FakeClock()


def change_event(partition_key: str, sequence_number: int, **attributes) -> ChangeEvent:
    return ChangeEvent(
        partition_key=partition_key,
        sequence_number=sequence_number,
        event_type=EventType.INSERT,
        attributes={"PK": partition_key, **attributes},
    )


def stream_record(
    item: dict,
    sequence_number: str,
    event_name: str = "INSERT",
    old_item: dict = None,
) -> dict:
    change = {
        "ApproximateCreationDateTime": 1689605602,
        "Keys": python_obj_to_dynamo_obj({"PK": item["PK"]}),
        "SequenceNumber": sequence_number,
        "SizeBytes": 106,
        "StreamViewType": "NEW_AND_OLD_IMAGES",
    }
    if event_name != "REMOVE":
        change["NewImage"] = python_obj_to_dynamo_obj(item)
    if event_name == "REMOVE" or old_item is not None:
        change["OldImage"] = python_obj_to_dynamo_obj(old_item or item)

    return {
        "awsRegion": "us-east-1",
        "dynamodb": change,
        "eventID": f"event-{sequence_number}",
        "eventName": event_name,
        "eventSource": "aws:dynamodb",
        "eventVersion": "1.1",
    }


def sqs_record(message_id: str, body: dict) -> dict:
    return {
        "attributes": {
            "ApproximateFirstReceiveTimestamp": "1545082649185",
            "ApproximateReceiveCount": "1",
            "SenderId": "AIDAIENQZJOLO23YVJ4VO",
            "SentTimestamp": "1545082649183",
        },
        "awsRegion": "us-east-1",
        "body": dumps(body),
        "eventSource": "aws:sqs",
        "eventSourceARN": "arn:aws:sqs:us-east-1:012345678901:queue",
        "md5OfBody": "e4e68fb7bd0e697a0ae8f1bb342846b3",
        "messageAttributes": {},
        "messageId": message_id,
        "receiptHandle": f"receipt-{message_id}",
    }
