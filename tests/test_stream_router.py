from awslambdaric.lambda_context import (
    LambdaContext,
)
from botocore.stub import (
    Stubber,
)
from pytest import (
    fixture,
)

from fanout.events import (
    OutboundMessage,
)
from stream_router.main import (
    handler,
    router,
    sqs,
)
from tests.fixtures import (
    context,
    stream_record,
)

NEW_SUBSCRIBER_URL = "https://sqs.us-east-1.amazonaws.com/012345678901/new-subscriber"
SEND_NEWSLETTER_URL = "https://sqs.us-east-1.amazonaws.com/012345678901/send-newsletter"
TRACE_PARENT = "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"
PARENT_SPAN = "b7ad6b7169203331"


@fixture
def event() -> dict:
    event = {
        "Records": [
            stream_record(
                {
                    "EmailAddress": "a@b.com",
                    "PK": "a@b.com",
                    "ParentSpan": PARENT_SPAN,
                    "TraceParent": TRACE_PARENT,
                    "Type": "Subscriber",
                },
                "100",
            ),
            stream_record(
                {
                    "EmailAddress": "a@b.com",
                    "PK": "tok123",
                    "ParentSpan": PARENT_SPAN,
                    "TraceParent": TRACE_PARENT,
                    "Type": "SubscriberToken",
                },
                "101",
            ),
            stream_record(
                {
                    "IssueTitle": "July",
                    "PK": "issue-1",
                    "ParentSpan": PARENT_SPAN,
                    "S3Pointer": "issues/issue-1.json",
                    "TraceParent": TRACE_PARENT,
                    "Type": "NewsletterIssue",
                },
                "102",
            ),
        ],
    }

    yield event


@fixture
def no_backoff() -> None:
    original = router._sleep
    router._sleep = lambda seconds: None

    yield

    router._sleep = original


def confirmation_message() -> str:
    return OutboundMessage(
        body={
            "email_address": "a@b.com",
            "subscriber_token": "tok123",
        },
        trace_parent=TRACE_PARENT,
        parent_span=PARENT_SPAN,
        source_key=("tok123", 101),
    ).to_json()


def test_records_are_routed_by_type(event: dict, context: LambdaContext) -> None:
    stub = Stubber(sqs)
    stub.add_response(
        "send_message",
        expected_params={
            "MessageBody": confirmation_message(),
            "QueueUrl": NEW_SUBSCRIBER_URL,
        },
        service_response={
            "MessageId": "m-1",
        },
    )
    stub.add_response(
        "send_message",
        expected_params={
            "MessageBody": OutboundMessage(
                body={
                    "issue_title": "July",
                    "s3_pointer": "issues/issue-1.json",
                },
                trace_parent=TRACE_PARENT,
                parent_span=PARENT_SPAN,
                source_key=("issue-1", 102),
            ).to_json(),
            "QueueUrl": SEND_NEWSLETTER_URL,
        },
        service_response={
            "MessageId": "m-2",
        },
    )

    with stub:
        response = handler(event, context)

    assert response == {"batchItemFailures": []}
    stub.assert_no_pending_responses()


def test_unavailable_queue_reports_the_record_to_retry(
    event: dict,
    context: LambdaContext,
    no_backoff: None,
) -> None:
    stub = Stubber(sqs)
    for _ in range(router.max_enqueue_attempts):
        stub.add_client_error(
            "send_message",
            service_error_code="RequestThrottled",
            http_status_code=400,
        )

    with stub:
        response = handler(event, context)

    assert response == {
        "batchItemFailures": [
            {
                "itemIdentifier": "101",
            },
        ],
    }
    assert router.escalations[-1].route_id == "new-subscriber"
    stub.assert_no_pending_responses()


def test_removed_token_is_not_routed_but_modified_one_is(context: LambdaContext) -> None:
    token = {
        "EmailAddress": "a@b.com",
        "PK": "tok123",
        "ParentSpan": PARENT_SPAN,
        "TraceParent": TRACE_PARENT,
        "Type": "SubscriberToken",
    }
    event = {
        "Records": [
            stream_record(token, "200", event_name="REMOVE"),
            stream_record(
                {**token, "EmailAddress": "new@b.com"},
                "201",
                event_name="MODIFY",
                old_item=token,
            ),
        ],
    }
    stub = Stubber(sqs)
    stub.add_response(
        "send_message",
        expected_params={
            "MessageBody": OutboundMessage(
                body={
                    "email_address": "new@b.com",
                    "subscriber_token": "tok123",
                },
                trace_parent=TRACE_PARENT,
                parent_span=PARENT_SPAN,
                source_key=("tok123", 201),
            ).to_json(),
            "QueueUrl": NEW_SUBSCRIBER_URL,
        },
        service_response={
            "MessageId": "m-3",
        },
    )

    with stub:
        response = handler(event, context)

    assert response == {"batchItemFailures": []}
    stub.assert_no_pending_responses()
