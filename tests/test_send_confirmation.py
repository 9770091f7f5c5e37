from awslambdaric.lambda_context import (
    LambdaContext,
)
from botocore.stub import (
    Stubber,
)

from send_confirmation.main import (
    confirmation_email,
    handler,
    processed_tokens,
    ses,
)
from tests.fixtures import (
    context,
    sqs_record,
)

TRACE_PARENT = "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"


def send_email_params(recipient: str, subscriber_token: str) -> dict:
    html_body, plain_body = confirmation_email(subscriber_token)

    return {
        "Destination": {
            "ToAddresses": [
                recipient,
            ],
        },
        "Message": {
            "Body": {
                "Html": {
                    "Data": html_body,
                },
                "Text": {
                    "Data": plain_body,
                },
            },
            "Subject": {
                "Data": "Welcome!",
            },
        },
        "Source": "newsletter@example.com",
    }


def test_confirmation_email_links_to_confirm_endpoint() -> None:
    html_body, plain_body = confirmation_email("tok123")
    link = "https://newsletter.example.com/subscriptions/confirm?subscription_token=tok123"

    assert link in html_body
    assert link in plain_body


def test_invalid_address_fails_only_its_record(context: LambdaContext) -> None:
    event = {
        "Records": [
            sqs_record("m-1", {
                "email_address": "a@b.com",
                "parent_span": "b7ad6b7169203331",
                "subscriber_token": "tokValid",
                "trace_parent": TRACE_PARENT,
            }),
            sqs_record("m-2", {
                "email_address": "not an address",
                "parent_span": "b7ad6b7169203331",
                "subscriber_token": "tokInvalid",
                "trace_parent": TRACE_PARENT,
            }),
        ],
    }
    stub = Stubber(ses)
    stub.add_response(
        "send_email",
        expected_params=send_email_params("a@b.com", "tokValid"),
        service_response={
            "MessageId": "ses-1",
        },
    )

    with stub:
        response = handler(event, context)

    assert response == {
        "batchItemFailures": [
            {
                "itemIdentifier": "m-2",
            },
        ],
    }
    assert "tokValid" in processed_tokens
    assert "tokInvalid" not in processed_tokens
    stub.assert_no_pending_responses()


def test_redelivered_token_is_not_emailed_twice(context: LambdaContext) -> None:
    record = sqs_record("m-3", {
        "email_address": "c@d.com",
        "subscriber_token": "tokTwice",
    })
    stub = Stubber(ses)
    stub.add_response(
        "send_email",
        expected_params=send_email_params("c@d.com", "tokTwice"),
        service_response={
            "MessageId": "ses-2",
        },
    )

    with stub:
        first = handler({"Records": [record]}, context)
        second = handler({"Records": [record]}, context)

    assert first == second == {"batchItemFailures": []}
    stub.assert_no_pending_responses()
