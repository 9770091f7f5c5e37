from aws_lambda_powertools import (
    Logger,
)
from aws_lambda_powertools.utilities.batch import (
    BatchProcessor,
    EventType,
    process_partial_response,
)
from aws_lambda_powertools.utilities.data_classes.sqs_event import (
    SQSRecord,
)
from awslambdaric.lambda_context import (
    LambdaContext,
)
from boto3 import (
    client,
)

from fanout.config import (
    Settings,
)
from fanout.events import (
    OutboundMessage,
)
from fanout.invoker import (
    IdempotencyRegistry,
)
from fanout.mail import (
    SesEmailClient,
    parse_email,
)

settings = Settings.from_environment(required=("BASE_URL", "SENDER_EMAIL"))
ses = client("ses")
email_client = SesEmailClient(ses, settings.sender_email)
processed_tokens = IdempotencyRegistry()
processor = BatchProcessor(event_type=EventType.SQS)
logger = Logger(
    level=settings.log_level,
    service="send_confirmation",
)


def confirmation_email(subscriber_token: str) -> tuple:
    confirmation_link = (
        f"{settings.base_url}/subscriptions/confirm"
        f"?subscription_token={subscriber_token}")
    plain_body = (
        "Welcome to our newsletter!\n"
        f"Visit {confirmation_link} to confirm your subscription.")
    html_body = (
        "Welcome to our newsletter!<br />"
        f"Click <a href=\"{confirmation_link}\">here</a> to confirm your subscription.")

    return html_body, plain_body


def record_handler(record: SQSRecord) -> None:
    message = OutboundMessage.from_json(record.body)
    subscriber_token = message.body["subscriber_token"]

    if subscriber_token in processed_tokens:
        logger.info(f"Confirmation for {subscriber_token} already sent")
        return

    logger.append_keys(
        trace_parent=message.trace_parent,
        parent_span=message.parent_span,
    )
    try:
        email_address = parse_email(message.body["email_address"])
        html_body, plain_body = confirmation_email(subscriber_token)

        logger.debug(f"Sending confirmation to {email_address}")

        email_client.send_email_to(email_address, "Welcome!", html_body, plain_body)
        processed_tokens.remember(subscriber_token)
    finally:
        logger.remove_keys(["trace_parent", "parent_span"])


def handler(event: dict, context: LambdaContext) -> dict:
    logger.debug(context)
    logger.debug(event)

    return process_partial_response(
        context=context,
        event=event,
        processor=processor,
        record_handler=record_handler,
    )
