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
from json import (
    loads,
)

from fanout.config import (
    Settings,
)
from fanout.events import (
    OutboundMessage,
    dynamo_obj_to_python_obj,
)
from fanout.invoker import (
    IdempotencyRegistry,
)
from fanout.mail import (
    SesEmailClient,
    parse_email,
)

settings = Settings.from_environment(
    required=("BUCKET_NAME", "SENDER_EMAIL", "TABLE_NAME"))
dynamodb = client("dynamodb")
s3 = client("s3")
ses = client("ses")
email_client = SesEmailClient(ses, settings.sender_email)
delivered = IdempotencyRegistry()
processor = BatchProcessor(event_type=EventType.SQS)
logger = Logger(
    level=settings.log_level,
    service="send_newsletter",
)


def retrieve_newsletter(s3_pointer: str) -> dict:
    response = s3.get_object(
        Bucket=settings.bucket_name,
        Key=s3_pointer,
    )
    newsletter = loads(response["Body"].read())

    logger.info(f"Newsletter title to work on is {newsletter['issue_title']}")

    return newsletter


def get_confirmed_subscribers() -> list:
    subscribers = []
    params = {
        "ExpressionAttributeNames": {
            "#gsi1pk": "GSI1PK",
        },
        "ExpressionAttributeValues": {
            ":gsi1pk": {
                "S": "confirmed",
            },
        },
        "IndexName": "GSI1",
        "KeyConditionExpression": "#gsi1pk = :gsi1pk",
        "TableName": settings.table_name,
    }

    while True:
        response = dynamodb.query(**params)
        subscribers.extend(
            dynamo_obj_to_python_obj(item)["PK"]
            for item in response.get("Items", [])
        )

        if "LastEvaluatedKey" not in response:
            return subscribers
        params["ExclusiveStartKey"] = response["LastEvaluatedKey"]


def send_emails_to_subscribers(s3_pointer: str, newsletter: dict) -> int:
    subscribers = get_confirmed_subscribers()
    sent = 0

    logger.info(f"There are {len(subscribers)} confirmed subscribers")

    for subscriber in subscribers:
        try:
            email_address = parse_email(subscriber)
        except ValueError as error:
            logger.warning(
                f"Skipping a confirmed subscriber. Their stored contact "
                f"details are invalid: {error}")
            continue

        if (s3_pointer, email_address) in delivered:
            continue

        logger.info(f"Sending email to {email_address}")

        email_client.send_email_to(
            email_address,
            newsletter["issue_title"],
            newsletter["html_content"],
            newsletter["text_content"],
        )
        delivered.remember((s3_pointer, email_address))
        sent += 1

    return sent


def record_handler(record: SQSRecord) -> None:
    message = OutboundMessage.from_json(record.body)

    logger.append_keys(
        trace_parent=message.trace_parent,
        parent_span=message.parent_span,
    )
    try:
        s3_pointer = message.body["s3_pointer"]

        logger.info(f"Newsletter data path is {s3_pointer}")

        newsletter = retrieve_newsletter(s3_pointer)
        send_emails_to_subscribers(s3_pointer, newsletter)
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
