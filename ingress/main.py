from aws_lambda_powertools import (
    Logger,
)
from aws_lambda_powertools.event_handler import (
    APIGatewayRestResolver,
    Response,
    content_types,
)
from aws_lambda_powertools.event_handler.exceptions import (
    BadRequestError,
    UnauthorizedError,
)
from awslambdaric.lambda_context import (
    LambdaContext,
)
from boto3 import (
    client,
)
from json import (
    dumps,
)
from secrets import (
    choice,
    token_hex,
)
from string import (
    ascii_letters,
    digits,
)
from typing import (
    Callable,
)
from uuid import (
    uuid4,
)

from fanout.config import (
    Settings,
)
from fanout.events import (
    dynamo_obj_to_python_obj,
    python_obj_to_dynamo_obj,
)
from fanout.mail import (
    parse_email,
)

SUBSCRIPTION_TOKEN_LENGTH = 25
settings = Settings.from_environment(required=("BUCKET_NAME", "TABLE_NAME"))
dynamodb = client("dynamodb")
s3 = client("s3")
app = APIGatewayRestResolver()
logger = Logger(
    level=settings.log_level,
    service="ingress",
)


def trace_context() -> dict:
    """
    Continue the caller's W3C traceparent when there is one, otherwise
    start a new trace. The ids travel with the row into the change log.
    """
    traceparent = app.current_event.get_header_value(
        name="traceparent",
        default_value="",
        case_sensitive=False,
    )
    parts = traceparent.split("-")

    if len(parts) == 4 and len(parts[1]) == 32 and len(parts[2]) == 16:
        trace_id, parent_span = parts[1], parts[2]
    else:
        trace_id, parent_span = token_hex(16), token_hex(8)

    return {
        "ParentSpan": parent_span,
        "TraceParent": f"00-{trace_id}-{parent_span}-01",
    }


def generate_subscription_token() -> str:
    alphabet = ascii_letters + digits

    return "".join(choice(alphabet) for _ in range(SUBSCRIPTION_TOKEN_LENGTH))


def put_item(item: dict, **kwargs) -> None:
    dynamodb.put_item(
        Item=python_obj_to_dynamo_obj(item),
        TableName=settings.table_name,
        **kwargs,
    )


def required_field(body: dict, name: str) -> str:
    value = body.get(name)

    if not value:
        raise BadRequestError(f"{name} is required")

    return value


@app.post("/subscriptions")
def subscribe():
    body = app.current_event.json_body or {}

    try:
        email_address = parse_email(required_field(body, "email"))
    except ValueError as error:
        raise BadRequestError(str(error)) from error

    trace = trace_context()
    subscriber_token = generate_subscription_token()

    try:
        put_item(
            {
                "EmailAddress": email_address,
                "PK": email_address,
                "Type": "Subscriber",
                **trace,
            },
            ConditionExpression="attribute_not_exists(PK)",
        )
    except dynamodb.exceptions.ConditionalCheckFailedException:
        logger.warning(f"{email_address} is already subscribed")

        return Response(
            body=dumps({"message": "Already subscribed"}),
            content_type=content_types.APPLICATION_JSON,
            status_code=409,
        )

    put_item(
        {
            "EmailAddress": email_address,
            "PK": subscriber_token,
            "Type": "SubscriberToken",
            **trace,
        },
        ConditionExpression="attribute_not_exists(PK)",
    )

    logger.info(f"Stored subscription token for {email_address}")

    return {}


@app.get("/subscriptions/confirm")
def confirm():
    subscriber_token = app.current_event.get_query_string_value(
        name="subscription_token",
        default_value="",
    )
    if not subscriber_token:
        raise BadRequestError("subscription_token is required")

    response = dynamodb.get_item(
        Key={
            "PK": {
                "S": subscriber_token,
            },
        },
        TableName=settings.table_name,
    )
    if "Item" not in response:
        raise UnauthorizedError("Unknown subscription token")

    email_address = dynamo_obj_to_python_obj(response["Item"])["EmailAddress"]

    put_item({
        "EmailAddress": email_address,
        "GSI1PK": "confirmed",
        "GSI1SK": email_address,
        "PK": email_address,
        "Type": "Subscriber",
        **trace_context(),
    })

    logger.info(f"Confirmed {email_address}")

    return {}


@app.post("/admin/newsletters")
def publish_newsletter():
    body = app.current_event.json_body or {}
    issue = {
        "html_content": required_field(body, "html_content"),
        "issue_title": required_field(body, "issue_title"),
        "text_content": required_field(body, "text_content"),
    }
    issue_id = str(uuid4())
    s3_pointer = f"issues/{issue_id}.json"

    s3.put_object(
        Body=dumps(issue).encode("utf-8"),
        Bucket=settings.bucket_name,
        ContentType=content_types.APPLICATION_JSON,
        Key=s3_pointer,
    )
    put_item(
        {
            "IssueTitle": issue["issue_title"],
            "PK": issue_id,
            "S3Pointer": s3_pointer,
            "Type": "NewsletterIssue",
            **trace_context(),
        },
        ConditionExpression="attribute_not_exists(PK)",
    )

    logger.info(f"Stored newsletter issue {issue_id} at {s3_pointer}")

    return {
        "s3_pointer": s3_pointer,
    }


def forward(event: dict, context: LambdaContext, backend: Callable) -> dict:
    """Hand any method on any path to backend, unchanged."""
    logger.debug(f"{event.get('httpMethod')} {event.get('path')}")

    return backend(event, context)


def handler(event: dict, context: LambdaContext) -> dict:
    logger.debug(context)
    logger.debug(event)

    return forward(event, context, app.resolve)
