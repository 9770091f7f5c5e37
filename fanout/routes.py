from typing import (
    Mapping,
)

from fanout.filtering import (
    RoutePattern,
)
from fanout.router import (
    RouteDefinition,
)
from fanout.transform import (
    MessageTemplate,
)

NEW_SUBSCRIBER = "new-subscriber"
SEND_NEWSLETTER = "send-newsletter"

# Filter patterns and input templates as deployed on the stream pipes
ROUTE_TABLE = (
    (
        NEW_SUBSCRIBER,
        '{"dynamodb.NewImage.Type.S": ["SubscriberToken"]}',
        """{
            "trace_parent": <$.dynamodb.NewImage.TraceParent.S>,
            "parent_span": <$.dynamodb.NewImage.ParentSpan.S>,
            "email_address": <$.dynamodb.NewImage.EmailAddress.S>,
            "subscriber_token": <$.dynamodb.NewImage.PK.S>
        }""",
    ),
    (
        SEND_NEWSLETTER,
        '{"dynamodb.NewImage.Type.S": ["NewsletterIssue"]}',
        """{
            "trace_parent": <$.dynamodb.NewImage.TraceParent.S>,
            "parent_span": <$.dynamodb.NewImage.ParentSpan.S>,
            "issue_title": <$.dynamodb.NewImage.IssueTitle.S>,
            "s3_pointer": <$.dynamodb.NewImage.S3Pointer.S>
        }""",
    ),
)


def build_routes(destinations: Mapping) -> tuple:
    """Bind every route of ROUTE_TABLE to destinations[route_id]."""
    return tuple(
        RouteDefinition(
            id=route_id,
            pattern=RoutePattern.from_json(pattern),
            transform=MessageTemplate.from_input_template(template),
            destination=destinations[route_id],
        )
        for route_id, pattern, template in ROUTE_TABLE
    )
