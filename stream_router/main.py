from aws_lambda_powertools import (
    Logger,
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
    from_stream_record,
)
from fanout.router import (
    FanoutRouter,
)
from fanout.routes import (
    ROUTE_TABLE,
    build_routes,
)
from fanout.sqs import (
    SqsQueue,
)

settings = Settings.from_environment()
sqs = client("sqs")
logger = Logger(
    level=settings.log_level,
    service="stream_router",
)
router = FanoutRouter(build_routes({
    route_id: SqsQueue(sqs, settings.queue_url(route_id), name=route_id)
    for route_id, _, _ in ROUTE_TABLE
}))


def handler(event: dict, context: LambdaContext) -> dict:
    """
    Fan the table's stream records out to the route queues.

    Records are handled in order. When a route could not enqueue a record
    even after retries, that record is reported as the batch item failure
    so the stream resumes from it; later records are left for the retry to
    keep partition order.
    """
    logger.debug(context)
    logger.debug(event)

    for record in event["Records"]:
        change = from_stream_record(record)
        report = router.dispatch(change)

        logger.debug(f"{change.key} matched {report.matched}")

        if not report.ok:
            sequence_number = record["dynamodb"]["SequenceNumber"]
            logger.error(
                f"Routes {report.escalated} unavailable, "
                f"retrying from {sequence_number}")

            return {
                "batchItemFailures": [
                    {
                        "itemIdentifier": sequence_number,
                    },
                ],
            }

    return {
        "batchItemFailures": [],
    }
