from aws_lambda_powertools import (
    Logger,
)
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
)
from os import (
    getenv,
)

from fanout.errors import (
    DestinationUnavailableError,
)
from fanout.events import (
    DeliveryBatch,
    OutboundMessage,
    QueuedMessage,
)

SQS_MAX_BATCH_SIZE = 10
SQS_MAX_WAIT_SECONDS = 20
logger = Logger(
    level=getenv("LOG_LEVEL", "DEBUG"),
    service="fanout",
)


class SqsQueue:
    """
    DurableQueue operations over an SQS queue. Visibility timeout and
    dead-letter redrive are enforced by SQS itself through the queue's
    RedrivePolicy attribute. Receipt handles are kept for the latest
    received batch only.
    """

    def __init__(self, client, queue_url: str, name: str = None) -> None:
        self.client = client
        self.queue_url = queue_url
        self.name = name or queue_url.rsplit("/", 1)[-1]
        self._receipts = {}

    def enqueue(self, message: OutboundMessage) -> str:
        try:
            response = self.client.send_message(
                MessageBody=message.to_json(),
                QueueUrl=self.queue_url,
            )
        except (BotoCoreError, ClientError) as error:
            raise DestinationUnavailableError(self.name, str(error)) from error

        logger.debug(f"Sent {response['MessageId']} to {self.name}")

        return response["MessageId"]

    def receive_batch(
        self,
        max_size: int = SQS_MAX_BATCH_SIZE,
        max_wait_time: float = 0.0,
    ) -> DeliveryBatch:
        try:
            response = self.client.receive_message(
                AttributeNames=["ApproximateReceiveCount"],
                MaxNumberOfMessages=min(max_size, SQS_MAX_BATCH_SIZE),
                QueueUrl=self.queue_url,
                WaitTimeSeconds=min(int(max_wait_time), SQS_MAX_WAIT_SECONDS),
            )
        except (BotoCoreError, ClientError) as error:
            raise DestinationUnavailableError(self.name, str(error)) from error

        # Receipts left from earlier receives are no longer ours to settle
        if self._receipts:
            logger.debug(f"Dropping {len(self._receipts)} unsettled receipts on {self.name}")
            self._receipts.clear()

        messages = []
        for sqs_message in response.get("Messages", []):
            message_id = sqs_message["MessageId"]
            self._receipts[message_id] = sqs_message["ReceiptHandle"]
            receive_count = sqs_message.get("Attributes", {}).get(
                "ApproximateReceiveCount", "1")

            messages.append(QueuedMessage(
                message_id=message_id,
                message=OutboundMessage.from_json(sqs_message["Body"]),
                receive_count=int(receive_count),
            ))

        return DeliveryBatch(queue=self.name, messages=tuple(messages))

    def ack_batch(self, message_ids: list) -> list:
        entries = self._entries(message_ids)
        if not entries:
            return []

        try:
            response = self.client.delete_message_batch(
                Entries=entries,
                QueueUrl=self.queue_url,
            )
        except (BotoCoreError, ClientError) as error:
            raise DestinationUnavailableError(self.name, str(error)) from error

        return self._settle(entries, response)

    def nack_batch(self, message_ids: list, backoff: float = 0.0) -> list:
        entries = self._entries(message_ids)
        if not entries:
            return []

        for entry in entries:
            entry["VisibilityTimeout"] = int(backoff)

        try:
            response = self.client.change_message_visibility_batch(
                Entries=entries,
                QueueUrl=self.queue_url,
            )
        except (BotoCoreError, ClientError) as error:
            raise DestinationUnavailableError(self.name, str(error)) from error

        return self._settle(entries, response)

    def _entries(self, message_ids: list) -> list:
        return [
            {
                "Id": message_id,
                "ReceiptHandle": self._receipts[message_id],
            }
            for message_id in message_ids
            if message_id in self._receipts
        ]

    def _settle(self, entries: list, response: dict) -> list:
        for failure in response.get("Failed", []):
            logger.warning(
                f"{self.name} rejected {failure['Id']}: {failure.get('Message')}")

        settled = [success["Id"] for success in response.get("Successful", [])]
        for entry in entries:
            if entry["Id"] in settled:
                del self._receipts[entry["Id"]]

        return settled
