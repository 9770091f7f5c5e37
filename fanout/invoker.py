from aws_lambda_powertools import (
    Logger,
)
from concurrent.futures import (
    ThreadPoolExecutor,
)
from dataclasses import (
    dataclass,
    field,
)
from enum import (
    Enum,
)
from operator import (
    attrgetter,
)
from os import (
    getenv,
)
from threading import (
    Lock,
)
from time import (
    monotonic,
)
from typing import (
    Callable,
    Hashable,
    Iterable,
    Optional,
)

from fanout.errors import (
    ConsumerHandlerError,
    DestinationUnavailableError,
)
from fanout.events import (
    OutboundMessage,
    QueuedMessage,
)
from fanout.queue import (
    DEFAULT_BATCH_SIZE,
)

logger = Logger(
    level=getenv("LOG_LEVEL", "DEBUG"),
    service="fanout",
)


class BatchState(Enum):
    RECEIVED = "Received"
    PROCESSING = "Processing"
    ALL_ACKED = "AllAcked"
    PARTIALLY_FAILED = "PartiallyFailed"
    ALL_FAILED = "AllFailed"


@dataclass
class BatchResult:
    queue: str
    size: int
    state: BatchState = BatchState.RECEIVED
    acked: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    duplicates: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    unsettled: list = field(default_factory=list)
    timed_out: bool = False


class IdempotencyRegistry:
    """Keys of messages whose handler already succeeded."""

    def __init__(self) -> None:
        self._keys = set()
        self._lock = Lock()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def remember(self, key: Hashable) -> None:
        with self._lock:
            self._keys.add(key)


class ConsumerInvoker:
    """
    Pulls batches from a queue and hands every message to handler.

    Messages are acked one by one as the handler succeeds, failures are
    nacked together at the end of the batch. Once the invocation timeout
    has passed the rest of the batch is left in flight, so it comes back
    after the queue's visibility timeout.
    """

    def __init__(
        self,
        queue,
        handler: Callable[[OutboundMessage], None],
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_wait_time: float = 0.0,
        invocation_timeout: Optional[float] = None,
        nack_backoff: float = 0.0,
        idempotency: Optional[IdempotencyRegistry] = None,
        idempotency_key: Callable[[OutboundMessage], Optional[Hashable]] = attrgetter("source_key"),
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.batch_size = batch_size
        self.max_wait_time = max_wait_time
        self.invocation_timeout = invocation_timeout
        self.nack_backoff = nack_backoff
        self.idempotency = idempotency
        self.idempotency_key = idempotency_key
        self._clock = clock

    def poll_once(self) -> Optional[BatchResult]:
        batch = self.queue.receive_batch(
            max_size=self.batch_size,
            max_wait_time=self.max_wait_time,
        )
        if not len(batch):
            return None

        result = BatchResult(queue=batch.queue, size=len(batch))
        started = self._clock()
        result.state = BatchState.PROCESSING
        logger.debug(f"Processing {len(batch)} messages from {batch.queue}")

        for queued in batch:
            if self._expired(started):
                result.timed_out = True
                break

            self._process(queued, result, started)

        if result.failed:
            try:
                self.queue.nack_batch(result.failed, backoff=self.nack_backoff)
            except DestinationUnavailableError as error:
                # They come back once the visibility timeout runs out
                logger.warning(f"Could not return failed messages: {error}")

        result.state = self._outcome(result)
        logger.info(
            f"Batch from {batch.queue} finished {result.state.value}: "
            f"{len(result.acked)} acked, {len(result.failed)} failed")

        return result

    def run(self, max_batches: Optional[int] = None) -> list:
        """Poll until the queue comes back empty or max_batches is reached."""
        results = []

        while max_batches is None or len(results) < max_batches:
            result = self.poll_once()
            if result is None:
                break
            results.append(result)

        return results

    def _process(self, queued: QueuedMessage, result: BatchResult, started: float) -> None:
        message = queued.message
        key = self.idempotency_key(message)

        if self.idempotency is not None and key is not None and key in self.idempotency:
            logger.info(f"Skipping duplicate {key} ({queued.message_id})")
            result.duplicates.append(queued.message_id)
            self._ack(queued.message_id, result)
            return

        logger.append_keys(
            trace_parent=message.trace_parent,
            parent_span=message.parent_span,
        )
        try:
            self.handler(message)
        except Exception as exception:
            error = ConsumerHandlerError(queued.message_id, exception)
            logger.warning(str(error))
            result.errors.append(error)
            result.failed.append(queued.message_id)
            return
        finally:
            logger.remove_keys(["trace_parent", "parent_span"])

        if self.idempotency is not None and key is not None:
            self.idempotency.remember(key)

        if self._expired(started):
            logger.warning(
                f"Invocation timeout fired while handling {queued.message_id}")
            result.timed_out = True
            return

        self._ack(queued.message_id, result)

    def _ack(self, message_id: str, result: BatchResult) -> None:
        try:
            self.queue.ack_batch([message_id])
        except DestinationUnavailableError as error:
            logger.warning(f"Could not ack {message_id}, it will be redelivered: {error}")
            result.unsettled.append(message_id)
            return

        result.acked.append(message_id)

    def _expired(self, started: float) -> bool:
        if self.invocation_timeout is None:
            return False

        return self._clock() - started >= self.invocation_timeout

    @staticmethod
    def _outcome(result: BatchResult) -> BatchState:
        if len(result.acked) == result.size:
            return BatchState.ALL_ACKED
        if not result.acked:
            return BatchState.ALL_FAILED

        return BatchState.PARTIALLY_FAILED


def run_concurrently(invokers: Iterable[ConsumerInvoker], max_batches: Optional[int] = None) -> list:
    invokers = list(invokers)

    with ThreadPoolExecutor(max_workers=max(len(invokers), 1)) as executor:
        futures = [executor.submit(invoker.run, max_batches) for invoker in invokers]

        return [future.result() for future in futures]
