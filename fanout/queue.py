from aws_lambda_powertools import (
    Logger,
)
from bisect import (
    insort,
)
from dataclasses import (
    dataclass,
)
from itertools import (
    count,
)
from os import (
    getenv,
)
from threading import (
    Condition,
)
from time import (
    monotonic,
)
from typing import (
    Callable,
    Optional,
)
from uuid import (
    uuid4,
)

from fanout.errors import (
    DestinationUnavailableError,
    RedriveExhaustedError,
)
from fanout.events import (
    DeliveryBatch,
    OutboundMessage,
    QueuedMessage,
)

DEFAULT_BATCH_SIZE = 10
logger = Logger(
    level=getenv("LOG_LEVEL", "DEBUG"),
    service="fanout",
)


@dataclass(frozen=True)
class RedrivePolicy:
    max_receive_count: int
    dead_letter: "DurableQueue"

    def __post_init__(self) -> None:
        if self.max_receive_count < 1:
            raise ValueError("max_receive_count must be at least 1")

    def exhausted(self, queued: QueuedMessage) -> bool:
        return queued.receive_count > self.max_receive_count


class DurableQueue:
    """
    In-process queue with SQS delivery semantics.

    Received messages stay invisible until they are acked, nacked or their
    visibility timeout runs out. Once a message has failed more than
    max_receive_count deliveries it goes to the dead-letter queue instead
    of becoming visible again.
    """

    def __init__(
        self,
        name: str,
        visibility_timeout: float = 30.0,
        redrive_policy: Optional[RedrivePolicy] = None,
        capacity: Optional[int] = None,
        enqueue_timeout: float = 0.0,
        clock: Callable[[], float] = monotonic,
        on_dead_letter: Optional[Callable[[RedriveExhaustedError], None]] = None,
    ) -> None:
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.redrive_policy = redrive_policy
        self.capacity = capacity
        self.enqueue_timeout = enqueue_timeout
        self.on_dead_letter = on_dead_letter
        self._clock = clock
        self._changed = Condition()
        self._sequence = count()
        self._messages = {}
        self._order = {}
        self._visible = []
        self._delayed = {}
        self._in_flight = {}

    def __len__(self) -> int:
        with self._changed:
            return len(self._messages)

    @property
    def in_flight(self) -> int:
        with self._changed:
            return len(self._in_flight)

    def enqueue(self, message: OutboundMessage) -> str:
        queued = QueuedMessage(message_id=str(uuid4()), message=message)

        with self._changed:
            if self.capacity is not None and len(self._messages) >= self.capacity:
                has_room = self._changed.wait_for(
                    lambda: len(self._messages) < self.capacity,
                    timeout=self.enqueue_timeout,
                )
                if not has_room:
                    raise DestinationUnavailableError(
                        self.name, f"capacity {self.capacity} reached")

            self._accept(queued)

        logger.debug(f"Enqueued {queued.message_id} to {self.name}")

        return queued.message_id

    def receive_batch(
        self,
        max_size: int = DEFAULT_BATCH_SIZE,
        max_wait_time: float = 0.0,
    ) -> DeliveryBatch:
        with self._changed:
            taken = self._take(max_size)

            if not taken and max_wait_time > 0:
                self._changed.wait_for(self._has_visible, timeout=max_wait_time)
                taken = self._take(max_size)

        return DeliveryBatch(queue=self.name, messages=tuple(taken))

    def ack_batch(self, message_ids: list) -> list:
        acked = []

        with self._changed:
            for message_id in message_ids:
                if message_id not in self._messages:
                    continue

                self._in_flight.pop(message_id, None)
                self._delayed.pop(message_id, None)
                self._drop_visible(message_id)
                del self._messages[message_id]
                del self._order[message_id]
                acked.append(message_id)

            self._changed.notify_all()

        return acked

    def nack_batch(self, message_ids: list, backoff: float = 0.0) -> list:
        returned = []

        with self._changed:
            now = self._clock()

            for message_id in message_ids:
                if self._in_flight.pop(message_id, None) is None:
                    continue

                if self._redrive_if_exhausted(message_id):
                    continue

                if backoff > 0:
                    self._delayed[message_id] = now + backoff
                else:
                    self._make_visible(message_id)
                returned.append(message_id)

            self._changed.notify_all()

        return returned

    def messages(self) -> list:
        """Snapshot of every message held, visible or not."""
        with self._changed:
            return sorted(
                self._messages.values(),
                key=lambda queued: self._order[queued.message_id],
            )

    def _accept(self, queued: QueuedMessage) -> None:
        self._messages[queued.message_id] = queued
        self._order[queued.message_id] = next(self._sequence)
        self._make_visible(queued.message_id)
        self._changed.notify_all()

    def _has_visible(self) -> bool:
        self._release_expired()

        return bool(self._visible)

    def _take(self, max_size: int) -> list:
        self._release_expired()

        taken = []
        deadline = self._clock() + self.visibility_timeout
        while self._visible and len(taken) < max_size:
            _, message_id = self._visible.pop(0)
            queued = self._messages[message_id]
            queued.receive_count += 1
            self._in_flight[message_id] = deadline
            taken.append(QueuedMessage(
                message_id=message_id,
                message=queued.message,
                receive_count=queued.receive_count,
            ))

        return taken

    def _release_expired(self) -> None:
        now = self._clock()

        for message_id, visible_at in list(self._delayed.items()):
            if visible_at <= now:
                del self._delayed[message_id]
                self._make_visible(message_id)

        for message_id, visible_at in list(self._in_flight.items()):
            if visible_at <= now:
                del self._in_flight[message_id]
                logger.warning(
                    f"Visibility timeout expired for {message_id} on {self.name}")
                if not self._redrive_if_exhausted(message_id):
                    self._make_visible(message_id)

    def _redrive_if_exhausted(self, message_id: str) -> bool:
        queued = self._messages[message_id]

        if self.redrive_policy is None or not self.redrive_policy.exhausted(queued):
            return False

        del self._messages[message_id]
        del self._order[message_id]
        with self.redrive_policy.dead_letter._changed:
            self.redrive_policy.dead_letter._accept(queued)

        error = RedriveExhaustedError(self.name, message_id, queued.receive_count)
        logger.error(str(error))
        if self.on_dead_letter is not None:
            self.on_dead_letter(error)

        return True

    def _make_visible(self, message_id: str) -> None:
        insort(self._visible, (self._order[message_id], message_id))

    def _drop_visible(self, message_id: str) -> None:
        entry = (self._order[message_id], message_id)
        if entry in self._visible:
            self._visible.remove(entry)
