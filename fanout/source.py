from aws_lambda_powertools import (
    Logger,
)
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
)
from datetime import (
    datetime,
    timedelta,
    timezone,
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
    sleep,
)
from typing import (
    Callable,
    Iterator,
    Optional,
)

from fanout.errors import (
    TransientSourceError,
)
from fanout.events import (
    ChangeEvent,
    EventType,
    from_stream_record,
)

EARLIEST = "earliest"
LATEST = "latest"
SHARD_ITERATOR_TYPES = {
    EARLIEST: "TRIM_HORIZON",
    LATEST: "LATEST",
}
DEFAULT_RETENTION = timedelta(hours=24)
logger = Logger(
    level=getenv("LOG_LEVEL", "DEBUG"),
    service="fanout",
)


def _check_position(starting_position: str) -> None:
    if starting_position not in SHARD_ITERATOR_TYPES:
        raise ValueError(
            f"starting_position must be {EARLIEST} or {LATEST}, got {starting_position}")


class ChangeLog:
    """
    In-memory change log. Sequence numbers grow monotonically, so events
    of one partition are read back in commit order; nothing is promised
    about the order between partitions.
    """

    def __init__(
        self,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.retention = retention
        self._clock = clock
        self._sequence = count(1)
        self._entries = []
        self._first_position = 0
        self._changed = Condition()

    def __len__(self) -> int:
        with self._changed:
            return len(self._entries)

    @property
    def end_position(self) -> int:
        with self._changed:
            return self._first_position + len(self._entries)

    def append(
        self,
        partition_key: str,
        event_type: EventType,
        attributes: dict,
        old_attributes: Optional[dict] = None,
    ) -> ChangeEvent:
        with self._changed:
            event = ChangeEvent(
                partition_key=partition_key,
                sequence_number=next(self._sequence),
                event_type=event_type,
                attributes=attributes,
                approximate_arrival_time=self._clock(),
                old_attributes=old_attributes or {},
            )
            self._publish(event)

        return event

    def redeliver(self, event: ChangeEvent) -> None:
        """Emit an already committed event again, as a failover would."""
        with self._changed:
            self._publish(event)

    def trim(self) -> int:
        cutoff = self._clock() - self.retention

        with self._changed:
            expired = 0
            while expired < len(self._entries) and \
                    self._entries[expired].approximate_arrival_time < cutoff:
                expired += 1

            del self._entries[:expired]
            self._first_position += expired

        if expired:
            logger.debug(f"Trimmed {expired} events past retention")

        return expired

    def subscribe(
        self,
        partition_filter: Optional[Callable[[str], bool]] = None,
        starting_position: str = EARLIEST,
        idle_timeout: Optional[float] = None,
    ) -> Iterator[ChangeEvent]:
        """
        Lazily yield events from starting_position on. With idle_timeout
        None the generator waits for new commits forever, otherwise it
        returns after idle_timeout seconds without one.
        """
        position = self._start(starting_position)

        return self._follow(position, partition_filter, idle_timeout)

    def read_batches(
        self,
        batch_size: int = 10,
        starting_position: str = EARLIEST,
        partition_filter: Optional[Callable[[str], bool]] = None,
        idle_timeout: float = 0.0,
    ) -> Iterator[list]:
        position = self._start(starting_position)

        return self._batches(position, batch_size, partition_filter, idle_timeout)

    def _follow(self, position: int, partition_filter, idle_timeout) -> Iterator[ChangeEvent]:
        while True:
            events, position = self._read(position, None, partition_filter)
            if events:
                yield from events
                continue

            if not self._wait(position, idle_timeout):
                return

    def _batches(self, position: int, batch_size: int, partition_filter, idle_timeout) -> Iterator[list]:
        while True:
            events, position = self._read(position, batch_size, partition_filter)
            if events:
                yield events
                continue

            if not self._wait(position, idle_timeout):
                return

    def _publish(self, event: ChangeEvent) -> None:
        self._entries.append(event)
        self._changed.notify_all()

    def _start(self, starting_position: str) -> int:
        _check_position(starting_position)
        self.trim()

        if starting_position == LATEST:
            return self.end_position

        with self._changed:
            return self._first_position

    def _read(self, position: int, limit: Optional[int], partition_filter) -> tuple:
        with self._changed:
            if position < self._first_position:
                logger.warning(
                    f"Reader at {position} fell behind retention, "
                    f"skipping to {self._first_position}")
                position = self._first_position

            events = []
            while position < self._first_position + len(self._entries):
                if limit is not None and len(events) >= limit:
                    break

                event = self._entries[position - self._first_position]
                position += 1
                if partition_filter is None or partition_filter(event.partition_key):
                    events.append(event)

        return events, position

    def _wait(self, position: int, timeout: Optional[float]) -> bool:
        with self._changed:
            return self._changed.wait_for(
                lambda: self._first_position + len(self._entries) > position,
                timeout=timeout,
            )


class DynamoDBStreamSource:
    """
    The ChangeLog contract over a DynamoDB stream, read shard by shard
    through the dynamodbstreams client.
    """

    def __init__(
        self,
        client,
        stream_arn: str,
        max_attempts: int = 3,
        backoff: float = 0.5,
        sleep: Callable[[float], None] = sleep,
    ) -> None:
        self.client = client
        self.stream_arn = stream_arn
        self.max_attempts = max_attempts
        self.backoff = backoff
        self._sleep = sleep

    def shards(self) -> list:
        shards = []
        params = {"StreamArn": self.stream_arn}

        while True:
            response = self._call("describe_stream", **params)
            description = response["StreamDescription"]
            shards.extend(description.get("Shards", []))

            last_shard_id = description.get("LastEvaluatedShardId")
            if not last_shard_id:
                return shards
            params["ExclusiveStartShardId"] = last_shard_id

    def read_batches(
        self,
        batch_size: int = 10,
        starting_position: str = EARLIEST,
        partition_filter: Optional[Callable[[str], bool]] = None,
        max_empty_polls: Optional[int] = 1,
    ) -> Iterator[list]:
        """
        Yield lists of at most batch_size events. Shards are polled in
        turn; a shard stops being polled once it is closed or returned
        max_empty_polls empty pages in a row (None polls forever).
        """
        _check_position(starting_position)
        iterators = {}
        empty_polls = {}

        for shard in self.shards():
            response = self._call(
                "get_shard_iterator",
                ShardId=shard["ShardId"],
                ShardIteratorType=SHARD_ITERATOR_TYPES[starting_position],
                StreamArn=self.stream_arn,
            )
            iterators[shard["ShardId"]] = response["ShardIterator"]
            empty_polls[shard["ShardId"]] = 0

        while iterators:
            for shard_id in list(iterators):
                response = self._call(
                    "get_records",
                    Limit=batch_size,
                    ShardIterator=iterators[shard_id],
                )
                events = [
                    from_stream_record(record)
                    for record in response.get("Records", [])
                ]
                if partition_filter is not None:
                    events = [
                        event for event in events
                        if partition_filter(event.partition_key)
                    ]

                next_iterator = response.get("NextShardIterator")
                if events:
                    empty_polls[shard_id] = 0
                    yield events
                else:
                    empty_polls[shard_id] += 1

                exhausted = max_empty_polls is not None and \
                    empty_polls[shard_id] >= max_empty_polls
                if next_iterator is None or exhausted:
                    del iterators[shard_id]
                else:
                    iterators[shard_id] = next_iterator

    def subscribe(
        self,
        partition_filter: Optional[Callable[[str], bool]] = None,
        starting_position: str = EARLIEST,
        max_empty_polls: Optional[int] = None,
    ) -> Iterator[ChangeEvent]:
        for batch in self.read_batches(
            starting_position=starting_position,
            partition_filter=partition_filter,
            max_empty_polls=max_empty_polls,
        ):
            yield from batch

    def _call(self, operation: str, **params) -> dict:
        for attempt in range(self.max_attempts):
            try:
                return getattr(self.client, operation)(**params)
            except (BotoCoreError, ClientError) as error:
                last_error = error
                logger.warning(f"Try number {attempt + 1} of {operation} failed: {error}")

            if attempt + 1 < self.max_attempts:
                self._sleep(self.backoff * 2 ** attempt)

        raise TransientSourceError(
            f"{operation} on {self.stream_arn} failed after "
            f"{self.max_attempts} attempts: {last_error}")
