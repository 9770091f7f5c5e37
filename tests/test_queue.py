from pytest import (
    fixture,
    raises,
)
from threading import (
    Thread,
)
from time import (
    sleep,
)

from fanout.errors import (
    DestinationUnavailableError,
    RedriveExhaustedError,
)
from fanout.events import (
    OutboundMessage,
)
from fanout.queue import (
    DurableQueue,
    RedrivePolicy,
)
from tests.fixtures import (
    FakeClock,
    clock,
)


def message(number: int) -> OutboundMessage:
    return OutboundMessage(body={"number": number}, source_key=("p", number))


@fixture
def dead_letter() -> DurableQueue:
    yield DurableQueue("new-subscriber-dlq")


@fixture
def queue(clock: FakeClock, dead_letter: DurableQueue) -> DurableQueue:
    queue = DurableQueue(
        "new-subscriber",
        visibility_timeout=30.0,
        redrive_policy=RedrivePolicy(max_receive_count=5, dead_letter=dead_letter),
        clock=clock,
    )

    yield queue


def test_receive_respects_max_size_and_order(queue: DurableQueue) -> None:
    for number in range(15):
        queue.enqueue(message(number))

    batch = queue.receive_batch(max_size=10)

    assert len(batch) == 10
    assert [queued.message.body["number"] for queued in batch] == list(range(10))
    assert all(queued.receive_count == 1 for queued in batch)


def test_received_message_is_invisible_until_timeout(queue: DurableQueue, clock: FakeClock) -> None:
    message_id = queue.enqueue(message(1))

    first = queue.receive_batch()
    hidden = queue.receive_batch()
    clock.advance(30.0)
    again = queue.receive_batch()

    assert first.message_ids == [message_id]
    assert len(hidden) == 0
    assert again.message_ids == [message_id]
    assert again.messages[0].receive_count == 2


def test_ack_removes_message(queue: DurableQueue, clock: FakeClock) -> None:
    queue.enqueue(message(1))
    batch = queue.receive_batch()

    assert queue.ack_batch(batch.message_ids) == batch.message_ids
    clock.advance(60.0)
    assert len(queue.receive_batch()) == 0
    assert len(queue) == 0


def test_nack_redelivers_with_receive_count_plus_one(queue: DurableQueue) -> None:
    queue.enqueue(message(1))
    first = queue.receive_batch()

    queue.nack_batch(first.message_ids)
    second = queue.receive_batch()

    assert second.message_ids == first.message_ids
    assert second.messages[0].receive_count == first.messages[0].receive_count + 1


def test_nack_backoff_delays_visibility(queue: DurableQueue, clock: FakeClock) -> None:
    queue.enqueue(message(1))
    queue.nack_batch(queue.receive_batch().message_ids, backoff=5.0)

    assert len(queue.receive_batch()) == 0
    clock.advance(5.0)
    assert len(queue.receive_batch()) == 1


def test_redelivered_message_keeps_its_place(queue: DurableQueue) -> None:
    for number in range(3):
        queue.enqueue(message(number))
    batch = queue.receive_batch(max_size=1)

    queue.nack_batch(batch.message_ids)
    numbers = [queued.message.body["number"] for queued in queue.receive_batch()]

    assert numbers == [0, 1, 2]


def test_sixth_delivery_goes_to_dead_letter_instead(
    queue: DurableQueue,
    dead_letter: DurableQueue,
) -> None:
    exhausted = []
    queue.on_dead_letter = exhausted.append
    message_id = queue.enqueue(message(1))

    for attempt in range(1, 6):
        batch = queue.receive_batch()
        assert batch.messages[0].receive_count == attempt
        queue.nack_batch(batch.message_ids)
        assert len(dead_letter) == 0

    sixth = queue.receive_batch()
    assert sixth.messages[0].receive_count == 6
    queue.nack_batch(sixth.message_ids)

    assert len(queue.receive_batch()) == 0
    assert len(queue) == 0
    assert [queued.message_id for queued in dead_letter.messages()] == [message_id]
    assert dead_letter.messages()[0].receive_count == 6
    assert isinstance(exhausted[0], RedriveExhaustedError)
    assert exhausted[0].receive_count == 6


def test_visibility_timeout_expiry_also_counts_towards_redrive(
    dead_letter: DurableQueue,
    clock: FakeClock,
) -> None:
    queue = DurableQueue(
        "send-newsletter",
        visibility_timeout=10.0,
        redrive_policy=RedrivePolicy(max_receive_count=2, dead_letter=dead_letter),
        clock=clock,
    )
    queue.enqueue(message(1))

    for _ in range(3):
        assert len(queue.receive_batch()) == 1
        clock.advance(10.0)

    assert len(queue.receive_batch()) == 0
    assert len(dead_letter) == 1


def test_redrive_policy_needs_positive_threshold(dead_letter: DurableQueue) -> None:
    with raises(ValueError):
        RedrivePolicy(max_receive_count=0, dead_letter=dead_letter)


def test_full_queue_rejects_enqueue() -> None:
    queue = DurableQueue("small", capacity=1, enqueue_timeout=0.0)
    queue.enqueue(message(1))

    with raises(DestinationUnavailableError):
        queue.enqueue(message(2))


def test_full_queue_accepts_enqueue_once_room_frees_up() -> None:
    queue = DurableQueue("small", capacity=1, enqueue_timeout=5.0)
    queue.enqueue(message(1))
    batch = queue.receive_batch()

    def ack_later() -> None:
        sleep(0.05)
        queue.ack_batch(batch.message_ids)

    worker = Thread(target=ack_later)
    worker.start()
    queue.enqueue(message(2))
    worker.join()

    assert [queued.message.body["number"] for queued in queue.messages()] == [2]


def test_receive_waits_for_enqueue() -> None:
    queue = DurableQueue("waiting")

    def enqueue_later() -> None:
        sleep(0.05)
        queue.enqueue(message(1))

    worker = Thread(target=enqueue_later)
    worker.start()
    batch = queue.receive_batch(max_wait_time=5.0)
    worker.join()

    assert len(batch) == 1


def test_receive_returns_empty_after_wait_bound() -> None:
    queue = DurableQueue("idle")

    assert len(queue.receive_batch(max_wait_time=0.01)) == 0
