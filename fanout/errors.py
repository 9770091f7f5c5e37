class FanoutError(Exception):
    pass


class ConfigurationError(FanoutError):
    pass


class TransientSourceError(FanoutError):
    """The change log could not be read. Retry, nothing is lost."""


class MalformedEventError(FanoutError):
    def __init__(self, field: str, event_key: tuple) -> None:
        super().__init__(f"Cannot build a message from {event_key}: missing {field}")
        self.field = field
        self.event_key = event_key


class DestinationUnavailableError(FanoutError):
    def __init__(self, destination: str, reason: str = "") -> None:
        super().__init__(f"Destination {destination} unavailable: {reason}")
        self.destination = destination
        self.reason = reason


class ConsumerHandlerError(FanoutError):
    def __init__(self, message_id: str, cause: BaseException) -> None:
        super().__init__(f"Handler failed for {message_id}: {cause}")
        self.message_id = message_id
        self.cause = cause


class RedriveExhaustedError(FanoutError):
    """Terminal: the message now lives in the dead-letter queue."""

    def __init__(self, queue: str, message_id: str, receive_count: int) -> None:
        super().__init__(
            f"Message {message_id} on {queue} dead-lettered after "
            f"{receive_count} receives")
        self.queue = queue
        self.message_id = message_id
        self.receive_count = receive_count
