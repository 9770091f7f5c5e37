from aws_lambda_powertools import (
    Logger,
)
from dataclasses import (
    dataclass,
    field,
)
from os import (
    getenv,
)
from time import (
    sleep,
)
from typing import (
    Any,
    Callable,
    Iterable,
)

from fanout.errors import (
    DestinationUnavailableError,
    MalformedEventError,
)
from fanout.events import (
    ChangeEvent,
    OutboundMessage,
)
from fanout.filtering import (
    RoutePattern,
    matches,
)

logger = Logger(
    level=getenv("LOG_LEVEL", "DEBUG"),
    service="fanout",
)


@dataclass(frozen=True)
class RouteDefinition:
    id: str
    pattern: RoutePattern
    transform: Callable[[ChangeEvent], OutboundMessage]
    destination: Any


@dataclass
class RouteStats:
    matched: int = 0
    enqueued: int = 0
    dropped: int = 0
    escalated: int = 0


@dataclass
class DispatchReport:
    event_key: tuple
    matched: list = field(default_factory=list)
    enqueued: list = field(default_factory=list)
    dropped: list = field(default_factory=list)
    escalated: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.escalated


@dataclass(frozen=True)
class Escalation:
    route_id: str
    message: OutboundMessage
    error: DestinationUnavailableError


class FanoutRouter:
    """
    Offers every change event to every route. Routes are fixed at
    construction; a failure on one (route, event) pair never stops the
    other routes or later events.
    """

    def __init__(
        self,
        routes: Iterable[RouteDefinition],
        max_enqueue_attempts: int = 3,
        backoff: float = 0.1,
        sleep: Callable[[float], None] = sleep,
    ) -> None:
        self.routes = tuple(routes)
        route_ids = [route.id for route in self.routes]
        if len(set(route_ids)) != len(route_ids):
            raise ValueError(f"Duplicate route ids in {route_ids}")

        if max_enqueue_attempts < 1:
            raise ValueError("max_enqueue_attempts must be at least 1")

        self.max_enqueue_attempts = max_enqueue_attempts
        self.backoff = backoff
        self.stats = {route.id: RouteStats() for route in self.routes}
        self.escalations = []
        self._sleep = sleep

    def dispatch(self, event: ChangeEvent) -> DispatchReport:
        report = DispatchReport(event_key=event.key)

        for route in self.routes:
            if not matches(event, route.pattern):
                continue

            stats = self.stats[route.id]
            stats.matched += 1
            report.matched.append(route.id)

            try:
                message = route.transform(event)
            except MalformedEventError as error:
                logger.warning(f"Route {route.id} dropped {event.key}: {error}")
                stats.dropped += 1
                report.dropped.append(route.id)
                continue
            except Exception:
                logger.exception(f"Route {route.id} failed to transform {event.key}")
                stats.dropped += 1
                report.dropped.append(route.id)
                continue

            if self._enqueue(route, message):
                stats.enqueued += 1
                report.enqueued.append(route.id)
            else:
                stats.escalated += 1
                report.escalated.append(route.id)

        return report

    def run(self, events: Iterable[ChangeEvent]) -> list:
        return [self.dispatch(event) for event in events]

    def run_batches(self, batches: Iterable[list]) -> list:
        """Dispatch batches as a source's read_batches yields them, one report list per batch."""
        reports = []

        for batch in batches:
            reports.append(self.run(batch))
            logger.debug(f"Dispatched a batch of {len(batch)} events")

        return reports

    def _enqueue(self, route: RouteDefinition, message: OutboundMessage) -> bool:
        for attempt in range(self.max_enqueue_attempts):
            try:
                route.destination.enqueue(message)

                return True
            except DestinationUnavailableError as error:
                last_error = error
                logger.warning(
                    f"Try number {attempt + 1} to enqueue to {route.id} failed: {error}")

            if attempt + 1 < self.max_enqueue_attempts:
                self._sleep(self.backoff * 2 ** attempt)

        logger.error(
            f"Max number of retries {self.max_enqueue_attempts} exceeded "
            f"for route {route.id}, escalating {message.source_key}")
        self.escalations.append(Escalation(route.id, message, last_error))

        return False
