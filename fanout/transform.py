from dataclasses import (
    dataclass,
)
from re import (
    compile as compile_regex,
)
from typing import (
    Optional,
)

from fanout.errors import (
    MalformedEventError,
)
from fanout.events import (
    NEW_IMAGE,
    ChangeEvent,
    OutboundMessage,
)
from fanout.filtering import (
    MISSING,
    image_path,
    resolve,
)

TRACE_PARENT_PATH = (NEW_IMAGE, "TraceParent")
PARENT_SPAN_PATH = (NEW_IMAGE, "ParentSpan")

# "email_address": <$.dynamodb.NewImage.EmailAddress.S>
TEMPLATE_FIELD = compile_regex(r'"(?P<key>[^"]+)"\s*:\s*<\$\.(?P<path>[^>]+)>')


@dataclass(frozen=True)
class MessageTemplate:
    """
    Builds a message body from (key, image, path) fields, where image is
    the stream image the dotted attribute path is read from.
    """

    fields: tuple
    required: frozenset = None
    trace_parent_path: tuple = TRACE_PARENT_PATH
    parent_span_path: tuple = PARENT_SPAN_PATH

    def __post_init__(self) -> None:
        if self.required is None:
            object.__setattr__(
                self, "required", frozenset(key for key, _, _ in self.fields))

    @classmethod
    def of(cls, required: Optional[list] = None, **fields) -> "MessageTemplate":
        return cls(
            fields=tuple(
                (key, NEW_IMAGE, path)
                for key, path in fields.items()
            ),
            required=None if required is None else frozenset(required),
        )

    @classmethod
    def from_input_template(cls, text: str) -> "MessageTemplate":
        fields = []
        trace_parent_path = TRACE_PARENT_PATH
        parent_span_path = PARENT_SPAN_PATH

        for match in TEMPLATE_FIELD.finditer(text):
            key = match.group("key")
            image, path, _ = image_path(match.group("path"))

            if key == "trace_parent":
                trace_parent_path = (image, path)
            elif key == "parent_span":
                parent_span_path = (image, path)
            else:
                fields.append((key, image, path))

        if not fields:
            raise ValueError("Input template references no event fields")

        return cls(
            fields=tuple(fields),
            trace_parent_path=trace_parent_path,
            parent_span_path=parent_span_path,
        )

    def transform(self, event: ChangeEvent) -> OutboundMessage:
        body = {}

        for key, image, path in self.fields:
            value = resolve(event.image(image), path)

            if value is MISSING:
                if key in self.required:
                    raise MalformedEventError(path, event.key)
                value = None

            body[key] = value

        return OutboundMessage(
            body=body,
            trace_parent=self._optional(event, self.trace_parent_path),
            parent_span=self._optional(event, self.parent_span_path),
            source_key=event.key,
        )

    def __call__(self, event: ChangeEvent) -> OutboundMessage:
        return self.transform(event)

    @staticmethod
    def _optional(event: ChangeEvent, image_and_path: tuple) -> Optional[str]:
        image, path = image_and_path
        value = resolve(event.image(image), path)

        return None if value is MISSING else value

