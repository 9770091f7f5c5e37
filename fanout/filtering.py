from collections.abc import (
    Hashable,
    Mapping,
)
from dataclasses import (
    dataclass,
)
from decimal import (
    Decimal,
    InvalidOperation,
)
from json import (
    loads,
)
from typing import (
    Any,
)

from fanout.events import (
    NEW_IMAGE,
    OLD_IMAGE,
    ChangeEvent,
)

IMAGE_PREFIXES = {
    f"dynamodb.{NEW_IMAGE}.": NEW_IMAGE,
    f"dynamodb.{OLD_IMAGE}.": OLD_IMAGE,
}
TYPE_DESCRIPTORS = ("S", "N", "BOOL")
MISSING = object()


@dataclass(frozen=True)
class RoutePattern:
    """
    Attribute path to the set of literals it must equal, e.g.
    RoutePattern.of(Type=["SubscriberToken"]). Paths are dotted and
    resolve into nested attribute maps of the new image unless the
    pattern names the old one ("dynamodb.OldImage.Type.S").
    """

    conditions: tuple

    @classmethod
    def of(cls, mapping: dict = None, **paths) -> "RoutePattern":
        merged = dict(mapping or {}, **paths)

        return cls(conditions=tuple(
            (NEW_IMAGE, path, frozenset(literals))
            for path, literals in sorted(merged.items())
        ))

    @classmethod
    def from_json(cls, text: str) -> "RoutePattern":
        """
        Parse a stream filter pattern such as
        '{"dynamodb.NewImage.Type.S": ["SubscriberToken"]}'.
        """
        conditions = {}

        for path, literals in _flatten(loads(text)):
            if not isinstance(literals, list):
                raise ValueError(f"Pattern values must be lists, got {path}")
            if any(isinstance(literal, (dict, list)) for literal in literals):
                raise ValueError(f"Only literal matching is supported for {path}")

            image, path, descriptor = image_path(path)
            if descriptor == "N":
                literals = [_to_number(literal) for literal in literals]

            conditions[(image, path)] = frozenset(literals)

        return cls(conditions=tuple(
            (image, path, literals)
            for (image, path), literals in sorted(conditions.items())
        ))

    @property
    def paths(self) -> list:
        return [path for _, path, _ in self.conditions]


def image_path(path: str) -> tuple:
    """
    "dynamodb.OldImage.Type.S" -> ("OldImage", "Type", "S"). Paths without
    an image prefix refer to the new image, a missing type descriptor comes
    back as None.
    """
    image = NEW_IMAGE
    for prefix, name in IMAGE_PREFIXES.items():
        if path.startswith(prefix):
            path, image = path[len(prefix):], name
            break

    head, _, descriptor = path.rpartition(".")
    if head and descriptor in TYPE_DESCRIPTORS:
        return image, head, descriptor

    return image, path, None


def _flatten(node: dict, prefix: str = ""):
    for key, value in node.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            yield from _flatten(value, f"{path}.")
        else:
            yield path, value


def _to_number(literal: Any) -> Any:
    try:
        return Decimal(str(literal))
    except InvalidOperation:
        return literal


def resolve(attributes: Mapping, path: str) -> Any:
    node = attributes
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return MISSING
        node = node[part]

    return node


def matches(event: ChangeEvent, pattern: RoutePattern) -> bool:
    for image, path, literals in pattern.conditions:
        value = resolve(event.image(image), path)

        if value is MISSING or not isinstance(value, Hashable):
            return False
        if value not in literals:
            return False

    return True
