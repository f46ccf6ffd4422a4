"""Attribute expressions: literals, references and string templates.

Declared attribute values are plain data (strings, numbers, booleans, lists,
mappings) in which strings may embed ``${...}`` expressions:

- ``${type.name.attr}`` or ``${type.name["key"].attr.sub[0]}`` reference an
  attribute of another resource instance,
- ``${each.key}`` / ``${each.value.path}`` refer to the current ``for_each``
  instance and are substituted when the block is expanded,
- ``$${`` escapes a literal ``${``.

A string that consists of exactly one expression becomes the expression
itself, so references keep the type of the value they point at. Any other
string with expressions becomes a ``Template``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, Literal

from converge.domain.errors import InvalidAttributeError

from .address import IDENTIFIER_RE, ResourceAddress

if TYPE_CHECKING:
    from collections.abc import Iterator

type PathElement = str | int
type AttributePath = tuple[PathElement, ...]

_EXPRESSION_RE: Final[re.Pattern[str]] = re.compile(r"\$\$\{|\$\{([^}]*)\}")
_HEAD_RE: Final[re.Pattern[str]] = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_SEGMENT_RE: Final[re.Pattern[str]] = re.compile(
    r'\.(?P<attr>[A-Za-z_][A-Za-z0-9_-]*)|\["(?P<key>[^"]*)"\]|\[(?P<index>\d+)\]'
)


def format_path(path: AttributePath) -> str:
    parts: list[str] = []
    for element in path:
        if isinstance(element, int):
            parts.append(f"[{element}]")
        elif IDENTIFIER_RE.match(element):
            parts.append(f".{element}")
        else:
            parts.append(f'["{element}"]')
    return "".join(parts)


@dataclass(frozen=True, slots=True)
class Reference:
    """Deferred slot filled with another resource's attribute once it is known."""

    target: ResourceAddress
    path: AttributePath

    def __str__(self) -> str:
        return f"${{{self.target}{format_path(self.path)}}}"

    @property
    def attribute(self) -> str:
        head = self.path[0]
        return head if isinstance(head, str) else str(head)


@dataclass(frozen=True, slots=True)
class EachReference:
    """``each.key`` or ``each.value`` inside a ``for_each`` block."""

    field: Literal["key", "value"]
    path: AttributePath = ()

    def __str__(self) -> str:
        return f"${{each.{self.field}{format_path(self.path)}}}"


type TemplatePart = str | Reference | EachReference


@dataclass(frozen=True, slots=True)
class Template:
    """String with embedded expressions, rendered once every part is known."""

    parts: tuple[TemplatePart, ...]

    def __str__(self) -> str:
        return "".join(
            part.replace("${", "$${") if isinstance(part, str) else str(part)
            for part in self.parts
        )


@dataclass(frozen=True, slots=True)
class _Segment:
    kind: Literal["attr", "key", "index"]
    value: PathElement


def _split_segments(text: str) -> tuple[str, list[_Segment]]:
    source = text.strip()
    head_match = _HEAD_RE.match(source)
    if head_match is None:
        raise InvalidAttributeError(f"Invalid expression: ${{{text}}}")

    segments: list[_Segment] = []
    position = head_match.end()
    while position < len(source):
        match = _SEGMENT_RE.match(source, position)
        if match is None:
            raise InvalidAttributeError(f"Invalid expression: ${{{text}}}")
        if match["attr"] is not None:
            segments.append(_Segment("attr", match["attr"]))
        elif match["key"] is not None:
            segments.append(_Segment("key", match["key"]))
        else:
            segments.append(_Segment("index", int(match["index"])))
        position = match.end()
    return head_match.group(), segments


def parse_expression(text: str) -> Reference | EachReference:
    """Parse the inside of one ``${...}`` expression."""

    head, segments = _split_segments(text)
    if head == "each":
        return _parse_each(text, segments)
    return _parse_reference(text, head, segments)


def _parse_each(text: str, segments: list[_Segment]) -> EachReference:
    if not segments or segments[0].kind != "attr" or segments[0].value not in ("key", "value"):
        raise InvalidAttributeError(f"Expected each.key or each.value in ${{{text}}}")
    path = tuple(segment.value for segment in segments[1:])
    if segments[0].value == "key":
        if path:
            raise InvalidAttributeError(f"each.key has no attributes: ${{{text}}}")
        return EachReference(field="key")
    return EachReference(field="value", path=path)


def _parse_reference(text: str, head: str, segments: list[_Segment]) -> Reference:
    if not segments or segments[0].kind != "attr":
        raise InvalidAttributeError(f"Expected type.name.attribute in ${{{text}}}")
    name = str(segments[0].value)
    rest = segments[1:]
    key: str | None = None
    if rest and rest[0].kind == "key":
        key = str(rest[0].value)
        rest = rest[1:]
    if not rest:
        raise InvalidAttributeError(f"Reference needs an attribute: ${{{text}}}")
    if rest[0].kind != "attr":
        raise InvalidAttributeError(f"Cannot index a resource by position: ${{{text}}}")
    path = tuple(segment.value for segment in rest)
    return Reference(target=ResourceAddress(head, name, key), path=path)


def parse_string(value: str) -> str | Reference | EachReference | Template:
    parts: list[TemplatePart] = []
    literal: list[str] = []
    position = 0
    for match in _EXPRESSION_RE.finditer(value):
        literal.append(value[position : match.start()])
        position = match.end()
        if match.group(1) is None:
            literal.append("${")
            continue
        if any(literal):
            parts.append("".join(literal))
        literal = []
        parts.append(parse_expression(match.group(1)))
    literal.append(value[position:])
    if any(literal):
        parts.append("".join(literal))

    if not parts:
        return ""
    if len(parts) == 1:
        return parts[0]
    return Template(parts=tuple(parts))


def parse_value(value: object) -> object:
    """Recursively turn raw declared data into expression-aware values."""

    if isinstance(value, str):
        return parse_string(value)
    if isinstance(value, dict):
        return {str(key): parse_value(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [parse_value(item) for item in value]
    return value


def iter_expressions(value: object) -> Iterator[Reference | EachReference]:
    if isinstance(value, Reference | EachReference):
        yield value
    elif isinstance(value, Template):
        for part in value.parts:
            if not isinstance(part, str):
                yield part
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_expressions(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_expressions(item)


def iter_references(value: object) -> Iterator[Reference]:
    for expression in iter_expressions(value):
        if isinstance(expression, Reference):
            yield expression


def is_literal(value: object) -> bool:
    """Return whether ``value`` contains no expressions at all."""

    return next(iter_expressions(value), None) is None
