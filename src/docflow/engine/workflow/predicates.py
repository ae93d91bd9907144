"""Typed field access and condition evaluation.

Definitions reference document data through :class:`FieldPath` values that are
validated when the definition is built. Resolution-time code never parses
paths, it only reads them.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer, model_validator

from .events import DocumentReadyEvent

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class FieldRoot(str, Enum):
    DOCUMENT = "document"
    FIELDS = "fields"
    CONTEXT = "context"


DOCUMENT_ATTRIBUTES: frozenset[str] = frozenset(
    {"document_id", "document_type", "tags", "owner_id", "organization_id"}
)

_MISSING = object()


@dataclass(frozen=True, slots=True)
class FieldPath:
    root: FieldRoot
    name: str

    def __str__(self) -> str:
        return f"{self.root.value}.{self.name}"

    @classmethod
    def parse(cls, raw: object) -> FieldPath:
        if isinstance(raw, FieldPath):
            return raw
        if not isinstance(raw, str):
            raise ValueError(f"Field path must be a string, got {type(raw).__name__}")
        root_raw, sep, name = raw.strip().partition(".")
        if not sep:
            raise ValueError(f"Field path {raw!r} must look like '<root>.<name>'")
        try:
            root = FieldRoot(root_raw)
        except ValueError:
            roots = ", ".join(r.value for r in FieldRoot)
            raise ValueError(
                f"Unknown field root {root_raw!r} (expected one of: {roots})"
            ) from None
        if not _NAME_RE.match(name):
            raise ValueError(f"Invalid field name {name!r} in path {raw!r}")
        if root is FieldRoot.DOCUMENT and name not in DOCUMENT_ATTRIBUTES:
            raise ValueError(f"Unknown document attribute {name!r}")
        return cls(root=root, name=name)


FieldPathValue = Annotated[
    FieldPath,
    BeforeValidator(FieldPath.parse),
    PlainSerializer(str, return_type=str),
]


@dataclass(frozen=True, slots=True)
class EvaluationContext:
    """Everything a predicate or dynamic rule may read."""

    document: DocumentReadyEvent
    context: Mapping[str, object]

    def read(self, path: FieldPath) -> object:
        """Return the value at ``path`` or the module-level missing sentinel."""

        if path.root is FieldRoot.DOCUMENT:
            return getattr(self.document, path.name)
        if path.root is FieldRoot.FIELDS:
            return self.document.extracted_fields.get(path.name, _MISSING)
        return self.context.get(path.name, _MISSING)

    def get(self, path: FieldPath, default: object = None) -> object:
        value = self.read(path)
        return default if value is _MISSING else value


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_THAN = "less_than"
    LESS_OR_EQUAL = "less_or_equal"
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "not_in"


def as_number(value: object) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int | float | str):
        try:
            number = Decimal(str(value).strip().replace(",", "."))
        except InvalidOperation:
            return None
        return number if number.is_finite() else None
    return None


def _equal(left: object, right: object) -> bool:
    a, b = as_number(left), as_number(right)
    if a is not None and b is not None:
        return a == b
    return left == right


def _contains(container: object, needle: object) -> bool:
    if isinstance(container, str):
        return isinstance(needle, str) and needle.lower() in container.lower()
    if isinstance(container, Sequence | set | frozenset):
        return any(_equal(item, needle) for item in container)
    return False


class FieldCondition(BaseModel):
    """A single ``field operator value`` test."""

    field: FieldPathValue
    operator: Operator
    value: Any = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_operand_shape(self) -> FieldCondition:
        if self.operator is Operator.BETWEEN:
            if not isinstance(self.value, list | tuple) or len(self.value) != 2:
                raise ValueError("'between' needs a two-element [low, high] value")
        if self.operator in (Operator.IN, Operator.NOT_IN):
            if not isinstance(self.value, list | tuple | set | frozenset):
                raise ValueError(f"'{self.operator.value}' needs a list value")
        return self

    def evaluate(self, ctx: EvaluationContext) -> bool:
        actual = ctx.read(self.field)
        op = self.operator
        if actual is _MISSING:
            return op in (Operator.NOT_EQUALS, Operator.NOT_IN)

        if op is Operator.EQUALS:
            return _equal(actual, self.value)
        if op is Operator.NOT_EQUALS:
            return not _equal(actual, self.value)
        if op is Operator.CONTAINS:
            return _contains(actual, self.value)
        if op is Operator.IN:
            return any(_equal(actual, candidate) for candidate in self.value)
        if op is Operator.NOT_IN:
            return not any(_equal(actual, candidate) for candidate in self.value)

        number = as_number(actual)
        if number is None:
            return False
        if op is Operator.BETWEEN:
            low, high = as_number(self.value[0]), as_number(self.value[1])
            if low is None or high is None:
                return False
            return low <= number <= high

        bound = as_number(self.value)
        if bound is None:
            return False
        if op is Operator.GREATER_THAN:
            return number > bound
        if op is Operator.GREATER_OR_EQUAL:
            return number >= bound
        if op is Operator.LESS_THAN:
            return number < bound
        return number <= bound


class Predicate(BaseModel):
    """A conjunction of conditions. An empty predicate always holds."""

    conditions: list[FieldCondition] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    def holds(self, ctx: EvaluationContext) -> bool:
        return all(condition.evaluate(ctx) for condition in self.conditions)
