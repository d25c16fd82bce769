"""
Structured condition language for auto-approval.

Conditions are JSON-compatible mappings evaluated against a subject
attribute map, safely and without eval/exec:

- {"all": [cond, ...]}         every nested condition holds
- {"any": [cond, ...]}         at least one nested condition holds
- {"not": cond}                negation
- {"attribute": "a.b[0]", "op": "gte", "value": 3}
- {"status": "draft", ...}     shorthand for equality on each key

An empty mapping or None is unconditional.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Union


class ConditionError(Exception):
    """Raised when a condition is malformed."""

    def __init__(self, message: str, condition: Any = None):
        self.condition = condition
        super().__init__(message)


class Operator(str, Enum):
    """Supported comparison operators."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    EXISTS = "exists"


# Marks an attribute path that does not resolve
_MISSING = object()

# Matches "name" or "name[3]"
_SEGMENT_PATTERN = re.compile(r"^([a-zA-Z_][a-zA-Z0-9_\-]*)((?:\[\d+\])*)$")
_INDEX_PATTERN = re.compile(r"\[(\d+)\]")

_COMBINATOR_KEYS = {"all", "any", "not"}


def parse_path(attribute: str) -> list[Union[str, int]]:
    """
    Parse a dotted attribute path into navigation keys.

    Examples:
        "status" -> ["status"]
        "metadata.size" -> ["metadata", "size"]
        "files[0].name" -> ["files", 0, "name"]
    """
    if not isinstance(attribute, str) or not attribute.strip():
        raise ConditionError("Attribute path must be a non-empty string", attribute)

    path: list[Union[str, int]] = []
    for part in attribute.strip().split("."):
        match = _SEGMENT_PATTERN.match(part)
        if not match:
            raise ConditionError(f"Invalid attribute path segment '{part}'", attribute)
        path.append(match.group(1))
        path.extend(int(i) for i in _INDEX_PATTERN.findall(match.group(2)))
    return path


def resolve_path(attributes: Mapping[str, Any], path: list[Union[str, int]]) -> Any:
    """
    Navigate a path through nested dicts and lists.

    Only dict keys and list indices are followed; object attributes are
    never read. Returns a sentinel when the path does not resolve.
    """
    current: Any = attributes
    for key in path:
        if isinstance(key, int):
            if isinstance(current, (list, tuple)) and 0 <= key < len(current):
                current = current[key]
            else:
                return _MISSING
        elif isinstance(current, Mapping) and key in current:
            current = current[key]
        else:
            return _MISSING
    return current


@dataclass
class Comparison:
    """Compares one subject attribute against a literal value."""

    attribute: str
    op: Operator
    value: Any = None
    path: list[Union[str, int]] = field(default_factory=list)

    def evaluate(self, attributes: Mapping[str, Any]) -> bool:
        actual = resolve_path(attributes, self.path)

        if self.op == Operator.EXISTS:
            expected = True if self.value is None else bool(self.value)
            return (actual is not _MISSING) == expected

        if actual is _MISSING:
            return False

        try:
            if self.op == Operator.EQ:
                return actual == self.value
            if self.op == Operator.NE:
                return actual != self.value
            if self.op == Operator.GT:
                return actual is not None and actual > self.value
            if self.op == Operator.GTE:
                return actual is not None and actual >= self.value
            if self.op == Operator.LT:
                return actual is not None and actual < self.value
            if self.op == Operator.LTE:
                return actual is not None and actual <= self.value
            if self.op == Operator.IN:
                return actual in self.value
            if self.op == Operator.NOT_IN:
                return actual not in self.value
            if self.op == Operator.CONTAINS:
                return actual is not None and self.value in actual
        except TypeError:
            # Incompatible types never satisfy a comparison
            return False

        return False


@dataclass
class AllOf:
    """Conjunction; an empty list holds."""

    conditions: list["Condition"] = field(default_factory=list)

    def evaluate(self, attributes: Mapping[str, Any]) -> bool:
        return all(c.evaluate(attributes) for c in self.conditions)


@dataclass
class AnyOf:
    """Disjunction; an empty list does not hold."""

    conditions: list["Condition"] = field(default_factory=list)

    def evaluate(self, attributes: Mapping[str, Any]) -> bool:
        return any(c.evaluate(attributes) for c in self.conditions)


@dataclass
class Not:
    """Negation of a nested condition."""

    condition: "Condition"

    def evaluate(self, attributes: Mapping[str, Any]) -> bool:
        return not self.condition.evaluate(attributes)


Condition = Union[Comparison, AllOf, AnyOf, Not]


def parse_condition(raw: Optional[Mapping[str, Any]]) -> Condition:
    """
    Parse a raw condition mapping into an evaluable tree.

    Raises:
        ConditionError: If the condition is malformed
    """
    if raw is None:
        return AllOf([])

    if not isinstance(raw, Mapping):
        raise ConditionError(f"Condition must be a mapping, got {type(raw).__name__}", raw)

    keys = set(raw.keys())

    if keys & _COMBINATOR_KEYS:
        if len(keys) != 1:
            raise ConditionError(
                f"Combinator must be the only key in its mapping, got {sorted(keys)}", raw
            )
        key = next(iter(keys))
        if key == "not":
            return Not(parse_condition(raw["not"]))

        nested = raw[key]
        if not isinstance(nested, (list, tuple)):
            raise ConditionError(f"'{key}' expects a list of conditions", raw)
        parsed = [parse_condition(c) for c in nested]
        return AllOf(parsed) if key == "all" else AnyOf(parsed)

    if "attribute" in keys:
        return _parse_comparison(raw)

    # Shorthand: every key must equal its value
    return AllOf([
        Comparison(attribute=name, op=Operator.EQ, value=value, path=parse_path(name))
        for name, value in raw.items()
    ])


def _parse_comparison(raw: Mapping[str, Any]) -> Comparison:
    """Parse an explicit {"attribute", "op", "value"} clause."""
    unknown = set(raw.keys()) - {"attribute", "op", "value"}
    if unknown:
        raise ConditionError(f"Unknown comparison keys: {sorted(unknown)}", raw)

    try:
        op = Operator(raw.get("op", Operator.EQ.value))
    except ValueError:
        raise ConditionError(f"Unknown operator '{raw.get('op')}'", raw) from None

    if op != Operator.EXISTS and "value" not in raw:
        raise ConditionError(f"Operator '{op.value}' requires a value", raw)

    value = raw.get("value")
    if op in (Operator.IN, Operator.NOT_IN) and not isinstance(value, (list, tuple)):
        raise ConditionError(f"Operator '{op.value}' requires a list value", raw)

    attribute = raw["attribute"]
    return Comparison(attribute=attribute, op=op, value=value, path=parse_path(attribute))


def evaluate_conditions(
    raw: Optional[Mapping[str, Any]],
    attributes: Mapping[str, Any],
) -> bool:
    """
    Parse and evaluate a condition in one call.

    Convenience function for the auto-approval sweep.
    """
    return parse_condition(raw).evaluate(attributes)
