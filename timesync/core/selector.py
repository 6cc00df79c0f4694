"""
Label selector compilation and matching (pure, no I/O).

Semantics follow Kubernetes `metav1.LabelSelector`:
- `matchLabels` entries and `matchExpressions` requirements are AND-ed.
- A selector with no requirements matches every label set.
- `NotIn` / `DoesNotExist` match when the key is absent.

Compilation validates operators, value sets and label key/value syntax; any violation
raises `SelectorParseError` so callers can skip the offending policy.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from timesync.core.errors import SelectorParseError
from timesync.core.models import LabelSelector

_NAME_RE = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
_DNS1123_SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_NAME_MAX = 63
_PREFIX_MAX = 253


class Operator(str, Enum):
    EQUALS = "="
    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


def _validate_key(key: str) -> None:
    if not key:
        raise SelectorParseError("label key must not be empty", field="key")
    prefix, sep, name = key.rpartition("/")
    if sep:
        if not prefix or len(prefix) > _PREFIX_MAX or not _DNS1123_SUBDOMAIN_RE.match(prefix):
            raise SelectorParseError(f"invalid label key prefix in {key!r}", field="key")
    if len(name) > _NAME_MAX or not _NAME_RE.match(name):
        raise SelectorParseError(f"invalid label key {key!r}", field="key")


def _validate_value(key: str, value: str) -> None:
    if not isinstance(value, str):
        raise SelectorParseError(f"label value for {key!r} must be a string", field="values")
    # Empty values are legal label values.
    if value and (len(value) > _NAME_MAX or not _NAME_RE.match(value)):
        raise SelectorParseError(f"invalid label value {value!r} for key {key!r}", field="values")


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: Operator
    values: Tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        present = self.key in labels
        if self.operator in (Operator.EQUALS, Operator.IN):
            return present and labels[self.key] in self.values
        if self.operator is Operator.NOT_IN:
            return not present or labels[self.key] not in self.values
        if self.operator is Operator.EXISTS:
            return present
        return not present

    def __str__(self) -> str:
        if self.operator is Operator.EQUALS:
            return f"{self.key}={self.values[0]}"
        if self.operator is Operator.EXISTS:
            return self.key
        if self.operator is Operator.DOES_NOT_EXIST:
            return f"!{self.key}"
        word = "in" if self.operator is Operator.IN else "notin"
        return f"{self.key} {word} ({','.join(self.values)})"


@dataclass(frozen=True)
class Selector:
    """A compiled selector. Requirements are kept sorted by key for a stable string form."""

    requirements: Tuple[Requirement, ...] = ()

    def empty(self) -> bool:
        return not self.requirements

    def matches(self, labels: Optional[Mapping[str, str]]) -> bool:
        labels = labels or {}
        return all(r.matches(labels) for r in self.requirements)

    def __str__(self) -> str:
        return ",".join(str(r) for r in self.requirements)


def _new_requirement(key: str, operator: Any, values: Any) -> Requirement:
    _validate_key(key)
    try:
        op = Operator(operator)
    except ValueError:
        raise SelectorParseError(f"{operator!r} is not a valid label selector operator", field="operator") from None
    if op is Operator.EQUALS:
        raise SelectorParseError("'=' is only valid through matchLabels", field="operator")

    vals = tuple(values or ())
    if op in (Operator.IN, Operator.NOT_IN) and not vals:
        raise SelectorParseError(f"values must be non-empty for operator {op.value} on key {key!r}", field="values")
    if op in (Operator.EXISTS, Operator.DOES_NOT_EXIST) and vals:
        raise SelectorParseError(f"values must be empty for operator {op.value} on key {key!r}", field="values")
    for v in vals:
        _validate_value(key, v)
    return Requirement(key=key, operator=op, values=tuple(sorted(set(vals))))


def parse_selector(selector: Union[LabelSelector, Mapping[str, Any], None]) -> Selector:
    """
    Compile a label selector into a `Selector`.

    Accepts the model or a raw wire dict (`{"matchLabels": ..., "matchExpressions": ...}`).
    `None` compiles to the empty selector, which matches everything.
    """
    if selector is None:
        return Selector()
    if not isinstance(selector, LabelSelector):
        try:
            selector = LabelSelector.model_validate(selector)
        except ValidationError as e:
            raise SelectorParseError(f"malformed label selector: {e}") from e

    reqs = []
    for key, value in selector.match_labels.items():
        _validate_key(key)
        _validate_value(key, value)
        reqs.append(Requirement(key=key, operator=Operator.EQUALS, values=(value,)))
    for expr in selector.match_expressions:
        reqs.append(_new_requirement(expr.key, expr.operator, expr.values))

    reqs.sort(key=lambda r: r.key)
    return Selector(requirements=tuple(reqs))


def matches(selector: Union[LabelSelector, Mapping[str, Any], None], labels: Optional[Mapping[str, str]]) -> bool:
    """Return whether `labels` satisfy `selector`. Raises `SelectorParseError` on a malformed selector."""
    return parse_selector(selector).matches(labels)
