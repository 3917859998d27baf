"""Step argument values and condition expressions.

Step arguments are parsed once, when a ``WorkflowStep`` is built, into a small
expression tree: a ``Literal`` stands for itself and a ``ParamRef`` (written
``${name}`` in workflow documents) is looked up in the parameter environment of
the execution. Lists and mappings are parsed element-wise so references may be
nested inside ``args`` lists or ``env`` mappings.

Conditions are parsed into a ``Condition`` that evaluates against the same
parameter environment. Supported forms::

    ${deploy}            deploy           truthiness of a parameter
    !deploy              not deploy       negated truthiness
    env == 'prod'        env != prod      equality / inequality
    replicas > 2         retries <= 5     numeric comparisons
    true                 false            constants
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from loguru import logger

_REF_RE = re.compile(r"^\$\{([A-Za-z_][\w.-]*)\}$")
_NAME = r"(?:\$\{[A-Za-z_][\w.-]*\}|[A-Za-z_][\w.-]*)"
_NEGATED_RE = re.compile(rf"^(?:!|not\s+)\s*({_NAME})$")
_COMPARE_RE = re.compile(rf"^({_NAME})\s*(==|!=|<=|>=|<|>)\s*(.+)$")
_FALSY_STRINGS = {"", "0", "false", "no", "off", "none", "null"}


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any

    def resolve(self, params: Mapping[str, Any]) -> Any:
        return self.value

    def to_raw(self) -> Any:
        return self.value


@dataclass(frozen=True)
class ParamRef:
    """Reference to a workflow parameter by name."""

    name: str

    @property
    def literal(self) -> str:
        return "${" + self.name + "}"

    def resolve(self, params: Mapping[str, Any]) -> Any:
        # Unresolved references keep their literal spelling.
        if self.name in params:
            return params[self.name]
        return self.literal

    def to_raw(self) -> str:
        return self.literal


@dataclass(frozen=True)
class ListValue:
    items: tuple["Value", ...]

    def resolve(self, params: Mapping[str, Any]) -> list[Any]:
        return [item.resolve(params) for item in self.items]

    def to_raw(self) -> list[Any]:
        return [item.to_raw() for item in self.items]


@dataclass(frozen=True)
class MapValue:
    entries: tuple[tuple[str, "Value"], ...]

    def resolve(self, params: Mapping[str, Any]) -> dict[str, Any]:
        return {key: value.resolve(params) for key, value in self.entries}

    def to_raw(self) -> dict[str, Any]:
        return {key: value.to_raw() for key, value in self.entries}


Value = Union[Literal, ParamRef, ListValue, MapValue]


def parse_value(raw: Any) -> Value:
    """Parse a raw JSON-ish value into a ``Value`` expression."""
    if isinstance(raw, (Literal, ParamRef, ListValue, MapValue)):
        return raw
    if isinstance(raw, str):
        m = _REF_RE.match(raw.strip())
        if m:
            return ParamRef(m.group(1))
        return Literal(raw)
    if isinstance(raw, (list, tuple)):
        return ListValue(tuple(parse_value(item) for item in raw))
    if isinstance(raw, dict):
        return MapValue(tuple((str(k), parse_value(v)) for k, v in raw.items()))
    return Literal(raw)


def parse_args(raw: Optional[Mapping[str, Any]]) -> dict[str, Value]:
    return {str(key): parse_value(value) for key, value in dict(raw or {}).items()}


def resolve_args(args: Mapping[str, Value], params: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value.resolve(params) for key, value in args.items()}


def args_to_raw(args: Mapping[str, Value]) -> dict[str, Any]:
    return {key: value.to_raw() for key, value in args.items()}


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

def is_truthy(value: Any) -> bool:
    """Truthiness for parameter values, treating ``"false"``/``"0"`` strings as false."""
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)


def _strip_name(token: str) -> str:
    m = _REF_RE.match(token)
    return m.group(1) if m else token


def _strip_quotes(token: str) -> str:
    token = token.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        return token[1:-1]
    return token


def _coerce_like(actual: Any, raw: str) -> Any:
    if isinstance(actual, bool):
        return raw.strip().lower() in {"true", "1", "yes", "on"}
    if isinstance(actual, (int, float)):
        try:
            return float(raw)
        except ValueError:
            return raw
    return raw


@dataclass(frozen=True)
class Condition:
    """A parsed step condition.

    ``kind`` is one of ``constant``, ``truthy``, ``negated``, ``compare`` or
    ``opaque``. Opaque conditions could not be parsed and always evaluate true.
    """

    source: str
    kind: str
    name: Optional[str] = None
    op: Optional[str] = None
    operand: Optional[str] = None
    constant: bool = True

    def evaluate(self, params: Mapping[str, Any]) -> bool:
        if self.kind == "constant":
            return self.constant
        if self.kind == "opaque":
            return True
        actual = params.get(self.name or "")
        if self.kind == "truthy":
            return is_truthy(actual)
        if self.kind == "negated":
            return not is_truthy(actual)
        return self._compare(actual)

    def _compare(self, actual: Any) -> bool:
        op = self.op or "=="
        operand = self.operand or ""
        if actual is None:
            return op == "!="
        if op in ("==", "!="):
            expected = _coerce_like(actual, operand)
            if isinstance(actual, str) or isinstance(expected, str):
                equal = str(actual) == str(expected)
            else:
                equal = actual == expected
            return equal if op == "==" else not equal
        try:
            left = float(actual)
            right = float(operand)
        except (ValueError, TypeError):
            return False
        if op == "<":
            return left < right
        if op == ">":
            return left > right
        if op == "<=":
            return left <= right
        return left >= right

    def __str__(self) -> str:
        return self.source


def parse_condition(source: Optional[str]) -> Optional[Condition]:
    """Parse a condition expression; ``None`` or blank input means no condition."""
    if source is None:
        return None
    if isinstance(source, Condition):
        return source
    text = str(source).strip()
    if not text:
        return None

    lowered = text.lower()
    if lowered in ("true", "false"):
        return Condition(source=text, kind="constant", constant=lowered == "true")

    m = _COMPARE_RE.match(text)
    if m:
        return Condition(
            source=text,
            kind="compare",
            name=_strip_name(m.group(1)),
            op=m.group(2),
            operand=_strip_quotes(m.group(3)),
        )

    m = _NEGATED_RE.match(text)
    if m:
        return Condition(source=text, kind="negated", name=_strip_name(m.group(1)))

    if re.fullmatch(_NAME, text):
        return Condition(source=text, kind="truthy", name=_strip_name(text))

    logger.warning("Unrecognised condition expression '{}'; step will always run", text)
    return Condition(source=text, kind="opaque")
