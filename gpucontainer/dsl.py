"""Requirement expressions: version and string comparisons combined with AND/OR.

A predicate is a space separated list of alternatives; each alternative is a
comma separated list of conditions that must all hold, for example
``"cuda>=11.0,brand=tesla cuda>=12.0"``.
"""

from __future__ import annotations

import enum
import re
from typing import Any, Callable, Mapping

EXPR_MAX = 128

_CUDA_REQUIRE_GREATER = "cuda>="
_VERSION_CHARS = "0123456789."
_DIGITS = "0123456789"
_UINTMAX_MAX = 2**64 - 1
_EXPRESSION = re.compile(r"([^<>=!]*)([<>=!]*)(.*)", re.DOTALL)


class DslError(ValueError):
    """Raised for malformed expressions or unsatisfied requirements."""


class Comparator(enum.Enum):
    """Comparison operators, in the order operator tokens are matched."""

    EQUAL = "="
    NOT_EQUAL = "!="
    LESS = "<"
    LESS_EQUAL = "<="
    GREATER = ">"
    GREATER_EQUAL = ">="

    @property
    def symbol(self) -> str:
        return self.value


Rule = Callable[[Any, Comparator, str], bool]


def _span(text: str, chars: str) -> int:
    return len(text) - len(text.lstrip(chars))


def _take_number(text: str) -> tuple[int, str]:
    width = _span(text, _DIGITS)
    if width == 0:
        raise DslError(f"invalid version component: {text!r}")
    number = int(text[:width])
    if number >= _UINTMAX_MAX:
        raise DslError(f"version component out of range: {text[:width]}")
    return number, text[width:]


def compare_version(v1: str, cmp: Comparator, v2: str) -> bool:
    """Compare two dotted numeric versions; trailing zero components are ignored."""
    for version in (v1, v2):
        if _span(version, _VERSION_CHARS) != len(version):
            raise DslError(f"invalid version: {version!r}")

    while v1 and v2:
        n1, v1 = _take_number(v1)
        n2, v2 = _take_number(v2)
        if n1 != n2:
            if cmp is Comparator.EQUAL:
                return False
            if cmp is Comparator.NOT_EQUAL:
                return True
            if cmp in (Comparator.LESS, Comparator.LESS_EQUAL):
                return n1 < n2
            return n1 > n2
        v1 = v1.lstrip(".")
        v2 = v2.lstrip(".")

    rest1 = v1.lstrip(".0")
    rest2 = v2.lstrip(".0")
    if cmp is Comparator.NOT_EQUAL:
        return bool(rest1 or rest2)
    if cmp in (Comparator.EQUAL, Comparator.LESS_EQUAL, Comparator.GREATER_EQUAL):
        if not rest1 and not rest2:
            return True
        if cmp is Comparator.EQUAL:
            return False
    if cmp in (Comparator.LESS, Comparator.LESS_EQUAL):
        return not rest1 and bool(rest2)
    return bool(rest1) and not rest2


def compare_string(s1: str, cmp: Comparator, s2: str) -> bool:
    """Case-insensitive equality test; only ``=`` and ``!=`` are supported."""
    if cmp is Comparator.EQUAL:
        return s1.lower() == s2.lower()
    if cmp is Comparator.NOT_EQUAL:
        return s1.lower() != s2.lower()
    raise DslError(f"unsupported string comparison: {cmp.symbol}")


def _lookup_operator(token: str) -> Comparator | None:
    return next((op for op in Comparator if op.symbol.startswith(token)), None)


def _evaluate_rule(expr: str, data: Any, rules: Mapping[str, Rule]) -> bool:
    match = _EXPRESSION.fullmatch(expr)
    name, token, value = match.groups() if match else ("", "", "")
    if not name or not token:
        raise DslError("invalid expression")
    op = _lookup_operator(token)
    if op is None or not value:
        raise DslError("invalid expression")

    rule = next((func for key, func in rules.items() if key.lower() == name.lower()), None)
    if rule is None:
        raise DslError("invalid expression")
    try:
        result = bool(rule(data, op, value))
    except DslError as exc:
        raise DslError("invalid expression") from exc
    if not result and len(f"{name} {op.symbol} {value}") >= EXPR_MAX:
        raise DslError("invalid expression")
    return result


def evaluate(predicate: str, data: Any, rules: Mapping[str, Rule]) -> None:
    """Evaluate a predicate against ``data``; raise DslError if it does not hold."""
    satisfied = True
    for alternative in predicate.split(" "):
        if not alternative:
            continue
        all_hold = True
        for condition in alternative.split(","):
            if not condition:
                continue
            satisfied = _evaluate_rule(condition, data, rules)
            if not satisfied:
                all_hold = False
                break
        if all_hold:
            break

    if not satisfied:
        first = predicate.split(" ", 1)[0]
        if first.startswith(_CUDA_REQUIRE_GREATER):
            raise DslError(
                f"unsatisfied condition: {first}, please update your driver to a "
                "newer version, or use an earlier cuda container"
            )
        raise DslError(f"unsatisfied condition: {first}")