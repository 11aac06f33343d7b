"""Execution metrics harvested from unstructured agent logs.

Agents report token usage in one of three encodings, one per line:

1. JSON with a ``token_usage`` object::

       {"token_usage": {"prompt_tokens": 10, "completion_tokens": 5, "cost": 0.01}}

2. A ``TOKEN_USAGE:`` prefix (any case) followed by ``KEY=VALUE`` pairs::

       TOKEN_USAGE: prompt_tokens=150, completion_tokens=250

3. A "resource usage" line mentioning tokens with an embedded JSON object::

       [agent] resource usage for tokens: {"prompt_tokens": 7, "total_tokens": 9}

The first line yielding any usable field wins; later lines are ignored.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import asdict, dataclass
from typing import Any

_INT_FIELDS = ("prompt_tokens", "completion_tokens", "total_tokens")
_TOKEN_USAGE_PREFIX = "TOKEN_USAGE:"
# Plain ASCII decimal literals only: no digit separators or non-ASCII digits.
_INT_RE = re.compile(r"[+-]?[0-9]+")
_FLOAT_RE = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _as_int(value: object) -> int | None:
    # bool is an int subclass; JSON true/false are not token counts.
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return None


def _as_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float) and math.isfinite(value):
        return float(value)
    return None


def _fields_from_mapping(data: object) -> dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    fields: dict[str, Any] = {}
    for key in _INT_FIELDS:
        number = _as_int(data.get(key))
        if number is not None:
            fields[key] = number
    cost = _as_float(data.get("cost"))
    if cost is not None:
        fields["cost"] = cost
    return fields


def _parse_json_line(line: str) -> dict[str, Any]:
    if "token_usage" not in line:
        return {}
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, dict):
        return {}
    return _fields_from_mapping(data.get("token_usage"))


def _parse_prefixed_line(line: str) -> dict[str, Any]:
    upper = line.upper()
    if not upper.startswith(_TOKEN_USAGE_PREFIX):
        return {}
    fields: dict[str, Any] = {}
    for pair in upper[len(_TOKEN_USAGE_PREFIX) :].split(","):
        key, sep, value = pair.partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        if key in _INT_FIELDS and _INT_RE.fullmatch(value):
            fields[key] = int(value)
        elif key == "cost" and _FLOAT_RE.fullmatch(value):
            cost = float(value)
            if math.isfinite(cost):
                fields[key] = cost
    return fields


def _parse_resource_usage_line(line: str) -> dict[str, Any]:
    if "resource usage" not in line.lower() or "tokens" not in line:
        return {}
    start = line.find("{")
    end = line.rfind("}")
    if start == -1 or end <= start:
        return {}
    try:
        data = json.loads(line[start : end + 1])
    except json.JSONDecodeError:
        return {}
    return _fields_from_mapping(data)


def extract_token_usage(log_text: str) -> TokenUsage:
    """Return the token usage reported first in *log_text*; zeros when absent."""
    fields: dict[str, Any] = {}
    for raw_line in log_text.splitlines():
        line = raw_line.strip()
        for parser in (_parse_json_line, _parse_prefixed_line, _parse_resource_usage_line):
            fields.update(parser(line))
        if fields:
            break

    usage = TokenUsage(**fields)
    if usage.total_tokens == 0 and (usage.prompt_tokens or usage.completion_tokens):
        usage = TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.prompt_tokens + usage.completion_tokens,
            cost=usage.cost,
        )
    return usage


def count_errors(log_text: str) -> int:
    """Lines mentioning error, fatal or panic (case-insensitive)."""
    return sum(
        1
        for line in log_text.splitlines()
        if any(word in line.lower() for word in ("error", "fatal", "panic"))
    )


def count_warnings(log_text: str) -> int:
    return sum(1 for line in log_text.splitlines() if "warn" in line.lower())
