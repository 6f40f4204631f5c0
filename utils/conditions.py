"""
Condition evaluator for conditional nodes.

Two forms are supported:
  - an explicit ``(variable, operator, value)`` expression over call variables
  - a named preset predicate (business hours, caller id known, premium customer)

Evaluation is a pure function of its inputs. Type errors never raise; they
evaluate to False.
"""
from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

logger = structlog.get_logger()


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("bool is not numeric")
    return float(value)


def _equals(a: Any, b: Any) -> bool:
    if a == b:
        return True
    if a is None or b is None:
        return False
    # "1" and 1 compare equal, as entered digits are strings
    return str(a) == str(b)


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda a, b: not _equals(a, b),
    "contains": lambda a, b: a is not None and str(b) in str(a),
    "greater_than": lambda a, b: _to_float(a) > _to_float(b),
    "less_than": lambda a, b: _to_float(a) < _to_float(b),
    "exists": lambda a, b: a is not None and a != "",
}


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'order.status'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def resolve_variable(variables: dict[str, Any], name: str) -> Any:
    """Flat key first (``api_response.status`` is stored flat), then dot notation."""
    if name in variables:
        return variables[name]
    return get_nested_value(variables, name)


def evaluate_expression(variable: str, operator: str, value: Any,
                        variables: dict[str, Any]) -> bool:
    """Evaluate a single ``variable operator value`` expression."""
    fn = OPERATORS.get(operator)
    if fn is None:
        logger.warning("unknown_condition_operator", operator=operator)
        return False
    actual = resolve_variable(variables, variable) if variable else None
    try:
        return bool(fn(actual, value))
    except (TypeError, ValueError):
        return False


# ──────────────────────────────────────────────────────────────
#  Preset predicates
# ──────────────────────────────────────────────────────────────

_DAY_NAMES = {
    "mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6,
}

ANONYMOUS_CALLERS = {"", "anonymous", "unknown", "restricted", "private", "+266696687"}

PREMIUM_TIERS = ["premium", "gold", "platinum", "vip"]


def _parse_clock(value: Any, default: time) -> time:
    if not value:
        return default
    try:
        hours, _, minutes = str(value).partition(":")
        return time(int(hours), int(minutes or 0))
    except ValueError:
        return default


def _parse_days(days: Any) -> set[int]:
    if not days:
        return {0, 1, 2, 3, 4}
    parsed = set()
    for d in days:
        if isinstance(d, int):
            parsed.add(d % 7)
        else:
            idx = _DAY_NAMES.get(str(d).strip().lower()[:3])
            if idx is not None:
                parsed.add(idx)
    return parsed


def is_business_hours(params: dict[str, Any], now: Optional[datetime] = None) -> bool:
    """
    True when ``now`` (converted to ``params['timezone']``) falls on one of
    ``params['days']`` between ``start`` and ``end``. Windows that cross
    midnight (start > end) are supported.
    """
    tz_name = params.get("timezone") or "UTC"
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("business_hours_bad_timezone", timezone=tz_name)
        tz = timezone.utc

    local = (now or datetime.now(timezone.utc)).astimezone(tz)
    start = _parse_clock(params.get("start"), time(9, 0))
    end = _parse_clock(params.get("end"), time(17, 0))
    days = _parse_days(params.get("days"))
    clock = local.time().replace(tzinfo=None)

    if start <= end:
        return local.weekday() in days and start <= clock < end
    # Overnight window belongs to the day it started on
    if clock >= start:
        return local.weekday() in days
    if clock < end:
        return (local.weekday() - 1) % 7 in days
    return False


def is_caller_id_known(params: dict[str, Any], caller: str) -> bool:
    known = params.get("known_numbers")
    if known:
        return caller in known
    return (caller or "").strip().lower() not in ANONYMOUS_CALLERS


def is_premium_customer(params: dict[str, Any], variables: dict[str, Any]) -> bool:
    flag = resolve_variable(variables, params.get("flag_variable", "is_premium"))
    if isinstance(flag, str):
        flag = flag.strip().lower() in ("1", "true", "yes")
    if flag:
        return True
    tier = resolve_variable(variables, params.get("tier_variable", "customer_tier"))
    tiers = [str(t).lower() for t in params.get("tiers", PREMIUM_TIERS)]
    return tier is not None and str(tier).lower() in tiers


def evaluate_preset(name: str, params: dict[str, Any], variables: dict[str, Any],
                    caller: str = "", now: Optional[datetime] = None) -> bool:
    """Evaluate a named preset predicate. Unknown names evaluate to False."""
    if name == "business_hours":
        return is_business_hours(params, now)
    if name == "caller_id_known":
        return is_caller_id_known(params, caller)
    if name == "premium_customer":
        return is_premium_customer(params, variables)
    logger.warning("unknown_condition_preset", preset=name)
    return False
