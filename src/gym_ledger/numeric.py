"""Safe numeric and date coercion for data read back from the store.

Historical documents were written by several generations of the front-end and
carry amounts as floats, strings, ``None`` or worse. Every ingestion point in
the package routes raw values through this module so that one malformed record
degrades to zero (numbers) or is discarded (dates) instead of poisoning a whole
report.

Two flavours are provided: ``coerce_*`` functions are strict and raise
:class:`~gym_ledger.exceptions.MalformedInput`; ``ensure_*`` functions wrap
them, log the problem at debug level and fall back to a neutral value.
"""

from __future__ import annotations

import math
from datetime import UTC, date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from . import log
from .exceptions import MalformedInput


def coerce_number(value: Any) -> float:
    """Convert ``value`` to a finite float or raise ``MalformedInput``.

    Accepts ints, floats, :class:`~decimal.Decimal` and numeric strings.
    Booleans are rejected even though they subclass ``int``.
    """

    if isinstance(value, bool) or value is None:
        raise MalformedInput(f"Not a number: {value!r}")
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, Decimal):
        try:
            result = float(value)
        except (InvalidOperation, ValueError) as exc:
            raise MalformedInput(f"Not a number: {value!r}") from exc
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError as exc:
            raise MalformedInput(f"Not a number: {value!r}") from exc
    else:
        raise MalformedInput(f"Unsupported numeric type: {type(value).__name__}")

    if not math.isfinite(result):
        raise MalformedInput(f"Non-finite number: {value!r}")
    return result


def ensure_number(value: Any, default: float = 0.0) -> float:
    """Return ``value`` as a finite float, or ``default`` when it is unusable."""

    try:
        return coerce_number(value)
    except MalformedInput as exc:
        if value is not None:
            log.debug("Coerced malformed numeric value to %s: %s", default, exc)
        return default


def ensure_int(value: Any, default: int = 0) -> int:
    """Integer variant of :func:`ensure_number`; fractional parts are truncated."""

    number = ensure_number(value, float(default))
    return int(number)


def safe_division(dividend: Any, divisor: Any) -> float:
    """Divide two coerced values, returning 0 when the divisor is not positive."""

    safe_dividend = ensure_number(dividend)
    safe_divisor = ensure_number(divisor)
    return safe_dividend / safe_divisor if safe_divisor > 0 else 0.0


def safe_percentage(part: Any, total: Any) -> float:
    """Return ``part`` as a percentage of ``total`` (0 when total is not positive)."""

    return safe_division(part, total) * 100.0


def coerce_date(value: Any) -> datetime:
    """Convert ``value`` into a timezone-aware UTC datetime.

    Supported inputs:
        * ``datetime`` (naive values are assumed to be UTC)
        * ``date`` (midnight UTC)
        * ISO-8601 strings, including a trailing ``Z``
        * ints/floats, interpreted as epoch milliseconds like the front-end
          writes them
        * objects exposing ``to_datetime()``, as some store SDKs return

    Raises:
        MalformedInput: If the value cannot be interpreted as a moment in time.
    """

    if value is None or isinstance(value, bool):
        raise MalformedInput(f"Not a date: {value!r}")

    converter = getattr(value, "to_datetime", None)
    if callable(converter):
        value = converter()

    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise MalformedInput("Empty date string")
        try:
            result = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise MalformedInput(f"Unparsable date: {value!r}") from exc
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise MalformedInput(f"Non-finite timestamp: {value!r}")
        try:
            result = datetime.fromtimestamp(value / 1000.0, tz=UTC)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedInput(f"Timestamp out of range: {value!r}") from exc
    else:
        raise MalformedInput(f"Unsupported date type: {type(value).__name__}")

    if result.tzinfo is None or result.utcoffset() is None:
        return result.replace(tzinfo=UTC)
    return result.astimezone(UTC)


def ensure_date(value: Any) -> Optional[datetime]:
    """Return ``value`` as a UTC datetime, or ``None`` when it is unusable."""

    try:
        return coerce_date(value)
    except MalformedInput as exc:
        if value is not None:
            log.debug("Discarded malformed date value: %s", exc)
        return None


__all__ = [
    "coerce_date",
    "coerce_number",
    "ensure_date",
    "ensure_int",
    "ensure_number",
    "safe_division",
    "safe_percentage",
]
