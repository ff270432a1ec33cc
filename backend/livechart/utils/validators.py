"""
LiveChart Core — Series Validator

Filters a raw bar stream down to a clean, strictly time-ordered series.
Bad bars are dropped, never repaired in place, and every drop is recorded
as a ValidationWarning so diagnostics can retrieve it later. Downstream
engines only ever see the clean bars.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

import structlog

from livechart.models import Bar, RejectReason, ValidationReport, ValidationWarning

log = structlog.get_logger(__name__)

_PRICE_FIELDS = ("open", "high", "low", "close")
_NUMERIC_FIELDS = (*_PRICE_FIELDS, "volume")

# A bar whose high-low range exceeds this share of its mid price is noted
_EXTREME_RANGE = 0.5


class _Rejected(Exception):
    """Internal signal: candidate bar fails a check."""

    def __init__(self, reason: RejectReason, detail: str, timestamp: Optional[int] = None):
        self.reason = reason
        self.detail = detail
        self.timestamp = timestamp
        super().__init__(detail)


def validate_bars(raw: Optional[Iterable[Any]]) -> ValidationReport:
    """Validate and filter raw bar candidates.

    Accepts Bar instances, mappings, or objects exposing the OHLCV fields
    as attributes. Timestamps may be epoch seconds, datetimes or ISO-8601
    strings.

    Returns a ValidationReport holding the accepted bars (in input order,
    each strictly later than the previous accepted bar) and one warning
    per rejected candidate.

    >>> report = validate_bars([{"timestamp": 1, "open": 1, "high": 2, "low": 0.5, "close": 1.5}])
    >>> len(report.bars), report.warnings
    (1, [])
    """
    report = ValidationReport()
    if raw is None:
        return report

    last_ts: Optional[int] = None
    for i, candidate in enumerate(raw):
        try:
            bar = _coerce_bar(candidate)
            _check_bar(bar)
            if last_ts is not None and bar.timestamp <= last_ts:
                reason = (
                    RejectReason.DUPLICATE_TIMESTAMP
                    if bar.timestamp == last_ts
                    else RejectReason.NON_MONOTONIC_TIMESTAMP
                )
                raise _Rejected(
                    reason,
                    f"Timestamp {bar.timestamp} does not follow {last_ts}",
                    bar.timestamp,
                )
        except _Rejected as rej:
            report.warnings.append(ValidationWarning(
                index=i,
                reason=rej.reason,
                timestamp=rej.timestamp,
                detail=rej.detail,
            ))
            log.debug("validator.rejected", index=i, reason=rej.reason.value, detail=rej.detail)
            continue

        report.notes.extend(_notes_for(i, bar))
        report.bars.append(bar)
        last_ts = bar.timestamp

    if report.warnings:
        log.info(
            "validator.filtered",
            accepted=len(report.bars),
            rejected=len(report.warnings),
        )
    return report


def is_valid_series(bars: list[Bar]) -> bool:
    """True if *bars* already satisfies every validator invariant."""
    return validate_bars(bars).is_clean


# ──────────────────────────────────────────────
# Private Helpers
# ──────────────────────────────────────────────

def _coerce_bar(candidate: Any) -> Bar:
    if isinstance(candidate, Bar):
        return candidate

    if isinstance(candidate, Mapping):
        getter = candidate.get
    elif candidate is not None and hasattr(candidate, "close"):
        def getter(name, default=None):
            return getattr(candidate, name, default)
    else:
        raise _Rejected(RejectReason.MALFORMED, f"Not a bar-like value: {type(candidate).__name__}")

    raw_ts = getter("timestamp")
    if raw_ts is None:
        raw_ts = getter("time")
    if raw_ts is None:
        raw_ts = getter("date")
    timestamp = _parse_timestamp(raw_ts)

    values: dict[str, float] = {}
    for name in _NUMERIC_FIELDS:
        value = getter(name)
        if value is None:
            if name == "volume":
                value = 0.0
            else:
                raise _Rejected(RejectReason.MALFORMED, f"Missing {name}", timestamp)
        if isinstance(value, bool):
            raise _Rejected(RejectReason.MALFORMED, f"Invalid {name} value: {value!r}", timestamp)
        try:
            values[name] = float(value)
        except (TypeError, ValueError):
            raise _Rejected(RejectReason.MALFORMED, f"Invalid {name} value: {value!r}", timestamp)
        except OverflowError:
            raise _Rejected(RejectReason.NON_FINITE, f"Out of range {name} value", timestamp)

    return Bar(timestamp=timestamp, **values)


def _parse_timestamp(value: Any) -> int:
    if value is None or isinstance(value, bool):
        raise _Rejected(RejectReason.MALFORMED, "Missing timestamp")
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise _Rejected(RejectReason.NON_FINITE, f"Non-finite timestamp: {value!r}")
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise _Rejected(RejectReason.MALFORMED, f"Invalid date value: {value}")
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    raise _Rejected(RejectReason.MALFORMED, f"Unsupported timestamp type: {type(value).__name__}")


def _check_bar(bar: Bar) -> None:
    """Raise _Rejected for the first invariant *bar* violates."""
    for name in _NUMERIC_FIELDS:
        value = getattr(bar, name)
        if not math.isfinite(value):
            raise _Rejected(RejectReason.NON_FINITE, f"Invalid {name} value: {value}", bar.timestamp)

    for name in _NUMERIC_FIELDS:
        if getattr(bar, name) < 0:
            raise _Rejected(
                RejectReason.NEGATIVE_VALUE,
                f"Negative {name}: {getattr(bar, name)}",
                bar.timestamp,
            )

    if bar.high < bar.low:
        raise _Rejected(
            RejectReason.OHLC_VIOLATION,
            f"High ({bar.high}) cannot be less than Low ({bar.low})",
            bar.timestamp,
        )
    if bar.high < bar.open or bar.high < bar.close:
        raise _Rejected(
            RejectReason.OHLC_VIOLATION,
            f"High ({bar.high}) must be >= Open ({bar.open}) and Close ({bar.close})",
            bar.timestamp,
        )
    if bar.low > bar.open or bar.low > bar.close:
        raise _Rejected(
            RejectReason.OHLC_VIOLATION,
            f"Low ({bar.low}) must be <= Open ({bar.open}) and Close ({bar.close})",
            bar.timestamp,
        )


def _notes_for(index: int, bar: Bar) -> list[str]:
    notes = []
    if bar.volume == 0:
        notes.append(f"Item {index}: Zero volume detected")
    mid = (bar.high + bar.low) / 2
    if mid > 0 and (bar.high - bar.low) / mid > _EXTREME_RANGE:
        notes.append(f"Item {index}: Extreme price movement detected (>50%)")
    return notes
