"""
LiveChart Core — Update Classification Engine

Decides how a newly delivered bar series relates to the previously rendered
one, so panes can be patched instead of rebuilt:

  FullReload:  a different dataset, or one that shrank or was rewritten
  TickUpdate:  same bars, the last one was revised in place
  Append:      exactly one new bar at the end

Only head/tail timestamps, the tail bar and the length are compared, so a
classification costs O(1) regardless of series length.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import structlog

from livechart.engines.pattern_engine import detect_patterns
from livechart.engines.ta_engine import compute_indicators
from livechart.models import (
    Append,
    Bar,
    FullReload,
    IndicatorParams,
    IndicatorSeries,
    PatternCollection,
    PatternParams,
    TickUpdate,
    UpdateClassification,
    ValidationWarning,
)
from livechart.observability import trace_span
from livechart.utils.validators import validate_bars

log = structlog.get_logger(__name__)


def classify_update(prior: list[Bar], new: list[Bar]) -> UpdateClassification:
    """Classify *new* against *prior*. Both must be validated series."""
    if not prior or not new:
        return FullReload(new_series=list(new))
    return _classify(len(prior), prior[0].timestamp, prior[-1], new)


def _classify(
    prior_len: int,
    prior_head_ts: int,
    prior_tail: Bar,
    new: list[Bar],
) -> UpdateClassification:
    new_len = len(new)
    if new_len < prior_len or new[0].timestamp != prior_head_ts:
        return FullReload(new_series=list(new))

    tail = new[-1]
    if new_len == prior_len and tail.timestamp == prior_tail.timestamp:
        return TickUpdate(patched_last_bar=tail, changed=tail != prior_tail)
    if new_len == prior_len + 1 and tail.timestamp > prior_tail.timestamp:
        return Append(new_bar=tail)
    return FullReload(new_series=list(new))


class UpdateClassifier:
    """Stateful classifier that remembers the last series it saw.

    Usage:
        classifier = UpdateClassifier()
        classifier.classify(bars)          # FullReload
        classifier.classify(bars + [bar])  # Append
    """

    def __init__(self):
        self._length = 0
        self._head_ts: Optional[int] = None
        self._tail: Optional[Bar] = None

    @property
    def length(self) -> int:
        return self._length

    def reset(self) -> None:
        """Forget the cached series; the next delivery is a FullReload."""
        self._length = 0
        self._head_ts = None
        self._tail = None

    def classify(self, new: list[Bar]) -> UpdateClassification:
        """Classify *new* against the cached series, then cache *new*."""
        if self._tail is None or not new:
            result: UpdateClassification = FullReload(new_series=list(new))
        else:
            result = _classify(self._length, self._head_ts, self._tail, new)

        self._length = len(new)
        self._head_ts = new[0].timestamp if new else None
        self._tail = new[-1] if new else None

        log.debug("update.classified", kind=result.kind, length=self._length)
        return result


@dataclass
class AnalysisSnapshot:
    """Result of one delivery through LiveSeriesTracker."""
    bars: list[Bar]
    classification: Any
    indicators: dict[str, IndicatorSeries] = field(default_factory=dict)
    patterns: PatternCollection = field(default_factory=PatternCollection)
    warnings: list[ValidationWarning] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


class LiveSeriesTracker:
    """Runs each live delivery through validate → classify → analyse.

    Deliveries are serialised by a lock: one is fully processed before the
    next starts. Every accepted delivery is classified; none are skipped.

    Usage:
        tracker = LiveSeriesTracker()
        snapshot = tracker.deliver(raw_bars)
        synchronizer.apply_update(snapshot.classification, snapshot.bars,
                                  snapshot.indicators, snapshot.patterns)
    """

    def __init__(
        self,
        indicator_params: Optional[IndicatorParams] = None,
        pattern_params: Optional[PatternParams] = None,
    ):
        self.indicator_params = indicator_params or IndicatorParams.from_settings()
        self.pattern_params = pattern_params or PatternParams.from_settings()
        self._classifier = UpdateClassifier()
        self._lock = threading.Lock()
        self._last: Optional[AnalysisSnapshot] = None

    @property
    def last_snapshot(self) -> Optional[AnalysisSnapshot]:
        return self._last

    def deliver(self, raw: Optional[Iterable[Any]]) -> AnalysisSnapshot:
        with self._lock:
            with trace_span("tracker.deliver"):
                report = validate_bars(raw)
                classification = self._classifier.classify(report.bars)
                indicators = compute_indicators(report.bars, self.indicator_params)
                patterns = detect_patterns(report.bars, indicators, self.pattern_params)

            snapshot = AnalysisSnapshot(
                bars=report.bars,
                classification=classification,
                indicators=indicators,
                patterns=patterns,
                warnings=report.warnings,
                notes=report.notes,
            )
            self._last = snapshot

        log.info(
            "tracker.delivered",
            kind=classification.kind,
            bars=len(report.bars),
            rejected=report.rejected_count,
            patterns=patterns.pattern_count,
        )
        return snapshot

    def reset(self) -> None:
        with self._lock:
            self._classifier.reset()
            self._last = None
