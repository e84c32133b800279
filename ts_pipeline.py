from __future__ import annotations

# End-to-end trend segmentation: filter -> window -> smooth -> extrema ->
# segments -> gap fill -> cumulative statistics.

import dataclasses
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ts_model import (
    DEFAULT_MAX_VALUE_ACCURACY,
    DEFAULT_THRESHOLD_FACTOR,
    CumulativeTable,
    Extremum,
    InvalidArgumentError,
    Sample,
    Segment,
    SegmentThresholds,
    TrendBoundary,
    TrendTotals,
    TrendType,
    WindowType,
    adaptive_thresholds,
    thresholds_from_stddev,
)
from ts_segments import (
    MIN_SEGMENT_SAMPLES,
    _assert_total_coverage,
    build_segments,
    fill_gaps,
    map_cumulative_statistics,
)
from ts_signal import (
    DEFAULT_EPSILON,
    DEFAULT_MAX_LAG_DIVISOR,
    adaptive_window,
    filter_by_accuracy,
    find_local_extrema,
    find_trend_runs,
    generate_window,
    parse_window_type,
    preset_window,
    smooth_samples,
)


THRESHOLD_MODES = ("stddev", "adaptive")


class _StageProfiler:
    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self.timings: Dict[str, float] = {}
        self._last = time.perf_counter()

    def lap(self, label: str) -> None:
        if not self.enabled:
            return
        now = time.perf_counter()
        self.timings[label] = now - self._last
        logging.info("Profile %-10s %.4fs", label, now - self._last)
        self._last = now


# -----------------
# Configuration
# -----------------

@dataclass
class TrendConfig:
    max_accuracy: float = DEFAULT_MAX_VALUE_ACCURACY
    window_type: WindowType = WindowType.GAUSSIAN
    threshold_mode: str = "stddev"
    threshold_factor: float = DEFAULT_THRESHOLD_FACTOR
    thresholds: Optional[SegmentThresholds] = None
    epsilon: float = DEFAULT_EPSILON
    max_lag_divisor: int = DEFAULT_MAX_LAG_DIVISOR
    window_size: Optional[int] = None
    window_preset: Optional[str] = None
    sigma: Optional[float] = None

    def __post_init__(self) -> None:
        self.window_type = parse_window_type(self.window_type)
        if self.threshold_mode not in THRESHOLD_MODES:
            raise InvalidArgumentError(
                f"Unknown threshold mode '{self.threshold_mode}' (expected {'|'.join(THRESHOLD_MODES)})"
            )
        if self.epsilon < 0:
            raise InvalidArgumentError("epsilon must be >= 0")

    def with_overrides(self, **overrides: Any) -> "TrendConfig":
        """Copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)


_CONFIG_FIELD_TYPES = {
    "max_accuracy": float,
    "window_type": str,
    "threshold_mode": str,
    "threshold_factor": float,
    "epsilon": float,
    "max_lag_divisor": int,
    "window_size": int,
    "window_preset": str,
    "sigma": float,
}

_THRESHOLD_KEYS = (
    "min_ascending_amplitude",
    "min_ascending_derivative",
    "min_descending_amplitude",
    "min_descending_derivative",
)


def _parse_thresholds(raw: Any) -> Optional[SegmentThresholds]:
    if isinstance(raw, (int, float)):
        return SegmentThresholds.from_deviation(float(raw))
    if not isinstance(raw, dict):
        return None
    try:
        return SegmentThresholds(*(float(raw.get(key, 0.0)) for key in _THRESHOLD_KEYS))
    except (TypeError, ValueError):
        return None


def load_config(path: str, base: Optional[TrendConfig] = None) -> TrendConfig:
    """Read a JSON object of overrides; unknown or unparsable entries are skipped."""
    with open(path, "r") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise InvalidArgumentError(f"{path}: expected a JSON object")

    overrides: Dict[str, Any] = {}
    for key, value in data.items():
        if key == "thresholds":
            parsed = _parse_thresholds(value)
            if parsed is None:
                logging.warning("Ignoring invalid thresholds in %s: %r", path, value)
                continue
            overrides["thresholds"] = parsed
            continue
        caster = _CONFIG_FIELD_TYPES.get(key)
        if caster is None:
            logging.warning("Ignoring unknown config key '%s' in %s", key, path)
            continue
        if value is None:
            continue
        try:
            overrides[key] = caster(value)
        except (TypeError, ValueError):
            logging.warning("Ignoring invalid value for '%s' in %s: %r", key, path, value)
    return (base or TrendConfig()).with_overrides(**overrides)


def resolve_thresholds(values: Sequence[float], config: TrendConfig) -> SegmentThresholds:
    if config.thresholds is not None:
        return config.thresholds
    if config.threshold_mode == "adaptive":
        return adaptive_thresholds(values)
    return thresholds_from_stddev(values, config.threshold_factor)


def resolve_weights(samples: Sequence[Sample], thresholds: SegmentThresholds, config: TrendConfig) -> np.ndarray:
    if config.window_preset:
        return preset_window(config.window_preset)
    if config.window_size is not None:
        return generate_window(config.window_size, config.window_type, thresholds, sigma=config.sigma)
    return adaptive_window(
        samples,
        thresholds,
        config.window_type,
        max_lag_divisor=config.max_lag_divisor,
        sigma=config.sigma,
    )


# -----------------
# Results
# -----------------

@dataclass
class TrendAnalysis:
    samples: List[Sample]
    smoothed: List[Sample] = field(default_factory=list)
    weights: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    thresholds: Optional[SegmentThresholds] = None
    extrema: List[Extremum] = field(default_factory=list)
    boundaries: List[TrendBoundary] = field(default_factory=list)
    cumulative: CumulativeTable = field(default_factory=CumulativeTable)
    totals_by_trend: Dict[TrendType, TrendTotals] = field(
        default_factory=lambda: {trend: TrendTotals() for trend in TrendType}
    )
    ascending_runs: List[Tuple[int, int]] = field(default_factory=list)
    descending_runs: List[Tuple[int, int]] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def segments(self) -> List[Segment]:
        return [b.segment for b in self.boundaries]

    @property
    def is_empty(self) -> bool:
        return not self.boundaries

    def totals(self) -> Dict[TrendType, TrendTotals]:
        return {trend: dataclasses.replace(t) for trend, t in self.totals_by_trend.items()}


def _order_by_time(samples: Sequence[Sample]) -> List[Sample]:
    ordered = list(samples)
    if any(b.timestamp < a.timestamp for a, b in zip(ordered, ordered[1:])):
        logging.debug("Input samples not time-ordered; sorting %d samples", len(ordered))
        ordered.sort(key=lambda s: s.timestamp)
    return ordered


def analyze_track(
    samples: Sequence[Sample],
    config: Optional[TrendConfig] = None,
    *,
    profile: bool = False,
) -> TrendAnalysis:
    """Partition ``samples`` into UP/DOWN/CONSTANT segments with cumulative statistics.

    Fewer than three usable samples after accuracy filtering yields an empty result.
    """
    cfg = config or TrendConfig()
    profiler = _StageProfiler(profile)

    filtered = filter_by_accuracy(_order_by_time(samples), cfg.max_accuracy)
    profiler.lap("filter")
    logging.debug("Accuracy filter kept %d of %d samples (<= %.2f)", len(filtered), len(samples), cfg.max_accuracy)
    if len(filtered) < MIN_SEGMENT_SAMPLES:
        logging.warning(
            "Only %d usable samples after accuracy filtering; no trend could be detected.",
            len(filtered),
        )
        return TrendAnalysis(samples=filtered, timings=profiler.timings)

    thresholds = resolve_thresholds([s.value for s in filtered], cfg)
    weights = resolve_weights(filtered, thresholds, cfg)
    profiler.lap("window")

    smoothed = smooth_samples(filtered, weights)
    profiler.lap("smooth")

    extrema = find_local_extrema(smoothed, cfg.epsilon)
    profiler.lap("extrema")

    segments = build_segments(smoothed, extrema, thresholds)
    segments = fill_gaps(segments, thresholds)
    _assert_total_coverage(segments, filtered)
    profiler.lap("segments")

    cumulative = map_cumulative_statistics(filtered, segments)
    profiler.lap("cumulative")

    ascending_runs = find_trend_runs(
        smoothed,
        extrema,
        TrendType.UP,
        thresholds.min_ascending_amplitude,
        thresholds.min_ascending_derivative,
    )
    descending_runs = find_trend_runs(
        smoothed,
        extrema,
        TrendType.DOWN,
        thresholds.min_descending_amplitude,
        thresholds.min_descending_derivative,
    )

    logging.debug(
        "Trend analysis: window=%d extrema=%d segments=%d",
        weights.size,
        len(extrema),
        len(cumulative.boundaries),
    )
    return TrendAnalysis(
        samples=filtered,
        smoothed=smoothed,
        weights=weights,
        thresholds=thresholds,
        extrema=extrema,
        boundaries=cumulative.boundaries,
        cumulative=cumulative.table,
        totals_by_trend=cumulative.totals,
        ascending_runs=ascending_runs,
        descending_runs=descending_runs,
        timings=profiler.timings,
    )
