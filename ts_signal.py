from __future__ import annotations

# Signal stages of the trend engine: accuracy filtering, adaptive window
# estimation, weighted smoothing and local extrema detection. Segment
# assembly lives in ts_segments.

import dataclasses
import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.signal import windows

from ts_model import (
    DEFAULT_MAX_VALUE_ACCURACY,
    Extremum,
    ExtremumKind,
    InvalidArgumentError,
    Sample,
    SegmentThresholds,
    TrendType,
    WindowType,
)


MIN_WINDOW_SIZE = 3
MIN_SAMPLES_FOR_LAG_SCAN = 10
DEFAULT_MAX_LAG_DIVISOR = 200
# Looser than float rounding noise so truly flat runs read as zero slope.
DEFAULT_EPSILON = 1e-12

# Fixed windows used by activity profiles: (size, type, gaussian sigma).
PRESET_WINDOWS: Dict[str, Tuple[int, WindowType, Optional[float]]] = {
    "default": (7, WindowType.GAUSSIAN, None),
    "alpine_ski": (9, WindowType.GAUSSIAN, 0.2),
}


# -----------------
# Accuracy filter
# -----------------

def filter_by_accuracy(samples: Sequence[Sample], max_accuracy: float = DEFAULT_MAX_VALUE_ACCURACY) -> List[Sample]:
    """Keep samples whose accuracy is known (> 0) and no worse than ``max_accuracy``."""
    return [s for s in samples if s is not None and 0.0 < s.accuracy <= max_accuracy]


# -----------------
# Window estimation
# -----------------

def parse_window_type(value: Union[str, WindowType]) -> WindowType:
    if isinstance(value, WindowType):
        return value
    normalized = str(value).strip().lower()
    if normalized == "hann":
        normalized = WindowType.HANNING.value
    try:
        return WindowType(normalized)
    except ValueError:
        choices = "|".join(w.value for w in WindowType)
        raise InvalidArgumentError(f"Unknown window type '{value}' (expected {choices})") from None


def amplitude_damping(thresholds: Optional[SegmentThresholds]) -> float:
    if thresholds is None:
        return 1.0
    return 1.0 / (1.0 + max(thresholds.min_ascending_amplitude, thresholds.min_descending_amplitude))


def nearest_odd_window(size: float) -> int:
    if not math.isfinite(size):
        return MIN_WINDOW_SIZE
    odd = 2 * int(math.floor((size - 1.0) / 2.0 + 0.5)) + 1
    return max(MIN_WINDOW_SIZE, odd)


def lag_energies(values: Sequence[float]) -> np.ndarray:
    """Mean squared difference between samples ``s`` apart, for ``s`` in ``1..N/2-1``.

    Index 0 is unused and left at zero.
    """
    arr = np.asarray(values, dtype=np.float64)
    n = arr.size
    energies = np.zeros(n // 2, dtype=np.float64)
    for scale in range(1, n // 2):
        diff = arr[:-scale] - arr[scale:]
        energies[scale] = float(np.mean(diff * diff))
    return energies


def estimate_lag(values: Sequence[float]) -> int:
    if len(values) < MIN_SAMPLES_FOR_LAG_SCAN:
        return MIN_WINDOW_SIZE
    energies = lag_energies(values)
    best = MIN_WINDOW_SIZE
    for scale in range(2, energies.size):
        if energies[scale] > energies[best]:
            best = scale
    return best


def estimate_window_size(
    values: Sequence[float],
    thresholds: Optional[SegmentThresholds] = None,
    max_lag_divisor: int = DEFAULT_MAX_LAG_DIVISOR,
) -> int:
    lag = estimate_lag(values)
    size = nearest_odd_window(lag * amplitude_damping(thresholds))
    if max_lag_divisor > 0:
        cap = max(MIN_WINDOW_SIZE, len(values) // max_lag_divisor)
        if cap % 2 == 0:
            cap -= 1
        size = min(size, cap)
    logging.debug("Window estimate: lag=%d size=%d (n=%d)", lag, size, len(values))
    return size


def _triangular(size: int, sigma: Optional[float]) -> np.ndarray:
    return windows.bartlett(size)


def _hanning(size: int, sigma: Optional[float]) -> np.ndarray:
    return windows.hann(size)


def _gaussian(size: int, sigma: Optional[float]) -> np.ndarray:
    if sigma is None or sigma <= 0:
        sigma = 0.4 + 0.1 * (size / 25.0)
    center = (size - 1) / 2.0
    return windows.gaussian(size, std=sigma * center)


_WINDOW_SHAPES = {
    WindowType.TRIANGULAR: _triangular,
    WindowType.HANNING: _hanning,
    WindowType.GAUSSIAN: _gaussian,
}


def generate_window(
    size: int,
    window_type: Union[str, WindowType] = WindowType.GAUSSIAN,
    thresholds: Optional[SegmentThresholds] = None,
    sigma: Optional[float] = None,
) -> np.ndarray:
    """Return ``size`` normalized weights for the requested window shape.

    The shape is damped by the amplitude thresholds before renormalization so the
    weights always sum to 1. ``size`` must be odd and at least 3.
    """
    if size < MIN_WINDOW_SIZE or size % 2 == 0:
        raise InvalidArgumentError(f"Window size must be odd and >= {MIN_WINDOW_SIZE}, got {size}")
    shape = _WINDOW_SHAPES[parse_window_type(window_type)]
    weights = np.asarray(shape(int(size), sigma), dtype=np.float64) * amplitude_damping(thresholds)
    return weights / float(np.sum(weights))


def preset_window(name: str) -> np.ndarray:
    try:
        size, window_type, sigma = PRESET_WINDOWS[name]
    except KeyError:
        raise InvalidArgumentError(
            f"Unknown window preset '{name}' (expected {'|'.join(sorted(PRESET_WINDOWS))})"
        ) from None
    return generate_window(size, window_type, sigma=sigma)


def adaptive_window(
    samples: Sequence[Sample],
    thresholds: Optional[SegmentThresholds],
    window_type: Union[str, WindowType] = WindowType.GAUSSIAN,
    max_lag_divisor: int = DEFAULT_MAX_LAG_DIVISOR,
    sigma: Optional[float] = None,
) -> np.ndarray:
    values = [s.value for s in samples]
    size = estimate_window_size(values, thresholds, max_lag_divisor=max_lag_divisor)
    return generate_window(size, window_type, thresholds, sigma=sigma)


# -----------------
# Smoothing
# -----------------

def smooth_samples(samples: Sequence[Sample], weights: Sequence[float]) -> List[Sample]:
    """Centered weighted moving average, renormalized by the weights in range at the edges."""
    w = np.asarray(weights, dtype=np.float64)
    if w.ndim != 1 or w.size < MIN_WINDOW_SIZE or w.size % 2 == 0:
        raise InvalidArgumentError("weights must be a 1-D array of odd length >= 3")
    n = len(samples)
    if n < MIN_WINDOW_SIZE:
        return list(samples)

    half = w.size // 2
    kernel = w[::-1]
    values = np.fromiter((s.value for s in samples), dtype=np.float64, count=n)
    weighted = np.convolve(values, kernel)[half:half + n]
    used = np.convolve(np.ones(n, dtype=np.float64), kernel)[half:half + n]
    with np.errstate(divide="ignore", invalid="ignore"):
        smoothed = np.where(used != 0.0, weighted / used, values)
    return [dataclasses.replace(s, value=float(v)) for s, v in zip(samples, smoothed)]


# -----------------
# Extrema
# -----------------

def time_derivative(samples: Sequence[Sample]) -> np.ndarray:
    """Slope into each sample in value units per second.

    ``derivative[0]`` is 0; steps with zero duration are NaN.
    """
    n = len(samples)
    derivative = np.zeros(n, dtype=np.float64)
    if n < 2:
        return derivative
    values = np.fromiter((s.value for s in samples), dtype=np.float64, count=n)
    times = np.fromiter((s.timestamp for s in samples), dtype=np.float64, count=n)
    dv = np.diff(values)
    dt = np.abs(np.diff(times)) / 1000.0
    with np.errstate(divide="ignore", invalid="ignore"):
        derivative[1:] = np.where(dt > 0.0, dv / np.where(dt > 0.0, dt, 1.0), np.nan)
    return derivative


def sign_with_epsilon(values: np.ndarray, epsilon: float = DEFAULT_EPSILON) -> np.ndarray:
    """Sign with a dead zone: ``|v| <= epsilon`` and NaN map to 0."""
    values = np.asarray(values, dtype=np.float64)
    signs = np.zeros(values.shape, dtype=np.int8)
    signs[values > epsilon] = 1
    signs[values < -epsilon] = -1
    return signs


def derivative_signs(samples: Sequence[Sample], epsilon: float = DEFAULT_EPSILON) -> Tuple[np.ndarray, np.ndarray]:
    derivative = time_derivative(samples)
    return derivative, sign_with_epsilon(derivative, epsilon)


def find_local_extrema(smoothed: Sequence[Sample], epsilon: float = DEFAULT_EPSILON) -> List[Extremum]:
    n = len(smoothed)
    if n < MIN_WINDOW_SIZE:
        return []
    _, signs = derivative_signs(smoothed, epsilon)

    extrema: List[Extremum] = []
    # Sample j turns when the slope into it and the slope out of it change sign.
    for j in range(1, n - 1):
        slope_in = signs[j]
        slope_out = signs[j + 1]
        if slope_in < 0 and slope_out > 0:
            extrema.append(Extremum(j, ExtremumKind.MIN))
        elif slope_in > 0 and slope_out < 0:
            extrema.append(Extremum(j, ExtremumKind.MAX))

    # Close the series with a synthesized turning point when the alternation stops short.
    # Approximation: a real turn removed by smoothing is not recovered here.
    if len(extrema) >= 2 and extrema[-1].sample_index < n - 1:
        last = extrema[-1]
        before_last = extrema[-2]
        if before_last.kind is not last.kind:
            extrema.append(Extremum(n - 1, before_last.kind))
            logging.debug("Synthesized trailing %s at index %d", before_last.kind.value, n - 1)

    return extrema


def find_trend_runs(
    smoothed: Sequence[Sample],
    extrema: Sequence[Extremum],
    trend: TrendType,
    min_amplitude: float,
    min_derivative: float,
) -> List[Tuple[int, int]]:
    """Greedy (start_time, end_time) runs for UP or DOWN.

    Each starting extremum (MIN for UP, MAX for DOWN) is paired with the first later
    opposite extremum whose amplitude and mean slope per second meet both minimums.
    """
    if trend is TrendType.UP:
        start_kind, end_kind, direction = ExtremumKind.MIN, ExtremumKind.MAX, 1.0
    elif trend is TrendType.DOWN:
        start_kind, end_kind, direction = ExtremumKind.MAX, ExtremumKind.MIN, -1.0
    else:
        raise InvalidArgumentError("Trend runs are defined for UP and DOWN only")

    runs: List[Tuple[int, int]] = []
    for i, start in enumerate(extrema):
        if start.kind is not start_kind:
            continue
        for end in extrema[i + 1:]:
            if end.kind is not end_kind or end.sample_index <= start.sample_index:
                continue
            p1 = smoothed[start.sample_index]
            p2 = smoothed[end.sample_index]
            amplitude = (p2.value - p1.value) * direction
            if amplitude <= 0:
                continue
            dt_ms = p2.timestamp - p1.timestamp
            if dt_ms <= 0:
                continue
            slope = amplitude / (dt_ms / 1000.0)
            if amplitude >= min_amplitude and slope >= min_derivative:
                runs.append((p1.timestamp, p2.timestamp))
                break
    return runs
