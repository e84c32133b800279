from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np


DEFAULT_MAX_VALUE_ACCURACY = 50.0
DEFAULT_THRESHOLD_FACTOR = 0.2
MIN_ADAPTIVE_AMPLITUDE = 0.001
MIN_ADAPTIVE_DERIVATIVE = 0.001


class InvalidArgumentError(ValueError):
    """Raised for malformed engine parameters (window sizes, weights, thresholds)."""


# -----------------
# Data structures
# -----------------

class TrendType(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    CONSTANT = "CONSTANT"


class ExtremumKind(str, Enum):
    MIN = "MIN"
    MAX = "MAX"


class WindowType(str, Enum):
    TRIANGULAR = "triangular"
    HANNING = "hanning"
    GAUSSIAN = "gaussian"


class CumulativeProcessedDataType(str, Enum):
    # Resets to zero at every segment boundary.
    FROM_SEGMENT_START = "from_segment_start"
    # Accumulates across the whole track.
    ALL = "all"


@dataclass(frozen=True)
class Sample:
    index: int
    timestamp: int
    value: float
    accuracy: float
    unit: str = ""

    @property
    def has_accuracy(self) -> bool:
        return self.accuracy > 0.0


@dataclass(frozen=True)
class Extremum:
    sample_index: int
    kind: ExtremumKind


@dataclass(frozen=True)
class SegmentThresholds:
    min_ascending_amplitude: float
    min_ascending_derivative: float
    min_descending_amplitude: float
    min_descending_derivative: float

    def __post_init__(self) -> None:
        for name in (
            "min_ascending_amplitude",
            "min_ascending_derivative",
            "min_descending_amplitude",
            "min_descending_derivative",
        ):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0.0:
                raise InvalidArgumentError(f"{name} must be a finite value >= 0, got {value!r}")

    @classmethod
    def from_deviation(cls, deviation: float) -> "SegmentThresholds":
        return cls(deviation, 0.0, deviation, 0.0)

    @property
    def deviation_threshold(self) -> float:
        """Minimum amplitude separating UP/DOWN spans from CONSTANT ones."""
        return max(self.min_ascending_amplitude, self.min_descending_amplitude)


@dataclass(frozen=True)
class Segment:
    start_index: int
    end_index: int
    start_time: int
    end_time: int
    start_value: float
    end_value: float
    trend: TrendType

    @property
    def duration_ms(self) -> int:
        return self.end_time - self.start_time

    @property
    def delta(self) -> float:
        return self.end_value - self.start_value


@dataclass(frozen=True)
class TrendStatistics:
    trend: TrendType
    abs_delta: float
    cumulative_abs_delta: float
    count: int


@dataclass(frozen=True)
class CumulativeStatistics:
    value: float = 0.0
    value_accuracy: float = 0.0
    unit: str = ""


@dataclass
class TrendBoundary:
    id: int
    segment: Segment
    statistics: TrendStatistics
    samples: List[Sample]

    @property
    def label(self) -> str:
        return str(self.id)

    @property
    def trend(self) -> TrendType:
        return self.segment.trend


@dataclass
class TrendTotals:
    cumulative_abs_delta: float = 0.0
    count: int = 0


CumulativeKey = Tuple[int, CumulativeProcessedDataType]


@dataclass
class CumulativeTable:
    """Per-sample cumulative values, keyed by sample index and data type."""

    entries: Dict[CumulativeKey, CumulativeStatistics] = field(default_factory=dict)

    def put(self, sample: Sample, kind: CumulativeProcessedDataType, stats: CumulativeStatistics) -> None:
        self.entries[(sample.index, kind)] = stats

    def get(self, sample: Sample, kind: CumulativeProcessedDataType) -> Optional[CumulativeStatistics]:
        return self.entries.get((sample.index, kind))

    def value_or_zero(self, sample: Sample, kind: CumulativeProcessedDataType) -> float:
        stats = self.get(sample, kind)
        return stats.value if stats is not None else 0.0

    def __contains__(self, key: CumulativeKey) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)


def to_float32(value: float) -> float:
    return float(np.float32(value))


# -----------------
# Threshold helpers
# -----------------

def population_stddev(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.std(np.asarray(values, dtype=np.float64)))


def thresholds_from_stddev(values: Sequence[float], factor: float = DEFAULT_THRESHOLD_FACTOR) -> SegmentThresholds:
    return SegmentThresholds.from_deviation(population_stddev(values) * factor)


def adaptive_thresholds(values: Sequence[float]) -> SegmentThresholds:
    # Range- and spread-aware amplitudes, floored to avoid over-sensitivity to noise.
    if len(values) == 0:
        return SegmentThresholds(
            MIN_ADAPTIVE_AMPLITUDE, MIN_ADAPTIVE_DERIVATIVE, MIN_ADAPTIVE_AMPLITUDE, MIN_ADAPTIVE_DERIVATIVE
        )
    arr = np.asarray(values, dtype=np.float64)
    spread = float(arr.max() - arr.min())
    amplitude = max(spread / 6.0, population_stddev(arr) / 2.0, MIN_ADAPTIVE_AMPLITUDE)
    return SegmentThresholds(amplitude, MIN_ADAPTIVE_DERIVATIVE, amplitude, MIN_ADAPTIVE_DERIVATIVE)


def make_samples(
    timestamps: Sequence[int],
    values: Sequence[float],
    accuracies: Optional[Sequence[float]] = None,
    unit: str = "",
) -> List[Sample]:
    if len(timestamps) != len(values):
        raise InvalidArgumentError("timestamps and values must have the same length")
    if accuracies is None:
        accuracies = [1.0] * len(values)
    elif len(accuracies) != len(values):
        raise InvalidArgumentError("accuracies and values must have the same length")
    return [
        Sample(index=i, timestamp=int(t), value=float(v), accuracy=float(a), unit=unit)
        for i, (t, v, a) in enumerate(zip(timestamps, values, accuracies))
    ]
