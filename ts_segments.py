from __future__ import annotations

import logging
from typing import Dict, List, NamedTuple, Optional, Sequence

from ts_model import (
    CumulativeProcessedDataType,
    CumulativeStatistics,
    CumulativeTable,
    Extremum,
    ExtremumKind,
    Sample,
    Segment,
    SegmentThresholds,
    TrendBoundary,
    TrendStatistics,
    TrendTotals,
    TrendType,
    to_float32,
)


MIN_SEGMENT_SAMPLES = 3
# Smoothing round-off on a flat series must not read as a trend.
DELTA_TOLERANCE = 1e-9


# -----------------
# Segment building
# -----------------

def _classify_delta(delta: float, threshold: float, *, inclusive: bool) -> TrendType:
    significant = abs(delta) >= threshold if inclusive else abs(delta) > threshold
    if not significant or abs(delta) <= DELTA_TOLERANCE:
        return TrendType.CONSTANT
    return TrendType.UP if delta > 0.0 else TrendType.DOWN


def _span_segment(samples: Sequence[Sample], start: int, end: int, trend: TrendType) -> Segment:
    p1 = samples[start]
    p2 = samples[end]
    return Segment(start, end, p1.timestamp, p2.timestamp, p1.value, p2.value, trend)


def _boundary_segment(samples: Sequence[Sample], start: int, end: int, threshold: float) -> Segment:
    delta = samples[end].value - samples[start].value
    return _span_segment(samples, start, end, _classify_delta(delta, threshold, inclusive=True))


def _pair_segment(
    samples: Sequence[Sample],
    e1: Extremum,
    e2: Extremum,
    threshold: float,
) -> Optional[Segment]:
    p1 = samples[e1.sample_index]
    p2 = samples[e2.sample_index]
    if p2.timestamp - p1.timestamp <= 0:
        return None
    amplitude = abs(p2.value - p1.value)
    if amplitude < threshold:
        return None
    if e1.kind is ExtremumKind.MIN and e2.kind is ExtremumKind.MAX and p2.value > p1.value:
        return _span_segment(samples, e1.sample_index, e2.sample_index, TrendType.UP)
    if e1.kind is ExtremumKind.MAX and e2.kind is ExtremumKind.MIN and p1.value > p2.value:
        return _span_segment(samples, e1.sample_index, e2.sample_index, TrendType.DOWN)
    return None


def build_segments(
    smoothed: Sequence[Sample],
    extrema: Sequence[Extremum],
    thresholds: SegmentThresholds,
) -> List[Segment]:
    """Segments between consecutive extrema plus synthesized leading/trailing runs.

    Candidates below the deviation threshold are dropped; the gap filler turns the
    resulting holes into connector segments.
    """
    n = len(smoothed)
    if n < MIN_SEGMENT_SAMPLES:
        return []
    threshold = thresholds.deviation_threshold

    if not extrema:
        return [_boundary_segment(smoothed, 0, n - 1, threshold)]

    segments: List[Segment] = []
    first_index = extrema[0].sample_index
    if first_index != 0:
        segments.append(_boundary_segment(smoothed, 0, first_index, threshold))

    rejected = 0
    for e1, e2 in zip(extrema, extrema[1:]):
        segment = _pair_segment(smoothed, e1, e2, threshold)
        if segment is None:
            rejected += 1
            continue
        segments.append(segment)

    tail_start = segments[-1].end_index if segments else first_index
    if tail_start < n - 1:
        segments.append(_boundary_segment(smoothed, tail_start, n - 1, threshold))

    segments.sort(key=lambda s: s.start_index)
    logging.debug(
        "Segment builder: %d extrema -> %d segments (%d pairs below threshold %.4g)",
        len(extrema),
        len(segments),
        rejected,
        threshold,
    )
    return segments


# -----------------
# Gap filling
# -----------------

def _time_order_key(segment: Segment):
    return (segment.start_time, segment.start_index)


def fill_gaps(segments: Sequence[Segment], thresholds: SegmentThresholds) -> List[Segment]:
    """Insert connector segments so consecutive segments share their boundary sample."""
    if not segments:
        return []
    threshold = thresholds.deviation_threshold
    ordered = sorted(segments, key=_time_order_key)
    filled: List[Segment] = [ordered[0]]
    for prev, segment in zip(ordered, ordered[1:]):
        if prev.end_time != segment.start_time or prev.end_index != segment.start_index:
            trend = _classify_delta(segment.start_value - prev.end_value, threshold, inclusive=False)
            filled.append(
                Segment(
                    prev.end_index,
                    segment.start_index,
                    prev.end_time,
                    segment.start_time,
                    prev.end_value,
                    segment.start_value,
                    trend,
                )
            )
        filled.append(segment)
    filled.sort(key=_time_order_key)
    return filled


def coverage_errors(segments: Sequence[Segment], start_time: int, end_time: int) -> List[str]:
    """Describe every way ``segments`` fail to tile ``[start_time, end_time]``."""
    if not segments:
        return ["no segments"]
    errors: List[str] = []
    if segments[0].start_time != start_time:
        errors.append(f"first segment starts at {segments[0].start_time}, expected {start_time}")
    if segments[-1].end_time != end_time:
        errors.append(f"last segment ends at {segments[-1].end_time}, expected {end_time}")
    for idx, (prev, current) in enumerate(zip(segments, segments[1:]), start=1):
        if prev.end_time != current.start_time:
            errors.append(
                f"segment {idx} starts at {current.start_time} but previous ends at {prev.end_time}"
            )
    for idx, segment in enumerate(segments):
        if segment.start_index > segment.end_index or segment.start_time > segment.end_time:
            errors.append(f"segment {idx} is reversed")
    return errors


def _assert_total_coverage(segments: Sequence[Segment], samples: Sequence[Sample]) -> None:
    if not logging.getLogger().isEnabledFor(logging.DEBUG):
        return
    if not samples:
        return
    errors = coverage_errors(segments, samples[0].timestamp, samples[-1].timestamp)
    if errors:
        raise AssertionError("Segment coverage violated: " + "; ".join(errors))


# -----------------
# Cumulative statistics
# -----------------

class CumulativeResult(NamedTuple):
    boundaries: List[TrendBoundary]
    table: CumulativeTable
    totals: Dict[TrendType, TrendTotals]


def map_cumulative_statistics(samples: Sequence[Sample], segments: Sequence[Segment]) -> CumulativeResult:
    """Attach trend statistics to each segment and cumulative values to each sample.

    Running totals are kept per trend type. Per-sample values are the running sum of
    sample deltas since the segment start (FROM_SEGMENT_START) and that sum plus the
    ALL value of the previous segment's last sample (ALL). The first sample of a
    segment keeps the entries written by the previous segment.
    """
    totals: Dict[TrendType, TrendTotals] = {trend: TrendTotals() for trend in TrendType}
    table = CumulativeTable()
    boundaries: List[TrendBoundary] = []
    prev_segment: Optional[Segment] = None

    for segment_id, segment in enumerate(segments):
        segment_samples = list(samples[segment.start_index:segment.end_index + 1])
        if not segment_samples:
            logging.warning("Segment %d maps to no samples (%d..%d)", segment_id, segment.start_index, segment.end_index)
            continue

        abs_delta = abs(segment_samples[-1].value - segment_samples[0].value)
        running = totals[segment.trend]
        running.cumulative_abs_delta += abs_delta
        running.count += 1
        statistics = TrendStatistics(
            trend=segment.trend,
            abs_delta=to_float32(abs_delta),
            cumulative_abs_delta=to_float32(running.cumulative_abs_delta),
            count=running.count,
        )

        carried = 0.0
        if prev_segment is not None:
            carried = table.value_or_zero(samples[prev_segment.end_index], CumulativeProcessedDataType.ALL)

        from_start = 0.0
        for prev_sample, sample in zip(segment_samples, segment_samples[1:]):
            from_start += sample.value - prev_sample.value
            accuracy = to_float32(sample.accuracy)
            table.put(
                sample,
                CumulativeProcessedDataType.FROM_SEGMENT_START,
                CumulativeStatistics(to_float32(from_start), accuracy, sample.unit),
            )
            table.put(
                sample,
                CumulativeProcessedDataType.ALL,
                CumulativeStatistics(to_float32(carried + from_start), accuracy, sample.unit),
            )

        boundaries.append(TrendBoundary(segment_id, segment, statistics, segment_samples))
        prev_segment = segment

    return CumulativeResult(boundaries, table, totals)
