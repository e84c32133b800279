from __future__ import annotations

import json
import math
import os
import tempfile
import unittest

import numpy as np

import ts_segments
from ts_model import (
    CumulativeProcessedDataType,
    ExtremumKind,
    InvalidArgumentError,
    SegmentThresholds,
    TrendType,
    WindowType,
    make_samples,
)
from ts_pipeline import TrendConfig, analyze_track, load_config


ALL = CumulativeProcessedDataType.ALL


def _scenario_a():
    return make_samples([0, 1000, 2000, 3000], [0.0, 10.0, 5.0, 15.0], [1.0, 1.0, 1.0, 1.0])


def _assert_covers(test: unittest.TestCase, analysis) -> None:
    samples = analysis.samples
    errors = ts_segments.coverage_errors(analysis.segments, samples[0].timestamp, samples[-1].timestamp)
    test.assertEqual(errors, [])


class TestPipelineScenarios(unittest.TestCase):
    def test_up_down_up_track(self) -> None:
        analysis = analyze_track(_scenario_a())
        self.assertEqual(analysis.weights.size, 3)
        self.assertEqual(
            [(e.sample_index, e.kind) for e in analysis.extrema],
            [(1, ExtremumKind.MAX), (2, ExtremumKind.MIN), (3, ExtremumKind.MAX)],
        )
        self.assertEqual(
            [s.trend for s in analysis.segments],
            [TrendType.UP, TrendType.DOWN, TrendType.UP],
        )
        self.assertEqual(analysis.segments[0].start_time, 0)
        self.assertEqual(analysis.segments[-1].end_time, 3000)
        _assert_covers(self, analysis)

    def test_monotonic_series_is_single_up_segment(self) -> None:
        samples = make_samples([i * 1000 for i in range(100)], [float(i) for i in range(100)])
        analysis = analyze_track(samples)
        self.assertEqual(analysis.extrema, [])
        self.assertEqual(len(analysis.segments), 1)
        segment = analysis.segments[0]
        self.assertIs(segment.trend, TrendType.UP)
        self.assertEqual((segment.start_time, segment.end_time), (0, 99000))

    def test_flat_series_is_constant(self) -> None:
        samples = make_samples([i * 1000 for i in range(40)], [3.0] * 40)
        analysis = analyze_track(samples)
        self.assertEqual(analysis.extrema, [])
        self.assertEqual([s.trend for s in analysis.segments], [TrendType.CONSTANT])
        self.assertEqual(analysis.totals_by_trend[TrendType.UP].count, 0)
        self.assertEqual(analysis.totals_by_trend[TrendType.CONSTANT].count, 1)

    def test_unknown_accuracy_sample_dropped(self) -> None:
        values = [math.sin(i / 3.0) * 10.0 for i in range(30)]
        accuracies = [1.0] * 30
        accuracies[15] = 0.0
        accuracies[29] = 0.0
        samples = make_samples([i * 1000 for i in range(30)], values, accuracies)
        analysis = analyze_track(samples)
        self.assertNotIn(15, [s.index for s in analysis.samples])
        self.assertEqual(len(analysis.samples), 28)
        self.assertEqual(analysis.segments[0].start_time, 0)
        self.assertEqual(analysis.segments[-1].end_time, 28000)
        _assert_covers(self, analysis)
        self.assertNotIn((15, ALL), analysis.cumulative)

    def test_too_few_usable_samples(self) -> None:
        samples = make_samples([0, 1000, 2000], [1.0, 2.0, 3.0], [1.0, 0.0, 1.0])
        with self.assertLogs(level="WARNING"):
            analysis = analyze_track(samples)
        self.assertTrue(analysis.is_empty)
        self.assertEqual(analysis.segments, [])
        self.assertEqual(len(analysis.cumulative), 0)

    def test_unsorted_input_is_time_ordered(self) -> None:
        ordered = _scenario_a()
        shuffled = [ordered[2], ordered[0], ordered[3], ordered[1]]
        analysis = analyze_track(shuffled)
        self.assertEqual([s.timestamp for s in analysis.samples], [0, 1000, 2000, 3000])
        self.assertEqual(
            [s.trend for s in analysis.segments],
            [TrendType.UP, TrendType.DOWN, TrendType.UP],
        )


class TestPipelineStatistics(unittest.TestCase):
    def setUp(self) -> None:
        n = 300
        values = [20.0 * math.sin(i / 15.0) + 0.5 * math.sin(i * 1.7) for i in range(n)]
        self.samples = make_samples([i * 1000 for i in range(n)], values)
        self.analysis = analyze_track(self.samples)

    def test_segments_tile_the_track(self) -> None:
        _assert_covers(self, self.analysis)
        self.assertGreater(len(self.analysis.segments), 3)

    def test_all_value_tracks_net_change(self) -> None:
        first = self.samples[0].value
        for sample in self.samples[1:]:
            stats = self.analysis.cumulative.get(sample, ALL)
            self.assertIsNotNone(stats)
            self.assertAlmostEqual(stats.value, sample.value - first, places=3)

    def test_trend_counts_are_sequential(self) -> None:
        seen = {trend: 0 for trend in TrendType}
        for boundary in self.analysis.boundaries:
            seen[boundary.trend] += 1
            self.assertEqual(boundary.statistics.count, seen[boundary.trend])
        totals = self.analysis.totals()
        for trend in TrendType:
            self.assertEqual(totals[trend].count, seen[trend])

    def test_totals_are_copies(self) -> None:
        totals = self.analysis.totals()
        totals[TrendType.UP].count += 100
        self.assertNotEqual(self.analysis.totals_by_trend[TrendType.UP].count, totals[TrendType.UP].count)

    def test_runs_are_reported(self) -> None:
        self.assertTrue(self.analysis.ascending_runs)
        self.assertTrue(self.analysis.descending_runs)
        for start, end in self.analysis.ascending_runs + self.analysis.descending_runs:
            self.assertLess(start, end)

    def test_profile_records_stage_timings(self) -> None:
        analysis = analyze_track(self.samples, profile=True)
        for stage in ("filter", "window", "smooth", "extrema", "segments", "cumulative"):
            self.assertIn(stage, analysis.timings)


class TestPipelineConfig(unittest.TestCase):
    def _write(self, payload) -> str:
        fd, path = tempfile.mkstemp(suffix=".json")
        with os.fdopen(fd, "w") as fh:
            json.dump(payload, fh)
        self.addCleanup(os.remove, path)
        return path

    def test_load_config_skips_bad_entries(self) -> None:
        path = self._write({"window_type": "hanning", "thresholds": 2.5, "bogus": 1, "max_lag_divisor": "x"})
        with self.assertLogs(level="WARNING") as logs:
            config = load_config(path)
        self.assertIs(config.window_type, WindowType.HANNING)
        self.assertEqual(config.thresholds, SegmentThresholds.from_deviation(2.5))
        self.assertEqual(config.max_lag_divisor, 200)
        self.assertEqual(len(logs.records), 2)

    def test_load_config_threshold_mapping(self) -> None:
        path = self._write({"thresholds": {"min_ascending_amplitude": 3, "min_descending_amplitude": 1}})
        config = load_config(path)
        self.assertEqual(config.thresholds.deviation_threshold, 3.0)
        self.assertEqual(config.thresholds.min_ascending_derivative, 0.0)

    def test_load_config_rejects_non_object_and_bad_window(self) -> None:
        with self.assertRaises(InvalidArgumentError):
            load_config(self._write([1, 2, 3]))
        with self.assertRaises(InvalidArgumentError):
            load_config(self._write({"window_type": "boxcar"}))

    def test_overrides_revalidate(self) -> None:
        config = TrendConfig().with_overrides(window_type="triangular", epsilon=None)
        self.assertIs(config.window_type, WindowType.TRIANGULAR)
        self.assertEqual(config.epsilon, 1e-12)
        with self.assertRaises(InvalidArgumentError):
            TrendConfig(threshold_mode="median")

    def test_window_preset_and_fixed_size(self) -> None:
        samples = _scenario_a()
        self.assertEqual(analyze_track(samples, TrendConfig(window_preset="alpine_ski")).weights.size, 9)
        self.assertEqual(analyze_track(samples, TrendConfig(window_size=5)).weights.size, 5)

    def test_explicit_thresholds_suppress_trends(self) -> None:
        config = TrendConfig(thresholds=SegmentThresholds.from_deviation(100.0))
        analysis = analyze_track(_scenario_a(), config)
        self.assertTrue(analysis.segments)
        self.assertTrue(all(s.trend is TrendType.CONSTANT for s in analysis.segments))
        _assert_covers(self, analysis)

    def test_adaptive_thresholds(self) -> None:
        analysis = analyze_track(_scenario_a(), TrendConfig(threshold_mode="adaptive"))
        # stddev/2 (~2.795) beats range/6 (2.5) for this track
        self.assertAlmostEqual(analysis.thresholds.min_ascending_amplitude, math.sqrt(31.25) / 2.0)
        self.assertEqual(analysis.thresholds.min_ascending_derivative, 0.001)
        np.testing.assert_allclose(float(np.sum(analysis.weights)), 1.0)


if __name__ == "__main__":
    unittest.main()
