from __future__ import annotations

import csv
import json
import logging
import os
import shutil
import tempfile
import unittest

from typer.testing import CliRunner

import ts_cli


class TestCli(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp)
        root = logging.getLogger()
        self.addCleanup(root.setLevel, root.level)
        self.runner = CliRunner()
        self.app = ts_cli._build_typer_app()

    def _csv(self, name: str, header, rows) -> str:
        path = os.path.join(self.tmp, name)
        with open(path, "w", newline="") as fh:
            writer = csv.writer(fh)
            writer.writerow(header)
            writer.writerows(rows)
        return path

    def _track(self) -> str:
        return self._csv(
            "track.csv",
            ["timestamp_ms", "value", "accuracy"],
            [[0, 0.0, 1.0], [1000, 10.0, 1.0], [2000, 5.0, 1.0], [3000, 15.0, 1.0]],
        )

    def test_read_samples_csv_defaults(self) -> None:
        path = self._csv("plain.csv", ["timestamp", "value", "unit"], [[0, 1.5, "m"], [1000, 2.5, ""]])
        samples = ts_cli.read_samples_csv(path, unit="ft")
        self.assertEqual([s.accuracy for s in samples], [1.0, 1.0])
        self.assertEqual([s.unit for s in samples], ["m", "ft"])
        self.assertEqual([s.index for s in samples], [0, 1])

    def test_read_samples_csv_rejects_missing_columns(self) -> None:
        path = self._csv("bad.csv", ["timestamp_ms", "altitude"], [[0, 1.0]])
        with self.assertRaises(ValueError):
            ts_cli.read_samples_csv(path)

    def test_segments_command_writes_outputs(self) -> None:
        out = os.path.join(self.tmp, "segments.csv")
        samples_out = os.path.join(self.tmp, "samples.csv")
        result = self.runner.invoke(
            self.app,
            ["segments", self._track(), "-o", out, "--samples-output", samples_out, "--json"],
        )
        self.assertEqual(result.exit_code, 0, result.output)

        with open(out, newline="") as fh:
            rows = list(csv.DictReader(fh))
        self.assertEqual([r["trend"] for r in rows], ["UP", "DOWN", "UP"])
        self.assertEqual(rows[0]["start_time_ms"], "0")
        self.assertEqual(rows[-1]["end_time_ms"], "3000")
        self.assertEqual([r["trend_count"] for r in rows], ["1", "1", "2"])

        with open(samples_out, newline="") as fh:
            sample_rows = list(csv.DictReader(fh))
        self.assertEqual(len(sample_rows), 4)
        self.assertEqual(sample_rows[0]["all"], "")
        self.assertAlmostEqual(float(sample_rows[-1]["all"]), 15.0)

        with open(os.path.join(self.tmp, "segments.json")) as fh:
            sidecar = json.load(fh)
        self.assertEqual(sidecar["meta"]["n_usable_samples"], 4)
        self.assertEqual(len(sidecar["trends"]["segments"]), 3)
        self.assertEqual(sidecar["trends"]["totals"]["UP"]["count"], 2)

    def test_segments_command_error_codes(self) -> None:
        out = os.path.join(self.tmp, "segments.csv")
        bad = self._csv("bad.csv", ["timestamp_ms", "altitude"], [[0, 1.0]])
        result = self.runner.invoke(self.app, ["segments", bad, "-o", out])
        self.assertEqual(result.exit_code, 2)

        short = self._csv("short.csv", ["timestamp_ms", "value"], [[0, 1.0], [1000, 2.0]])
        result = self.runner.invoke(self.app, ["segments", short, "-o", out])
        self.assertEqual(result.exit_code, 3)
        self.assertFalse(os.path.exists(out))

        result = self.runner.invoke(self.app, ["segments", self._track(), "-o", out, "--window", "boxcar"])
        self.assertEqual(result.exit_code, 2)

    def test_window_command(self) -> None:
        result = self.runner.invoke(self.app, ["window", self._track()])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("size: 3", result.output)
        self.assertIn("type: gaussian", result.output)

        result = self.runner.invoke(self.app, ["window", self._track(), "--window-preset", "alpine_ski"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("size: 9", result.output)


if __name__ == "__main__":
    unittest.main()
