from __future__ import annotations

# CLI orchestration for trendseg. The engine lives in ts_signal/ts_segments
# and is driven end to end by ts_pipeline.analyze_track.

import csv
import json
import logging
from typing import Any, Dict, List, Optional

import typer

from ts_model import CumulativeProcessedDataType, Sample, TrendType
from ts_pipeline import TrendAnalysis, TrendConfig, analyze_track, load_config, resolve_thresholds, resolve_weights
from ts_signal import filter_by_accuracy


TIMESTAMP_COLUMNS = ("timestamp_ms", "timestamp", "time_ms")
SEGMENT_FIELDS = [
    "id",
    "trend",
    "start_index",
    "end_index",
    "start_time_ms",
    "end_time_ms",
    "start_value",
    "end_value",
    "abs_delta",
    "cumulative_abs_delta",
    "trend_count",
]
SAMPLE_FIELDS = [
    "index",
    "timestamp_ms",
    "value",
    "accuracy",
    "unit",
    "from_segment_start",
    "all",
]


def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    logging.getLogger().setLevel(level)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)


# -----------------
# CSV / JSON I/O
# -----------------

def read_samples_csv(path: str, unit: str = "") -> List[Sample]:
    """Read ``timestamp_ms,value[,accuracy][,unit]`` rows.

    A missing accuracy column means every sample is treated as accurate (1.0).
    """
    with open(path, "r", newline="") as fh:
        reader = csv.DictReader(fh)
        fields = set(reader.fieldnames or [])
        ts_col = next((c for c in TIMESTAMP_COLUMNS if c in fields), None)
        if ts_col is None or "value" not in fields:
            raise ValueError(f"{path}: expected columns timestamp_ms and value, got {sorted(fields)}")
        samples: List[Sample] = []
        for idx, raw in enumerate(reader):
            try:
                timestamp = int(float(raw[ts_col]))
                value = float(raw["value"])
                accuracy_raw = (raw.get("accuracy") or "").strip()
                accuracy = float(accuracy_raw) if accuracy_raw else 1.0
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{path}: failed to parse numeric fields in row {idx + 1}: {raw}") from exc
            row_unit = (raw.get("unit") or "").strip() or unit
            samples.append(Sample(index=idx, timestamp=timestamp, value=value, accuracy=accuracy, unit=row_unit))
    return samples


def write_segments_csv(path: str, analysis: TrendAnalysis) -> None:
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(SEGMENT_FIELDS)
        for boundary in analysis.boundaries:
            seg = boundary.segment
            stats = boundary.statistics
            writer.writerow([
                boundary.id,
                seg.trend.value,
                seg.start_index,
                seg.end_index,
                seg.start_time,
                seg.end_time,
                round(seg.start_value, 6),
                round(seg.end_value, 6),
                round(stats.abs_delta, 6),
                round(stats.cumulative_abs_delta, 6),
                stats.count,
            ])


def write_samples_csv(path: str, analysis: TrendAnalysis) -> None:
    table = analysis.cumulative
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(SAMPLE_FIELDS)
        for sample in analysis.samples:
            from_start = table.get(sample, CumulativeProcessedDataType.FROM_SEGMENT_START)
            total = table.get(sample, CumulativeProcessedDataType.ALL)
            writer.writerow([
                sample.index,
                sample.timestamp,
                sample.value,
                sample.accuracy,
                sample.unit,
                round(from_start.value, 6) if from_start is not None else None,
                round(total.value, 6) if total is not None else None,
            ])


def _summary(analysis: TrendAnalysis) -> Dict[str, Any]:
    return {
        trend.value: {"count": totals.count, "cumulative_abs_delta": totals.cumulative_abs_delta}
        for trend, totals in analysis.totals().items()
    }


def write_json_sidecar(path: str, analysis: TrendAnalysis, meta: Dict[str, Any]) -> None:
    thresholds = analysis.thresholds
    data = {
        "window": [float(w) for w in analysis.weights],
        "thresholds": None if thresholds is None else {
            "min_ascending_amplitude": thresholds.min_ascending_amplitude,
            "min_ascending_derivative": thresholds.min_ascending_derivative,
            "min_descending_amplitude": thresholds.min_descending_amplitude,
            "min_descending_derivative": thresholds.min_descending_derivative,
        },
        "extrema": [{"index": e.sample_index, "kind": e.kind.value} for e in analysis.extrema],
        "segments": [
            {
                "id": b.id,
                "trend": b.trend.value,
                "start_index": b.segment.start_index,
                "end_index": b.segment.end_index,
                "start_time_ms": b.segment.start_time,
                "end_time_ms": b.segment.end_time,
                "start_value": b.segment.start_value,
                "end_value": b.segment.end_value,
                "abs_delta": b.statistics.abs_delta,
                "cumulative_abs_delta": b.statistics.cumulative_abs_delta,
                "trend_count": b.statistics.count,
            }
            for b in analysis.boundaries
        ],
        "ascending_runs": [list(run) for run in analysis.ascending_runs],
        "descending_runs": [list(run) for run in analysis.descending_runs],
        "totals": _summary(analysis),
    }
    with open(path, "w", encoding="utf-8") as jf:
        json.dump({"meta": meta, "trends": data}, jf, indent=2)


def _sidecar_path(output: str) -> str:
    return output[:-4] + ".json" if output.lower().endswith(".csv") else output + ".json"


# -----------------
# Commands
# -----------------

def _build_config(
    config_path: Optional[str],
    *,
    max_accuracy: Optional[float] = None,
    window: Optional[str] = None,
    threshold_mode: Optional[str] = None,
    threshold_factor: Optional[float] = None,
    window_size: Optional[int] = None,
    window_preset: Optional[str] = None,
    epsilon: Optional[float] = None,
) -> TrendConfig:
    base = load_config(config_path) if config_path else TrendConfig()
    return base.with_overrides(
        max_accuracy=max_accuracy,
        window_type=window,
        threshold_mode=threshold_mode,
        threshold_factor=threshold_factor,
        window_size=window_size,
        window_preset=window_preset,
        epsilon=epsilon,
    )


def _run_segments(
    input_csv: str,
    output: str,
    samples_output: Optional[str] = None,
    json_sidecar: bool = False,
    config_path: Optional[str] = None,
    max_accuracy: Optional[float] = None,
    window: Optional[str] = None,
    threshold_mode: Optional[str] = None,
    threshold_factor: Optional[float] = None,
    window_size: Optional[int] = None,
    window_preset: Optional[str] = None,
    epsilon: Optional[float] = None,
    unit: str = "",
    verbose: bool = False,
    log_file: Optional[str] = None,
    profile: bool = False,
) -> int:
    _setup_logging(verbose, log_file=log_file)

    try:
        config = _build_config(
            config_path,
            max_accuracy=max_accuracy,
            window=window,
            threshold_mode=threshold_mode,
            threshold_factor=threshold_factor,
            window_size=window_size,
            window_preset=window_preset,
            epsilon=epsilon,
        )
        samples = read_samples_csv(input_csv, unit=unit)
        analysis = analyze_track(samples, config, profile=profile)
    except Exception as e:
        logging.error(str(e))
        return 2

    if analysis.is_empty:
        logging.error("No trend segments could be built from %s (%d usable samples).", input_csv, len(analysis.samples))
        return 3

    for trend in TrendType:
        totals = analysis.totals_by_trend[trend]
        logging.info("%-8s segments=%-4d cumulative |delta|=%.3f", trend.value, totals.count, totals.cumulative_abs_delta)

    try:
        write_segments_csv(output, analysis)
        logging.info("Wrote: %s", output)
        if samples_output:
            write_samples_csv(samples_output, analysis)
            logging.info("Wrote: %s", samples_output)
    except Exception as exc:
        logging.error(f"Failed to write output: {exc}")
        return 2

    if json_sidecar:
        json_path = _sidecar_path(output)
        try:
            meta = {
                "command": "segments",
                "input": input_csv,
                "output_csv": output,
                "n_input_samples": len(samples),
                "n_usable_samples": len(analysis.samples),
                "window_size": int(analysis.weights.size),
                "timings_s": analysis.timings,
                "params": {
                    "max_accuracy": config.max_accuracy,
                    "window_type": config.window_type.value,
                    "window_preset": config.window_preset,
                    "window_size": config.window_size,
                    "threshold_mode": config.threshold_mode,
                    "threshold_factor": config.threshold_factor,
                    "epsilon": config.epsilon,
                    "max_lag_divisor": config.max_lag_divisor,
                },
            }
            write_json_sidecar(json_path, analysis, meta)
            logging.info("Wrote JSON: %s", json_path)
        except Exception as exc:
            logging.warning("Failed to write JSON sidecar: %s", exc)

    return 0


def _run_window(
    input_csv: str,
    config_path: Optional[str] = None,
    max_accuracy: Optional[float] = None,
    window: Optional[str] = None,
    threshold_mode: Optional[str] = None,
    window_size: Optional[int] = None,
    window_preset: Optional[str] = None,
    verbose: bool = False,
) -> int:
    _setup_logging(verbose)
    try:
        config = _build_config(
            config_path,
            max_accuracy=max_accuracy,
            window=window,
            threshold_mode=threshold_mode,
            window_size=window_size,
            window_preset=window_preset,
        )
        filtered = filter_by_accuracy(read_samples_csv(input_csv), config.max_accuracy)
        thresholds = resolve_thresholds([s.value for s in filtered], config)
        weights = resolve_weights(filtered, thresholds, config)
    except Exception as e:
        logging.error(str(e))
        return 2

    typer.echo(f"size: {weights.size}")
    typer.echo(f"type: {config.window_preset or config.window_type.value}")
    typer.echo("weights: " + ", ".join(f"{w:.6f}" for w in weights))
    return 0


def _build_typer_app():
    app = typer.Typer(add_completion=False, help="Trend segmentation and cumulative statistics for track samples.")

    @app.command(name="segments")
    def segments(
        input_csv: str = typer.Argument(..., help="Input CSV with timestamp_ms,value[,accuracy][,unit] columns"),
        output: str = typer.Option("segments.csv", "--output", "-o", help="Output segment CSV path"),
        samples_output: Optional[str] = typer.Option(None, "--samples-output", help="Optional per-sample cumulative CSV path"),
        json_sidecar: bool = typer.Option(False, "--json/--no-json", help="Also write a JSON sidecar next to the CSV"),
        config: Optional[str] = typer.Option(None, "--config", help="Path to JSON config overrides"),
        max_accuracy: Optional[float] = typer.Option(None, "--max-accuracy", help="Drop samples with accuracy above this (default 50)"),
        window: Optional[str] = typer.Option(None, "--window", help="Window shape: gaussian|hanning|triangular"),
        thresholds: Optional[str] = typer.Option(None, "--thresholds", help="Threshold derivation: stddev|adaptive"),
        threshold_factor: Optional[float] = typer.Option(None, "--threshold-factor", help="Multiplier on population stddev (stddev mode)"),
        window_size: Optional[int] = typer.Option(None, "--window-size", help="Fixed odd window size instead of the adaptive estimate"),
        window_preset: Optional[str] = typer.Option(None, "--window-preset", help="Fixed window preset: default|alpine_ski"),
        epsilon: Optional[float] = typer.Option(None, "--epsilon", help="Derivative dead zone"),
        unit: str = typer.Option("", "--unit", help="Unit attached to cumulative values when the CSV has none"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path"),
        profile: bool = typer.Option(False, "--profile/--no-profile", help="Log stage timings"),
    ) -> None:
        """Segment a sample series into UP/DOWN/CONSTANT trends and save to CSV."""
        code = _run_segments(
            input_csv,
            output,
            samples_output=samples_output,
            json_sidecar=json_sidecar,
            config_path=config,
            max_accuracy=max_accuracy,
            window=window,
            threshold_mode=thresholds,
            threshold_factor=threshold_factor,
            window_size=window_size,
            window_preset=window_preset,
            epsilon=epsilon,
            unit=unit,
            verbose=verbose,
            log_file=log_file,
            profile=profile,
        )
        if code != 0:
            raise typer.Exit(code)

    @app.command(name="window")
    def window_cmd(
        input_csv: str = typer.Argument(..., help="Input CSV with timestamp_ms,value[,accuracy] columns"),
        config: Optional[str] = typer.Option(None, "--config", help="Path to JSON config overrides"),
        max_accuracy: Optional[float] = typer.Option(None, "--max-accuracy", help="Drop samples with accuracy above this"),
        window: Optional[str] = typer.Option(None, "--window", help="Window shape: gaussian|hanning|triangular"),
        thresholds: Optional[str] = typer.Option(None, "--thresholds", help="Threshold derivation: stddev|adaptive"),
        window_size: Optional[int] = typer.Option(None, "--window-size", help="Fixed odd window size"),
        window_preset: Optional[str] = typer.Option(None, "--window-preset", help="Fixed window preset: default|alpine_ski"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
    ) -> None:
        """Print the smoothing window the engine would use for INPUT_CSV."""
        code = _run_window(
            input_csv,
            config_path=config,
            max_accuracy=max_accuracy,
            window=window,
            threshold_mode=thresholds,
            window_size=window_size,
            window_preset=window_preset,
            verbose=verbose,
        )
        if code != 0:
            raise typer.Exit(code)

    return app


def main_cli() -> int:
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main_cli())
