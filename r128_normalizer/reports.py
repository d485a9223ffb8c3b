from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Iterable

from .loudness_meter import BlockLoudness

LOG = logging.getLogger(__name__)

# Display floor for the block report; quieter blocks print as this value.
REPORT_FLOOR_LU = -100.0


def write_loudness_report(blocks: Iterable[BlockLoudness], path: str | Path) -> Path:
    """One line per 100 ms block: index, momentary, short-term loudness."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = ["Index, Momentary, ShortTerm"]
    for block in blocks:
        momentary = max(block.momentary, REPORT_FLOOR_LU)
        short_term = max(block.short_term, REPORT_FLOOR_LU)
        lines.append(f"{block.index}, {momentary:.2f}, {short_term:.2f}")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


class NormalizationLogger:
    """Appends one JSON entry per normalized file to a log file."""

    def __init__(self, log_path: str | Path = "normalization_log.json"):
        self.log_path = Path(log_path)
        self.logs = self._load()

    def _load(self) -> list[dict]:
        if self.log_path.exists():
            try:
                data = json.loads(self.log_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                LOG.warning("Ignoring unreadable log %s; starting a new one.", self.log_path)
                return []
            return data if isinstance(data, list) else []
        return []

    def _write(self) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path.write_text(json.dumps(self.logs, indent=2), encoding="utf-8")

    def record(self, report) -> None:
        """Record a ``pipeline.FileReport``."""
        entry = {
            "timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
            "render_name": Path(report.output_path).stem,
            "input": str(report.input_path),
            "output": str(report.output_path),
            "status": report.status,
            "metrics": {
                "sample_rate": report.sample_rate,
                "channels": report.channels,
                "duration_s": report.duration_s,
                "input_lufs": report.input_lufs,
                "output_lufs": report.output_lufs,
                "gain_db": report.gain_db,
                "iterations": report.iterations,
                "true_peak_dbtp": report.true_peak_dbtp,
            },
            "config": report.config,
            "timings": report.timings,
        }
        self.logs.append(entry)
        self._write()
