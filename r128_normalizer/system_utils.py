from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, List, Optional, Tuple

import numpy as np

from .convergence import NormalizationConfig
from .dsp_utils import db_to_lin, true_peak_dbtp

VERSION = "1.0.0"

DEFAULT_PRESET = "EBU R128"

DEFAULT_PRESETS: dict[str, dict[str, Any]] = {
    "EBU R128": {
        "target_lufs": -23.0,
        "tolerance_lu": 0.5,
        "ceiling_dbtp": -1.0,
    },
    "EBU R128 S1": {
        # Short-form content (advertisements, trailers).
        "target_lufs": -23.0,
        "tolerance_lu": 0.5,
        "ceiling_dbtp": -1.0,
        "release_s": 0.4,
    },
    "Streaming": {
        "target_lufs": -14.0,
        "tolerance_lu": 0.5,
        "ceiling_dbtp": -1.0,
    },
    "Podcast": {
        "target_lufs": -16.0,
        "tolerance_lu": 0.5,
        "ceiling_dbtp": -1.5,
    },
    "ATSC A/85": {
        "target_lufs": -24.0,
        "tolerance_lu": 1.0,
        "ceiling_dbtp": -2.0,
    },
}


class ConfigManager:
    """Load/save normalization presets.

    A presets JSON file, when present, is merged over ``DEFAULT_PRESETS`` so
    user presets can add new names or override the built-in ones.
    """

    def __init__(self, presets_path: str | Path | None = None):
        self.presets_path = Path(presets_path) if presets_path else None

    def load_presets(self) -> dict[str, dict[str, Any]]:
        merged = {name: dict(values) for name, values in DEFAULT_PRESETS.items()}
        if self.presets_path is not None and self.presets_path.exists():
            presets = json.loads(self.presets_path.read_text(encoding="utf-8"))
            if not isinstance(presets, dict):
                raise ValueError(f"Presets file must hold a JSON object: {self.presets_path}")
            for name, values in presets.items():
                merged.setdefault(name, {}).update(values)
        return merged

    def save_presets(self, presets: dict[str, dict[str, Any]]) -> None:
        if self.presets_path is None:
            raise ValueError("ConfigManager has no presets_path to save to")
        self.presets_path.parent.mkdir(parents=True, exist_ok=True)
        self.presets_path.write_text(json.dumps(presets, indent=2), encoding="utf-8")

    def list_presets(self) -> list[str]:
        return sorted(self.load_presets().keys())

    def get_preset(self, name: str) -> dict[str, Any]:
        presets = self.load_presets()
        if name not in presets:
            raise KeyError(f"Unknown preset '{name}'. Available: {', '.join(sorted(presets))}")
        return dict(presets[name])

    def build_config(self, name: str = DEFAULT_PRESET, **overrides: Any) -> NormalizationConfig:
        """NormalizationConfig from a preset, with non-None overrides applied on top."""
        config = NormalizationConfig()
        known = {f.name for f in fields(config)}
        values = self.get_preset(name)
        values.update({k: v for k, v in overrides.items() if v is not None})
        for key, value in values.items():
            if key in known:
                setattr(config, key, value)
        config.validate()
        return config


def config_to_dict(config) -> dict[str, Any]:
    return asdict(config)


class TimeTracker:
    """Collect named timing sections for a single file."""

    class _Section:
        def __init__(self, tracker: "TimeTracker", label: str):
            self._tracker = tracker
            self._label = str(label)
            self._start = 0.0

        def __enter__(self):
            self._start = time.perf_counter()
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self._tracker.add(self._label, time.perf_counter() - self._start)

    def __init__(self, name: str = "normalize_file"):
        self.name = str(name)
        self._sections: List[Tuple[str, float]] = []
        self._t0 = time.perf_counter()
        self._t1: Optional[float] = None

    def section(self, label: str) -> "TimeTracker._Section":
        return TimeTracker._Section(self, label)

    def add(self, label: str, duration: float) -> None:
        self._sections.append((str(label), float(duration)))

    def stop(self) -> None:
        self._t1 = time.perf_counter()

    def total(self) -> float:
        end = self._t1 if self._t1 is not None else time.perf_counter()
        return float(end - self._t0)

    def as_dict(self) -> dict[str, float]:
        out = {name: dur for name, dur in self._sections}
        out["total"] = self.total()
        return out

    def summary(self) -> str:
        if not self._sections:
            return ""
        parts = [f"{name}={dur:.3f}s" for name, dur in self._sections]
        parts.append(f"total={self.total():.3f}s")
        return ", ".join(parts)


@dataclass
class TestResult:
    __test__ = False

    ok: bool
    message: str


class TestSuite:
    """Synthetic signals and quick checks used by the tests and the CLI self-test."""

    __test__ = False

    @staticmethod
    def generate_example(sr: int = 48000, seconds: float = 2.0, amplitude: float = 0.5, channels: int = 2) -> np.ndarray:
        """997 Hz sine, the BS.1770 reference tone, on every channel."""
        t = np.arange(int(sr * seconds)) / float(sr)
        tone = amplitude * np.sin(2.0 * np.pi * 997.0 * t)
        return np.repeat(tone[:, None], channels, axis=1)

    @staticmethod
    def generate_noise(
        sr: int = 48000,
        seconds: float = 2.0,
        level_dbfs: float = -20.0,
        channels: int = 2,
        seed: int = 0,
    ) -> np.ndarray:
        """Gaussian white noise with the given RMS level."""
        rng = np.random.default_rng(seed)
        noise = rng.standard_normal((int(sr * seconds), channels))
        return noise * float(db_to_lin(level_dbfs))

    @staticmethod
    def assert_within_ceiling(audio: np.ndarray, ceiling_dbtp: float, oversample: int = 4, slack_db: float = 1e-6) -> TestResult:
        if not np.isfinite(audio).all():
            return TestResult(False, "Non-finite samples detected.")
        tp = true_peak_dbtp(audio, oversample)
        if tp > ceiling_dbtp + slack_db:
            return TestResult(False, f"True peak {tp:.3f} dBTP exceeds ceiling {ceiling_dbtp:.2f} dBTP.")
        return TestResult(True, f"True peak {tp:.3f} dBTP within ceiling.")
