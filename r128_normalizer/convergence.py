"""Loudness convergence loop.

Gain application and true-peak limiting do not commute with loudness
measurement: limiting lowers the average level by an amount that depends on
the material. The controller therefore treats the meter and the limiter as
black boxes and closes a feedback loop around them:

    clone original -> apply cumulative gain -> limit -> measure -> correct gain

Every iteration starts again from the untouched input, so the only state that
crosses iterations is the cumulative gain (and the best loudness seen so far).
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

import numpy as np

from .dsp_utils import apply_gain, clone_buffer, validate_buffer
from .errors import ConvergenceError, NormalizationCancelled
from .limiter import TruePeakLimiter
from .loudness_meter import LOUDNESS_FLOOR_LUFS, BlockLoudness, LoudnessMeter

LOG = logging.getLogger(__name__)

StageProgress = Callable[[str, int, int], None]
IterationCallback = Callable[["IterationResult"], None]
GainStage = Callable[[np.ndarray, float], None]

STAGE_MEASURE_INPUT = "measure_input"
STAGE_LIMIT = "limit"
STAGE_MEASURE_OUTPUT = "measure_output"


@dataclass
class NormalizationConfig:
    target_lufs: float = -23.0
    tolerance_lu: float = 0.5
    ceiling_dbtp: float = -1.0
    max_iterations: int = 10
    # Bound on |cumulative gain|; keeps near-floor inputs from asking for absurd gain.
    max_gain_db: float = 60.0
    lookahead_s: float = 0.001
    release_s: float = 0.8
    true_peak_oversample: int = 4

    def validate(self) -> None:
        if not self.tolerance_lu > 0.0:
            raise ValueError(f"tolerance_lu must be > 0, got {self.tolerance_lu!r}")
        if int(self.max_iterations) < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations!r}")
        if not self.max_gain_db > 0.0:
            raise ValueError(f"max_gain_db must be > 0, got {self.max_gain_db!r}")
        if int(self.true_peak_oversample) < 1:
            raise ValueError(f"true_peak_oversample must be >= 1, got {self.true_peak_oversample!r}")
        if self.lookahead_s < 0.0 or self.release_s < 0.0:
            raise ValueError("lookahead_s and release_s must be >= 0")


class NormalizationStatus(str, Enum):
    ALREADY_NORMALIZED = "already_normalized"
    CONVERGED = "converged"
    NOT_CONVERGED = "not_converged"
    # Nothing passed the absolute gate: silent, or shorter than one 400 ms block.
    SILENT = "silent"


@dataclass
class IterationResult:
    index: int
    gain_db: float
    loudness_lufs: float
    true_peak_dbtp: Optional[float] = None


@dataclass
class NormalizationResult:
    buffer: np.ndarray
    status: NormalizationStatus
    target_lufs: float
    input_lufs: float
    output_lufs: float
    gain_db: float
    iterations: List[IterationResult] = field(default_factory=list)
    blocks: List[BlockLoudness] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status in (NormalizationStatus.ALREADY_NORMALIZED, NormalizationStatus.CONVERGED)

    @property
    def error_lu(self) -> float:
        return float(self.target_lufs - self.output_lufs)


class CancellationToken:
    """Thread-safe flag checked between iterations and on every progress tick."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise NormalizationCancelled("Normalization cancelled")


class ConvergenceController:
    """Drive measure -> gain -> limit -> measure until loudness is on target."""

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        meter: Optional[LoudnessMeter] = None,
        limiter: Optional[TruePeakLimiter] = None,
        gain_stage: GainStage = apply_gain,
        on_progress: Optional[StageProgress] = None,
        on_iteration: Optional[IterationCallback] = None,
    ):
        self.config = config or NormalizationConfig()
        self.config.validate()
        self.meter = meter or LoudnessMeter()
        self.limiter = limiter or TruePeakLimiter(oversample=self.config.true_peak_oversample)
        self.gain_stage = gain_stage
        self.on_progress = on_progress
        self.on_iteration = on_iteration

    def run(
        self,
        buffer: np.ndarray,
        sample_rate: float,
        cancel: Optional[CancellationToken] = None,
        strict: bool = False,
    ) -> NormalizationResult:
        cfg = self.config
        source = validate_buffer(buffer, sample_rate)
        shape = np.shape(buffer)
        target = float(cfg.target_lufs)
        self.meter.prepare(sample_rate, source.shape[1])

        input_lufs, blocks = self._measure(source, STAGE_MEASURE_INPUT, cancel)
        LOG.info("Input integrated loudness: %.2f LUFS", input_lufs)

        if input_lufs <= LOUDNESS_FLOOR_LUFS:
            LOG.warning("No measurable content (silent, or too short to measure); applying ceiling only, no gain.")
            candidate, _ = self._render(source, sample_rate, 0.0, cancel)
            return NormalizationResult(
                buffer=candidate.reshape(shape),
                status=NormalizationStatus.SILENT,
                target_lufs=target,
                input_lufs=input_lufs,
                output_lufs=input_lufs,
                gain_db=0.0,
                blocks=blocks,
            )

        if abs(target - input_lufs) <= cfg.tolerance_lu:
            LOG.info("Already within %.2f LU of %.2f LUFS; leaving untouched.", cfg.tolerance_lu, target)
            return NormalizationResult(
                buffer=clone_buffer(source).reshape(shape),
                status=NormalizationStatus.ALREADY_NORMALIZED,
                target_lufs=target,
                input_lufs=input_lufs,
                output_lufs=input_lufs,
                gain_db=0.0,
                blocks=blocks,
            )

        gain = self._clamp_gain(target - input_lufs)
        iterations: List[IterationResult] = []
        best: Optional[IterationResult] = None
        best_blocks: List[BlockLoudness] = []
        candidate: Optional[np.ndarray] = None

        for index in range(1, int(cfg.max_iterations) + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()

            # Drop the previous candidate before cloning the next one.
            candidate = None
            candidate, limiter_info = self._render(source, sample_rate, gain, cancel)
            loudness, blocks = self._measure(candidate, STAGE_MEASURE_OUTPUT, cancel)

            step = IterationResult(index, gain, loudness, limiter_info.get("true_peak_dbtp"))
            iterations.append(step)
            LOG.info("Output integrated loudness %d: %.2f LUFS (gain %+.2f dB)", index, loudness, gain)
            if self.on_iteration is not None:
                self.on_iteration(step)

            if best is None or abs(target - loudness) < abs(target - best.loudness_lufs):
                best, best_blocks = step, blocks

            if abs(target - loudness) <= cfg.tolerance_lu:
                return NormalizationResult(
                    buffer=candidate.reshape(shape),
                    status=NormalizationStatus.CONVERGED,
                    target_lufs=target,
                    input_lufs=input_lufs,
                    output_lufs=loudness,
                    gain_db=gain,
                    iterations=iterations,
                    blocks=blocks,
                )

            next_gain = self._clamp_gain(gain + (target - loudness))
            if next_gain == gain:
                LOG.warning("Gain pinned at %+.2f dB; further iterations cannot move loudness.", gain)
                break
            gain = next_gain

        LOG.warning(
            "Loudness did not converge after %d iteration(s): best %.2f LUFS (target %.2f, tolerance %.2f LU).",
            len(iterations),
            best.loudness_lufs,
            target,
            cfg.tolerance_lu,
        )
        if best is not iterations[-1]:
            candidate = None
            candidate, _ = self._render(source, sample_rate, best.gain_db, cancel)

        result = NormalizationResult(
            buffer=candidate.reshape(shape),
            status=NormalizationStatus.NOT_CONVERGED,
            target_lufs=target,
            input_lufs=input_lufs,
            output_lufs=best.loudness_lufs,
            gain_db=best.gain_db,
            iterations=iterations,
            blocks=best_blocks,
        )
        if strict:
            raise ConvergenceError(
                f"Loudness did not converge: {best.loudness_lufs:.2f} LUFS vs target {target:.2f} LUFS",
                result=result,
            )
        return result

    def _clamp_gain(self, gain_db: float) -> float:
        bound = float(self.config.max_gain_db)
        clamped = float(np.clip(gain_db, -bound, bound))
        if clamped != gain_db:
            LOG.debug("Gain %.2f dB clamped to %.2f dB", gain_db, clamped)
        return clamped

    def _render(self, source: np.ndarray, sample_rate: float, gain_db: float, cancel) -> tuple[np.ndarray, Dict]:
        candidate = clone_buffer(source)
        self.gain_stage(candidate, gain_db)
        LOG.info("Gain applied: %+.2f dB", gain_db)
        cfg = self.config
        info = self.limiter.process_buffer(
            candidate,
            cfg.ceiling_dbtp,
            sample_rate,
            lookahead_s=cfg.lookahead_s,
            release_s=cfg.release_s,
            on_progress=self._forward(STAGE_LIMIT, cancel),
        )
        LOG.info("Limiting finished: %s", info)
        return candidate, info or {}

    def _measure(self, buffer: np.ndarray, stage: str, cancel) -> tuple[float, List[BlockLoudness]]:
        self.meter.start_integrated()
        blocks = self.meter.process_buffer(buffer, self._forward(stage, cancel))
        self.meter.stop_integrated()
        return float(self.meter.integrated_loudness), blocks

    def _forward(self, stage: str, cancel: Optional[CancellationToken]):
        if self.on_progress is None and cancel is None:
            return None

        def _tick(current: int, total: int) -> None:
            if cancel is not None:
                cancel.raise_if_cancelled()
            if self.on_progress is not None:
                self.on_progress(stage, current, total)

        return _tick


def normalize(
    buffer: np.ndarray,
    sample_rate: float,
    target_lufs: float = -23.0,
    tolerance_lu: float = 0.5,
    ceiling_dbtp: float = -1.0,
    *,
    max_iterations: int = 10,
    on_progress: Optional[StageProgress] = None,
    cancel: Optional[CancellationToken] = None,
    strict: bool = False,
) -> np.ndarray:
    """Return a loudness-normalized, true-peak-limited copy of ``buffer``.

    The input is never modified. When the loop cannot settle within
    ``max_iterations`` the closest candidate is returned and a warning is
    logged; pass ``strict=True`` to get a ``ConvergenceError`` instead.
    """
    config = NormalizationConfig(
        target_lufs=target_lufs,
        tolerance_lu=tolerance_lu,
        ceiling_dbtp=ceiling_dbtp,
        max_iterations=max_iterations,
    )
    controller = ConvergenceController(config, on_progress=on_progress)
    return controller.run(buffer, sample_rate, cancel=cancel, strict=strict).buffer
