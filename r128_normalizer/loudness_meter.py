from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from pyloudnorm.iirfilter import IIRfilter

from .dsp_utils import ensure_2d
from .errors import MeterStateError

LOG = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

BLOCK_STEP_S = 0.1
MOMENTARY_WINDOW_S = 0.4
SHORT_TERM_WINDOW_S = 3.0
ABSOLUTE_GATE_LUFS = -70.0
RELATIVE_GATE_LU = -10.0
# Reported when nothing passes the absolute gate (silence).
LOUDNESS_FLOOR_LUFS = -120.0


@dataclass
class BlockLoudness:
    index: int
    momentary: float
    short_term: float


def channel_weights(channels: int) -> np.ndarray:
    """BS.1770 channel weights for the common layouts."""
    weights = np.ones(channels, dtype=np.float64)
    if channels == 5:
        weights[3:5] = 1.41
    elif channels == 6:
        # L R C LFE Ls Rs
        weights[3] = 0.0
        weights[4:6] = 1.41
    return weights


def power_to_lufs(z: float | np.ndarray) -> np.ndarray:
    z = np.asarray(z, dtype=np.float64)
    with np.errstate(divide="ignore"):
        lufs = -0.691 + 10.0 * np.log10(z)
    return np.where(z > 0.0, np.maximum(lufs, LOUDNESS_FLOOR_LUFS), LOUDNESS_FLOOR_LUFS)


class LoudnessMeter:
    """EBU R128 loudness meter session.

    Lifecycle::

        meter.prepare(sample_rate, channels)
        meter.start_integrated()
        blocks = meter.process_buffer(buffer, on_progress)
        meter.stop_integrated()
        meter.integrated_loudness

    ``start_integrated`` clears the gating accumulator, so one session can be
    reused for any number of measurement passes over buffers with the same
    sample rate and channel count. Each ``process_buffer`` call treats its
    buffer as a complete program: momentary and short-term windows start from
    silence.
    """

    def __init__(self):
        self.sample_rate: Optional[float] = None
        self.channels: Optional[int] = None
        self._weights: Optional[np.ndarray] = None
        self._filters: list[IIRfilter] = []
        self._block_powers: list[float] = []
        self._integrating = False
        self._integrated: Optional[float] = None

    def prepare(self, sample_rate: float, channels: int) -> None:
        if not sample_rate > 0:
            raise ValueError(f"sample_rate must be > 0, got {sample_rate!r}")
        if channels < 1:
            raise ValueError(f"channels must be >= 1, got {channels!r}")
        self.sample_rate = float(sample_rate)
        self.channels = int(channels)
        self._weights = channel_weights(self.channels)
        # K-weighting: pre-filter (high shelf) then RLB high-pass.
        self._filters = [
            IIRfilter(4.0, 1 / np.sqrt(2), 1500.0, self.sample_rate, "high_shelf"),
            IIRfilter(0.0, 0.5, 38.0, self.sample_rate, "high_pass"),
        ]
        self.reset()

    def reset(self) -> None:
        self._block_powers = []
        self._integrating = False
        self._integrated = None

    def start_integrated(self) -> None:
        self._require_prepared()
        self._block_powers = []
        self._integrating = True

    def stop_integrated(self) -> float:
        if not self._integrating:
            raise MeterStateError("stop_integrated() called without start_integrated()")
        self._integrating = False
        self._integrated = self._gated_loudness(np.asarray(self._block_powers, dtype=np.float64))
        return self._integrated

    @property
    def integrated_loudness(self) -> float:
        if self._integrated is None:
            raise MeterStateError("Integrated loudness is only available after stop_integrated()")
        return self._integrated

    def process_buffer(
        self,
        buffer: np.ndarray,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[BlockLoudness]:
        self._require_prepared()
        buffer = ensure_2d(buffer)
        if buffer.shape[1] != self.channels:
            raise MeterStateError(
                f"Meter prepared for {self.channels} channel(s), got {buffer.shape[1]}"
            )

        total = int(buffer.shape[0])
        power = self._weighted_power(buffer)
        csum = np.concatenate(([0.0], np.cumsum(power)))

        sr = self.sample_rate
        step = max(1, int(round(BLOCK_STEP_S * sr)))
        m_win = max(1, int(round(MOMENTARY_WINDOW_S * sr)))
        s_win = max(1, int(round(SHORT_TERM_WINDOW_S * sr)))

        ends = np.arange(step, total + 1, step, dtype=np.int64)
        m_z = (csum[ends] - csum[np.maximum(ends - m_win, 0)]) / m_win
        s_z = (csum[ends] - csum[np.maximum(ends - s_win, 0)]) / s_win
        momentary = power_to_lufs(m_z)
        short_term = power_to_lufs(s_z)

        if self._integrating:
            self._block_powers.extend(m_z[ends >= m_win].tolist())

        blocks: list[BlockLoudness] = []
        for i, end in enumerate(ends):
            blocks.append(BlockLoudness(i, float(momentary[i]), float(short_term[i])))
            if on_progress is not None:
                on_progress(int(end), total)
        if on_progress is not None and (ends.size == 0 or int(ends[-1]) != total):
            on_progress(total, total)
        return blocks

    def _require_prepared(self) -> None:
        if self.sample_rate is None:
            raise MeterStateError("LoudnessMeter.prepare() must be called first")

    def _weighted_power(self, buffer: np.ndarray) -> np.ndarray:
        power = np.zeros(buffer.shape[0], dtype=np.float64)
        for ch in range(buffer.shape[1]):
            if self._weights[ch] == 0.0:
                continue
            y = np.asarray(buffer[:, ch], dtype=np.float64)
            for flt in self._filters:
                y = flt.apply_filter(y)
            power += self._weights[ch] * y * y
        return power

    @staticmethod
    def _gated_loudness(block_powers: np.ndarray) -> float:
        if block_powers.size == 0:
            return LOUDNESS_FLOOR_LUFS
        levels = power_to_lufs(block_powers)
        above_abs = levels >= ABSOLUTE_GATE_LUFS
        if not np.any(above_abs):
            return LOUDNESS_FLOOR_LUFS
        relative_gate = float(power_to_lufs(np.mean(block_powers[above_abs]))) + RELATIVE_GATE_LU
        gated = above_abs & (levels > relative_gate)
        return float(power_to_lufs(np.mean(block_powers[gated])))


def measure_integrated(
    buffer: np.ndarray,
    sample_rate: float,
    on_progress: Optional[ProgressCallback] = None,
    meter: Optional[LoudnessMeter] = None,
) -> float:
    """Single full-buffer pass returning integrated loudness in LUFS."""
    buffer = ensure_2d(buffer)
    meter = meter or LoudnessMeter()
    if meter.sample_rate != sample_rate or meter.channels != buffer.shape[1]:
        meter.prepare(sample_rate, buffer.shape[1])
    meter.start_integrated()
    meter.process_buffer(buffer, on_progress)
    return meter.stop_integrated()
