from __future__ import annotations

import logging
import math
from typing import Callable, Dict, Optional

import numpy as np
from scipy.ndimage import maximum_filter1d, uniform_filter1d

from .dsp_utils import db_to_lin, ensure_2d, lin_to_db, oversampled_peaks, true_peak_lin

LOG = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
EnvelopeCallback = Callable[[np.ndarray], None]

# a ** -block must stay representable while unrolling the release recursion.
_MAX_RELEASE_EXPONENT = 50.0


class TruePeakLimiter:
    """Oversampled true-peak limiter with lookahead and release envelope.

    Works on gain reduction in dB:

    1. required reduction per sample from the oversampled peak,
    2. forward hold over the lookahead window,
    3. moving average over the lookahead window so the reduction ramps in
       before a peak instead of stepping,
    4. release as an exponential decay of the reduction,
    5. hard guarantee: rescale if the oversampled peak is still above the
       ceiling (resampling ripple).

    Steps 2-4 only ever raise the reduction, so every sample is attenuated at
    least as much as its own peak requires.
    """

    def __init__(self, oversample: int = 4, block_size: int = 8192):
        if oversample < 1:
            raise ValueError("oversample must be >= 1")
        if block_size < 1:
            raise ValueError("block_size must be >= 1")
        self.oversample = int(oversample)
        self.block_size = int(block_size)

    def process_buffer(
        self,
        buffer: np.ndarray,
        ceiling_db: float,
        sample_rate: float,
        lookahead_s: float = 0.001,
        release_s: float = 0.8,
        on_progress: Optional[ProgressCallback] = None,
        on_envelope: Optional[EnvelopeCallback] = None,
    ) -> Dict:
        """Limit ``buffer`` in place so its true peak is at or below ``ceiling_db``."""
        x = ensure_2d(buffer)
        if not np.issubdtype(x.dtype, np.floating):
            raise ValueError(f"limiter needs a floating point buffer, got {x.dtype}")
        n = int(x.shape[0])
        ceiling = float(db_to_lin(ceiling_db))

        peaks = oversampled_peaks(x, self.oversample)
        required_db = np.maximum(0.0, lin_to_db(peaks) - float(ceiling_db))

        la = max(1, int(round(max(0.0, lookahead_s) * sample_rate)))
        if la > 1:
            held = maximum_filter1d(required_db, size=la, origin=-(la // 2), mode="constant", cval=0.0)
            ramped = uniform_filter1d(held, size=la, origin=(la - 1) // 2, mode="nearest")
            ramped = np.maximum(ramped, required_db)
        else:
            ramped = required_db

        if release_s > 0.0:
            decay = math.exp(-1.0 / (release_s * sample_rate))
            block = int(min(self.block_size, max(1.0, _MAX_RELEASE_EXPONENT * release_s * sample_rate)))
        else:
            decay = 0.0
            block = self.block_size

        gain = np.empty(n, dtype=np.float64)
        carry = 0.0
        for start in range(0, n, block):
            stop = min(n, start + block)
            reduction = self._release(ramped[start:stop], carry, decay)
            carry = float(reduction[-1])
            gain[start:stop] = db_to_lin(-reduction)
            if on_envelope is not None:
                on_envelope(gain[start:stop])
            if on_progress is not None:
                on_progress(stop, n)

        x *= gain[:, None]

        tp = true_peak_lin(x, self.oversample)
        hard_clamped = tp > ceiling
        if hard_clamped:
            LOG.debug("True peak %.3f dBTP above ceiling after envelope; rescaling.", float(lin_to_db(tp)))
            x *= ceiling / tp
            tp = true_peak_lin(x, self.oversample)

        return {
            "ceiling_dbtp": float(ceiling_db),
            "oversample": self.oversample,
            "min_gain_db": float(lin_to_db(float(np.min(gain)))) if n else 0.0,
            "true_peak_dbtp": float(lin_to_db(tp)),
            "hard_clamped": bool(hard_clamped),
        }

    @staticmethod
    def _release(target: np.ndarray, carry: float, decay: float) -> np.ndarray:
        """Unrolled ``r[i] = max(target[i], decay * r[i - 1])`` for one block."""
        if decay <= 0.0:
            return target.copy()
        k = np.arange(target.size, dtype=np.float64)
        scale = decay ** -k
        held = np.maximum.accumulate(target * scale)
        held = np.maximum(held, carry * decay)
        return held / scale
