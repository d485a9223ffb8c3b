from __future__ import annotations

import numpy as np
from scipy.signal import resample_poly


def ensure_2d(audio: np.ndarray) -> np.ndarray:
    """Return audio as shape (n_samples, n_channels) without copying when possible."""
    audio = np.asarray(audio)
    if audio.ndim == 1:
        return audio[:, None]
    if audio.ndim == 2:
        return audio
    raise ValueError(f"Unexpected audio shape: {audio.shape}")


def validate_buffer(buffer: np.ndarray, sample_rate: float) -> np.ndarray:
    """Check the preconditions shared by every normalization pass."""
    buffer = ensure_2d(buffer)
    if sample_rate is None or not sample_rate > 0:
        raise ValueError(f"sample_rate must be > 0, got {sample_rate!r}")
    if buffer.shape[0] == 0 or buffer.shape[1] == 0:
        raise ValueError("buffer must contain at least one sample and one channel")
    if not np.issubdtype(buffer.dtype, np.floating):
        raise ValueError(f"buffer must hold floating point samples, got {buffer.dtype}")
    if not np.isfinite(buffer).all():
        raise ValueError("buffer contains non-finite samples")
    return buffer


def clone_buffer(buffer: np.ndarray) -> np.ndarray:
    return np.array(buffer, dtype=np.float64, copy=True)


def db_to_lin(db: float | np.ndarray) -> np.ndarray:
    return np.asarray(10.0 ** (np.asarray(db) / 20.0))


def lin_to_db(x: float | np.ndarray, eps: float = 1e-12) -> np.ndarray:
    return 20.0 * np.log10(np.maximum(x, eps))


def apply_gain(buffer: np.ndarray, gain_db: float) -> None:
    """Scale every sample by gain_db, in place."""
    buffer *= float(db_to_lin(gain_db))


def oversampled_peaks(buffer: np.ndarray, oversample: int = 4) -> np.ndarray:
    """Per-sample peak magnitude across channels, including inter-sample peaks.

    Returns an array of length n_samples where entry i is the largest absolute
    value found between sample i and sample i + 1 after oversampling.
    """
    buffer = ensure_2d(buffer)
    peak = np.max(np.abs(buffer), axis=1)
    os = int(max(1, oversample))
    if os == 1:
        return peak
    up = resample_poly(buffer, os, 1, axis=0)
    up = np.max(np.abs(up), axis=1)
    up = up[: buffer.shape[0] * os].reshape(buffer.shape[0], os)
    return np.maximum(peak, np.max(up, axis=1))


def true_peak_lin(buffer: np.ndarray, oversample: int = 4) -> float:
    buffer = ensure_2d(buffer)
    if buffer.size == 0:
        return 0.0
    return float(np.max(oversampled_peaks(buffer, oversample)))


def true_peak_dbtp(buffer: np.ndarray, oversample: int = 4) -> float:
    return float(lin_to_db(true_peak_lin(buffer, oversample)))
