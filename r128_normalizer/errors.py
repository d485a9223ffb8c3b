from __future__ import annotations


class NormalizerError(Exception):
    """Base class for errors raised by r128_normalizer."""


class UnsupportedFormatError(NormalizerError):
    """The input container could not be decoded."""


class FFmpegNotFoundError(UnsupportedFormatError):
    """Fallback decoding needs ffmpeg and it is not on PATH."""


class MeterStateError(NormalizerError):
    """The loudness meter session was used out of order."""


class NormalizationCancelled(NormalizerError):
    """A cancellation token was triggered while normalizing."""


class ConvergenceError(NormalizerError):
    """Loudness did not settle within tolerance of the target.

    The best-effort result is kept on ``result`` so callers can still save it.
    """

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result
