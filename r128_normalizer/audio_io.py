from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

import numpy as np
import soundfile as sf

from .dsp_utils import ensure_2d
from .errors import FFmpegNotFoundError, UnsupportedFormatError
from .system_utils import VERSION

LOG = logging.getLogger(__name__)

ENCODER_TAG = f"r128-normalizer {VERSION}"

# String metadata libsndfile can carry (WAV LIST/INFO, FLAC and OGG comments, AIFF).
TAG_KEYS = (
    "title",
    "copyright",
    "software",
    "artist",
    "comment",
    "date",
    "album",
    "license",
    "tracknumber",
    "genre",
)
TAGGABLE_FORMATS = {"WAV", "WAVEX", "RF64", "FLAC", "OGG", "AIFF"}


@dataclass
class DecodedAudio:
    samples: np.ndarray
    sample_rate: int
    tags: Dict[str, str] = field(default_factory=dict)
    decoder: str = "soundfile"

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration_s(self) -> float:
        return float(self.samples.shape[0]) / float(self.sample_rate)


def load_audio(path: str | Path) -> DecodedAudio:
    """Decode any audio file to float64 (n_samples, n_channels).

    Tries libsndfile first (wav, flac, ogg, aiff, ...). Containers it does not
    understand are transcoded to 32-bit PCM WAV with ffmpeg.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    try:
        return _read_soundfile(path, decoder="soundfile")
    except sf.LibsndfileError as e:
        LOG.debug("SoundFile load failed for %s: %s. Trying ffmpeg.", path, e)

    return _read_ffmpeg(path)


def _read_soundfile(source, decoder: str) -> DecodedAudio:
    with sf.SoundFile(str(source)) as f:
        samples = f.read(dtype="float64", always_2d=True)
        tags = {}
        for key in TAG_KEYS:
            value = getattr(f, key, "")
            if value:
                tags[key] = value
        return DecodedAudio(samples=samples, sample_rate=int(f.samplerate), tags=tags, decoder=decoder)


def _read_ffmpeg(path: Path) -> DecodedAudio:
    ffmpeg = shutil.which("ffmpeg")
    if not ffmpeg:
        raise FFmpegNotFoundError(
            f"{path.name}: format not supported natively and ffmpeg was not found. "
            "Install ffmpeg and ensure it's in PATH."
        )

    with tempfile.TemporaryDirectory(prefix="r128_") as tmp:
        wav = Path(tmp) / "decoded.wav"
        cmd = [
            ffmpeg,
            "-hide_banner",
            "-v", "error",
            "-y",
            "-i", str(path),
            "-map", "0:a:0",
            "-map_metadata", "0",
            "-acodec", "pcm_s32le",
            str(wav),
        ]
        _run(cmd, f"ffmpeg decode {path.name}")
        decoded = _read_soundfile(wav, decoder="ffmpeg")
    LOG.info("Decoded %s via ffmpeg (%d Hz, %d ch)", path.name, decoded.sample_rate, decoded.channels)
    return decoded


def _run(cmd: list[str], label: str) -> None:
    try:
        subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except FileNotFoundError as e:
        raise FFmpegNotFoundError(f"{label}: ffmpeg not found. Install ffmpeg and ensure it's in PATH.") from e
    except subprocess.CalledProcessError as e:
        msg = e.stderr.decode("utf-8", errors="ignore")
        raise UnsupportedFormatError(f"{label} failed:\n{msg[-2000:]}") from e


def merge_tags(source_tags: Optional[Mapping[str, str]] = None, **extra: str) -> Dict[str, str]:
    """Source tags, then caller overrides, then encoder identification."""
    merged = {k: v for k, v in (source_tags or {}).items() if k in TAG_KEYS and v}
    merged.update({k: v for k, v in extra.items() if k in TAG_KEYS and v})
    merged["software"] = ENCODER_TAG
    return merged


def save_audio(
    path: str | Path,
    samples: np.ndarray,
    sample_rate: int,
    tags: Optional[Mapping[str, str]] = None,
    subtype: str = "FLOAT",
) -> Path:
    """Encode ``samples``; the container is chosen from the file extension."""
    path = Path(path)
    samples = ensure_2d(samples)
    fmt = _format_for(path)
    if not sf.check_format(fmt, subtype):
        fallback = sf.default_subtype(fmt)
        LOG.debug("Subtype %s not valid for %s; using %s", subtype, fmt, fallback)
        subtype = fallback

    path.parent.mkdir(parents=True, exist_ok=True)
    with sf.SoundFile(
        str(path),
        mode="w",
        samplerate=int(sample_rate),
        channels=int(samples.shape[1]),
        subtype=subtype,
        format=fmt,
    ) as f:
        if fmt in TAGGABLE_FORMATS:
            for key, value in merge_tags(tags).items():
                setattr(f, key, value)
        f.write(samples)
    return path


def _format_for(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    formats = sf.available_formats()
    if ext == "aif":
        ext = "aiff"
    fmt = ext.upper()
    if fmt not in formats:
        raise UnsupportedFormatError(f"Cannot encode '{path.suffix}' files; use one of: .wav, .flac, .aiff, .ogg")
    return fmt
