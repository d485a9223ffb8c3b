from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .audio_io import load_audio, save_audio
from .convergence import (
    CancellationToken,
    ConvergenceController,
    IterationCallback,
    NormalizationConfig,
    StageProgress,
)
from .dsp_utils import true_peak_dbtp
from .errors import FFmpegNotFoundError, NormalizationCancelled
from .reports import NormalizationLogger, write_loudness_report
from .system_utils import TimeTracker, config_to_dict

LOG = logging.getLogger(__name__)

AUDIO_EXTENSIONS = {".wav", ".flac", ".aiff", ".aif", ".ogg", ".mp3", ".m4a", ".aac", ".opus", ".wma"}


@dataclass
class FileReport:
    input_path: Path
    output_path: Path
    status: str
    sample_rate: int
    channels: int
    duration_s: float
    input_lufs: float
    output_lufs: float
    gain_db: float
    iterations: int
    true_peak_dbtp: float
    decoder: str = "soundfile"
    config: Dict[str, Any] = field(default_factory=dict)
    timings: Dict[str, float] = field(default_factory=dict)


@dataclass
class BatchSummary:
    saved: List[FileReport] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    failed: List[Tuple[Path, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.saved) + len(self.skipped) + len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.skipped and not self.failed


def normalize_file(
    input_path: str | Path,
    output_path: str | Path,
    config: Optional[NormalizationConfig] = None,
    *,
    on_progress: Optional[StageProgress] = None,
    on_iteration: Optional[IterationCallback] = None,
    cancel: Optional[CancellationToken] = None,
    strict: bool = False,
    report_path: str | Path | None = None,
    metrics_logger: Optional[NormalizationLogger] = None,
) -> Optional[FileReport]:
    """Decode, normalize and encode one file.

    Returns ``None`` when the file cannot be decoded because the fallback
    decoder (ffmpeg) is missing; the caller is expected to move on.
    """
    input_path = Path(input_path)
    output_path = Path(output_path)
    config = config or NormalizationConfig()
    tracker = TimeTracker(input_path.name)

    with tracker.section("decode"):
        try:
            decoded = load_audio(input_path)
        except FFmpegNotFoundError as e:
            LOG.warning("%s File skipped.", e)
            return None
    LOG.info(
        "Loaded %s: %d Hz, %d ch, %.2fs (%s)",
        input_path.name,
        decoded.sample_rate,
        decoded.channels,
        decoded.duration_s,
        decoded.decoder,
    )

    with tracker.section("normalize"):
        controller = ConvergenceController(config, on_progress=on_progress, on_iteration=on_iteration)
        result = controller.run(decoded.samples, decoded.sample_rate, cancel=cancel, strict=strict)

    with tracker.section("encode"):
        save_audio(output_path, result.buffer, decoded.sample_rate, tags=decoded.tags)
    tracker.stop()
    LOG.info("File saved: %s", output_path.stem)

    if report_path is not None:
        write_loudness_report(result.blocks, report_path)

    report = FileReport(
        input_path=input_path,
        output_path=output_path,
        status=result.status.value,
        sample_rate=decoded.sample_rate,
        channels=decoded.channels,
        duration_s=decoded.duration_s,
        input_lufs=result.input_lufs,
        output_lufs=result.output_lufs,
        gain_db=result.gain_db,
        iterations=len(result.iterations),
        true_peak_dbtp=true_peak_dbtp(result.buffer, config.true_peak_oversample),
        decoder=decoded.decoder,
        config=config_to_dict(config),
        timings=tracker.as_dict(),
    )
    LOG.info(
        "%s: %.2f -> %.2f LUFS, gain %+.2f dB, %d iteration(s), %.2f dBTP [%s] (%s)",
        input_path.name,
        report.input_lufs,
        report.output_lufs,
        report.gain_db,
        report.iterations,
        report.true_peak_dbtp,
        report.status,
        tracker.summary(),
    )
    if metrics_logger is not None:
        metrics_logger.record(report)
    return report


def normalize_batch(
    jobs: Iterable[Tuple[str | Path, str | Path]],
    config: Optional[NormalizationConfig] = None,
    *,
    progress_factory=None,
    cancel: Optional[CancellationToken] = None,
    strict: bool = False,
    report_dir: str | Path | None = None,
    metrics_logger: Optional[NormalizationLogger] = None,
) -> BatchSummary:
    """Normalize files one after another.

    A failing file is logged with its exception type and message and the batch
    continues with the next one. Cancellation stops the whole batch.
    ``progress_factory(input_path)`` may return a per-file progress observer
    with a ``close()`` method.
    """
    summary = BatchSummary()
    for input_path, output_path in jobs:
        input_path = Path(input_path)
        report_path = Path(report_dir) / f"{input_path.stem}_loudness.csv" if report_dir else None
        progress = progress_factory(input_path) if progress_factory is not None else None
        try:
            report = normalize_file(
                input_path,
                output_path,
                config,
                on_progress=progress,
                cancel=cancel,
                strict=strict,
                report_path=report_path,
                metrics_logger=metrics_logger,
            )
        except NormalizationCancelled:
            LOG.warning("Cancelled while processing %s; stopping batch.", input_path.name)
            raise
        except Exception as e:
            LOG.exception("FAILED %s: %s: %s", input_path, type(e).__name__, e)
            summary.failed.append((input_path, f"{type(e).__name__}: {e}"))
            continue
        finally:
            if progress is not None:
                progress.close()

        if report is None:
            summary.skipped.append(input_path)
        else:
            summary.saved.append(report)

    LOG.info(
        "Batch complete: %d saved, %d skipped, %d failed.",
        len(summary.saved),
        len(summary.skipped),
        len(summary.failed),
    )
    return summary


def list_audio_files(folder: str | Path, recursive: bool = True, skip_suffix: Optional[str] = None) -> List[Path]:
    """Audio files under ``folder``; stems ending in ``skip_suffix`` are earlier outputs and left out."""
    folder = Path(folder)
    candidates = folder.rglob("*") if recursive else folder.glob("*")
    return sorted(
        p
        for p in candidates
        if p.is_file()
        and p.suffix.lower() in AUDIO_EXTENSIONS
        and not (skip_suffix and p.stem.endswith(skip_suffix))
    )


def derive_output_path(input_path: Path, out_dir: Optional[Path], suffix: str = "_r128") -> Path:
    target_dir = out_dir or input_path.parent
    return target_dir / f"{input_path.stem}{suffix}.wav"
