from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .pipeline import derive_output_path, list_audio_files, normalize_batch
from .progress import ConsoleProgress
from .reports import NormalizationLogger
from .system_utils import DEFAULT_PRESET, VERSION, ConfigManager

LOG = logging.getLogger("r128_normalizer")


def _setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure console + optional file logging (batch-friendly)."""
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode="w", encoding="utf-8"))
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(message)s",
        handlers=handlers,
        force=True,
    )


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="r128-normalize",
        description="EBU R128 loudness normalization with a true-peak ceiling.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    io = parser.add_argument_group("input/output")
    io.add_argument("--in", dest="inp", help="Input audio file.")
    io.add_argument("--out", dest="out", help="Output file (.wav/.flac/.aiff/.ogg). Default: <input>_r128.wav")
    io.add_argument("--target_dir", help="Normalize every audio file in this folder.")
    io.add_argument("--out_dir", help="Output folder for batch mode (default: next to each input).")
    io.add_argument("--no-recursive", action="store_true", help="Batch mode: do not descend into subfolders.")
    io.add_argument("--suffix", default="_r128", help="Suffix appended to output file names.")

    norm = parser.add_argument_group("normalization")
    norm.add_argument("--preset", default=DEFAULT_PRESET, help=f"Preset name (default: {DEFAULT_PRESET}).")
    norm.add_argument("--presets", help="JSON file with extra/overriding presets.")
    norm.add_argument("--list-presets", action="store_true", help="Print preset names and exit.")
    norm.add_argument("--target-lufs", type=float, default=None, help="Target integrated loudness (LUFS).")
    norm.add_argument("--tolerance", dest="tolerance_lu", type=float, default=None, help="Tolerance (LU).")
    norm.add_argument("--ceiling", dest="ceiling_dbtp", type=float, default=None, help="True-peak ceiling (dBTP).")
    norm.add_argument("--max-iterations", type=int, default=None, help="Upper bound on correction passes.")
    norm.add_argument("--max-gain", dest="max_gain_db", type=float, default=None, help="Bound on total gain (dB).")
    norm.add_argument("--strict", action="store_true", help="Treat non-convergence as a failure.")

    diag = parser.add_argument_group("diagnostics")
    diag.add_argument("--report-dir", help="Write a per-block loudness CSV for each file here.")
    diag.add_argument("--metrics-log", help="Append a JSON entry per file to this log.")
    diag.add_argument("--no-progress", action="store_true", help="Disable progress bars.")
    diag.add_argument("--dry-run", action="store_true", help="List planned work and exit.")
    diag.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ERROR.")
    diag.add_argument("--log-file", default=None, help="Also write logs to this file.")
    return parser


def _plan_jobs(args: argparse.Namespace) -> list[tuple[Path, Path]]:
    if args.target_dir:
        folder = Path(args.target_dir).expanduser().resolve()
        if not folder.is_dir():
            raise SystemExit(f"ERROR: Folder not found: {folder}")
        out_dir = Path(args.out_dir).expanduser().resolve() if args.out_dir else None
        files = list_audio_files(folder, recursive=not args.no_recursive, skip_suffix=args.suffix)
        return [(f, derive_output_path(f, out_dir, args.suffix)) for f in files]

    if not args.inp:
        raise SystemExit("ERROR: give --in FILE or --target_dir DIR")
    inp = Path(args.inp).expanduser()
    out = Path(args.out).expanduser() if args.out else derive_output_path(inp, None, args.suffix)
    return [(inp, out)]


def main(argv: Optional[List[str]] = None) -> int:
    args = build_cli().parse_args(argv)
    _setup_logging(args.log_level, args.log_file)

    manager = ConfigManager(presets_path=args.presets)
    if args.list_presets:
        for name in manager.list_presets():
            print(name)
        return 0

    try:
        config = manager.build_config(
            args.preset,
            target_lufs=args.target_lufs,
            tolerance_lu=args.tolerance_lu,
            ceiling_dbtp=args.ceiling_dbtp,
            max_iterations=args.max_iterations,
            max_gain_db=args.max_gain_db,
        )
    except (KeyError, ValueError) as e:
        LOG.error("Invalid configuration: %s", e)
        return 2

    jobs = _plan_jobs(args)
    if not jobs:
        LOG.info("No audio files found.")
        return 0
    LOG.info(
        "%d file(s) | preset=%s | target %.1f LUFS ±%.1f LU | ceiling %.1f dBTP",
        len(jobs),
        args.preset,
        config.target_lufs,
        config.tolerance_lu,
        config.ceiling_dbtp,
    )

    if args.dry_run:
        for inp, out in jobs:
            LOG.info("[DRY] %s -> %s", inp.name, out)
        return 0

    metrics_logger = NormalizationLogger(args.metrics_log) if args.metrics_log else None

    def _progress(path: Path) -> ConsoleProgress:
        return ConsoleProgress(path.name, disable=args.no_progress)

    try:
        summary = normalize_batch(
            jobs,
            config,
            progress_factory=_progress,
            strict=args.strict,
            report_dir=args.report_dir,
            metrics_logger=metrics_logger,
        )
    except KeyboardInterrupt:
        LOG.warning("Interrupted.")
        return 130

    if summary.skipped:
        LOG.warning("Skipped: %s", ", ".join(p.name for p in summary.skipped))
    if summary.failed:
        for path, reason in summary.failed:
            LOG.error("Failed: %s (%s)", path.name, reason)
    return 0 if summary.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
