import json

import numpy as np
import pytest

pytest.importorskip("pyloudnorm")

from r128_normalizer import audio_io
from r128_normalizer.audio_io import load_audio, save_audio
from r128_normalizer.convergence import NormalizationConfig
from r128_normalizer.loudness_meter import measure_integrated
from r128_normalizer.pipeline import derive_output_path, list_audio_files, normalize_batch, normalize_file
from r128_normalizer.reports import NormalizationLogger
from r128_normalizer.system_utils import TestSuite

SR = 48000


def _write_tone(path, amplitude=0.05, seconds=1.0):
    audio = TestSuite.generate_example(sr=SR, seconds=seconds, amplitude=amplitude)
    return save_audio(path, audio, SR, tags={"title": "Reference"})


def test_normalize_file_writes_audio_report_and_log(tmp_path):
    src = _write_tone(tmp_path / "in.wav")
    out = tmp_path / "out" / "in_r128.wav"
    report_path = tmp_path / "reports" / "in_loudness.csv"
    logger = NormalizationLogger(tmp_path / "log.json")

    report = normalize_file(src, out, NormalizationConfig(target_lufs=-23.0), report_path=report_path, metrics_logger=logger)

    assert report is not None
    assert report.status == "converged"
    assert report.output_lufs == pytest.approx(-23.0, abs=0.5)
    assert report.true_peak_dbtp <= -1.0 + 1e-6
    assert set(report.timings) >= {"decode", "normalize", "encode", "total"}

    decoded = load_audio(out)
    assert decoded.sample_rate == SR
    assert decoded.tags["title"] == "Reference"
    assert measure_integrated(decoded.samples, SR) == pytest.approx(report.output_lufs, abs=0.01)

    lines = report_path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "Index, Momentary, ShortTerm"
    assert len(lines) == 1 + 10

    entries = json.loads((tmp_path / "log.json").read_text(encoding="utf-8"))
    assert len(entries) == 1
    assert entries[0]["render_name"] == "in_r128"
    assert entries[0]["status"] == "converged"
    assert entries[0]["config"]["target_lufs"] == -23.0


def test_iteration_observer_sees_each_pass(tmp_path):
    src = _write_tone(tmp_path / "in.wav")
    seen = []
    report = normalize_file(src, tmp_path / "out.wav", on_iteration=seen.append)
    assert len(seen) == report.iterations >= 1


def test_missing_ffmpeg_skips_file(tmp_path, monkeypatch):
    src = tmp_path / "clip.m4a"
    src.write_bytes(b"\x00\x01garbage" * 100)
    monkeypatch.setattr(audio_io.shutil, "which", lambda name: None)

    assert normalize_file(src, tmp_path / "clip_r128.wav") is None
    assert not (tmp_path / "clip_r128.wav").exists()


def test_batch_continues_after_failure(tmp_path, caplog):
    src = _write_tone(tmp_path / "in.wav")
    good = tmp_path / "out" / "good.wav"
    jobs = [(src, tmp_path / "out" / "bad.xyz"), (src, good)]

    with caplog.at_level("INFO"):
        summary = normalize_batch(jobs, report_dir=tmp_path / "reports")

    assert len(summary.failed) == 1
    assert "UnsupportedFormatError" in summary.failed[0][1]
    assert [r.output_path for r in summary.saved] == [good]
    assert summary.total == 2
    assert not summary.ok
    assert good.exists()
    assert (tmp_path / "reports" / "in_loudness.csv").exists()
    assert "FAILED" in caplog.text


def test_batch_closes_progress_observers(tmp_path):
    src = _write_tone(tmp_path / "in.wav", seconds=0.5)
    closed = []

    class Observer:
        def __init__(self, path):
            self.path = path

        def __call__(self, stage, current, total):
            pass

        def close(self):
            closed.append(self.path)

    summary = normalize_batch([(src, tmp_path / "a.wav")], progress_factory=Observer)
    assert summary.ok
    assert closed == [src]


def test_list_audio_files_and_output_names(tmp_path):
    (tmp_path / "sub").mkdir()
    for name in ("a.wav", "b.FLAC", "notes.txt", "sub/c.mp3"):
        (tmp_path / name).write_bytes(b"")

    names = [p.name for p in list_audio_files(tmp_path)]
    assert names == ["a.wav", "b.FLAC", "c.mp3"]
    assert [p.name for p in list_audio_files(tmp_path, recursive=False)] == ["a.wav", "b.FLAC"]

    assert derive_output_path(tmp_path / "b.FLAC", None) == tmp_path / "b_r128.wav"
    assert derive_output_path(tmp_path / "b.FLAC", tmp_path / "out", "_norm") == tmp_path / "out" / "b_norm.wav"


def test_previous_outputs_are_not_picked_up_again(tmp_path):
    for name in ("a.wav", "a_r128.wav", "b.flac", "b_r128.wav"):
        (tmp_path / name).write_bytes(b"")

    names = [p.name for p in list_audio_files(tmp_path, skip_suffix="_r128")]
    assert names == ["a.wav", "b.flac"]
    assert len(list_audio_files(tmp_path)) == 4
