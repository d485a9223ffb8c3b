import json

import pytest

pytest.importorskip("pyloudnorm")

from r128_normalizer import cli
from r128_normalizer.audio_io import load_audio, save_audio
from r128_normalizer.loudness_meter import measure_integrated
from r128_normalizer.system_utils import DEFAULT_PRESETS, TestSuite

SR = 48000


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "_setup_logging", lambda level="INFO", log_file=None: None)


def _tone(path, amplitude=0.05):
    return save_audio(path, TestSuite.generate_example(sr=SR, seconds=1.0, amplitude=amplitude), SR)


def test_single_file_run(tmp_path):
    src = _tone(tmp_path / "in.wav")
    out = tmp_path / "out.wav"
    log = tmp_path / "log.json"

    code = cli.main(["--in", str(src), "--out", str(out), "--target-lufs", "-20", "--no-progress", "--metrics-log", str(log)])

    assert code == 0
    assert measure_integrated(load_audio(out).samples, SR) == pytest.approx(-20.0, abs=0.5)
    assert json.loads(log.read_text(encoding="utf-8"))[0]["config"]["target_lufs"] == -20.0


def test_batch_run_with_reports(tmp_path):
    src_dir = tmp_path / "src"
    _tone(src_dir / "a.wav")
    _tone(src_dir / "b.wav", amplitude=0.2)
    out_dir = tmp_path / "out"

    code = cli.main(
        ["--target_dir", str(src_dir), "--out_dir", str(out_dir), "--preset", "Streaming", "--no-progress", "--report-dir", str(tmp_path / "rep")]
    )

    assert code == 0
    assert sorted(p.name for p in out_dir.iterdir()) == ["a_r128.wav", "b_r128.wav"]
    assert sorted(p.name for p in (tmp_path / "rep").iterdir()) == ["a_loudness.csv", "b_loudness.csv"]


def test_second_batch_run_in_place_skips_earlier_outputs(tmp_path):
    _tone(tmp_path / "a.wav")

    assert cli.main(["--target_dir", str(tmp_path), "--no-progress"]) == 0
    assert cli.main(["--target_dir", str(tmp_path), "--no-progress"]) == 0
    assert sorted(p.name for p in tmp_path.iterdir()) == ["a.wav", "a_r128.wav"]


def test_list_presets(capsys):
    assert cli.main(["--list-presets"]) == 0
    printed = capsys.readouterr().out.splitlines()
    assert printed == sorted(DEFAULT_PRESETS)


def test_dry_run_writes_nothing(tmp_path):
    src = _tone(tmp_path / "in.wav")
    assert cli.main(["--in", str(src), "--dry-run"]) == 0
    assert not (tmp_path / "in_r128.wav").exists()


def test_unknown_preset_is_a_usage_error(tmp_path):
    src = _tone(tmp_path / "in.wav")
    assert cli.main(["--in", str(src), "--preset", "Nope"]) == 2


def test_invalid_tolerance_is_a_usage_error(tmp_path):
    src = _tone(tmp_path / "in.wav")
    assert cli.main(["--in", str(src), "--tolerance", "0"]) == 2


def test_failed_file_gives_nonzero_exit(tmp_path):
    src = tmp_path / "broken.wav"
    src.write_bytes(b"RIFF....WAVEjunk")
    assert cli.main(["--in", str(src), "--no-progress"]) == 1


def test_requires_an_input():
    with pytest.raises(SystemExit):
        cli.main([])
