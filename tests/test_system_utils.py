import json

import numpy as np
import pytest

from r128_normalizer.convergence import NormalizationConfig
from r128_normalizer.system_utils import (
    DEFAULT_PRESET,
    DEFAULT_PRESETS,
    ConfigManager,
    TestSuite,
    TimeTracker,
    config_to_dict,
)


def test_default_preset_is_ebu_r128():
    config = ConfigManager().build_config()
    assert DEFAULT_PRESET in DEFAULT_PRESETS
    assert config.target_lufs == -23.0
    assert config.tolerance_lu == 0.5
    assert config.ceiling_dbtp == -1.0


def test_overrides_apply_and_none_is_ignored():
    config = ConfigManager().build_config("Streaming", ceiling_dbtp=-2.0, tolerance_lu=None)
    assert config.target_lufs == -14.0
    assert config.ceiling_dbtp == -2.0
    assert config.tolerance_lu == 0.5


def test_presets_file_merges_over_defaults(tmp_path):
    path = tmp_path / "presets.json"
    path.write_text(json.dumps({"Podcast": {"target_lufs": -18.0}, "Radio": {"target_lufs": -9.0}}), encoding="utf-8")
    manager = ConfigManager(path)

    assert "Radio" in manager.list_presets()
    podcast = manager.build_config("Podcast")
    assert podcast.target_lufs == -18.0
    assert podcast.ceiling_dbtp == -1.5
    assert manager.build_config("Radio").tolerance_lu == NormalizationConfig().tolerance_lu


def test_save_then_load(tmp_path):
    manager = ConfigManager(tmp_path / "nested" / "presets.json")
    manager.save_presets({"Loud": {"target_lufs": -10.0}})
    assert manager.get_preset("Loud") == {"target_lufs": -10.0}


def test_save_without_path_raises():
    with pytest.raises(ValueError):
        ConfigManager().save_presets({})


def test_bad_presets_file(tmp_path):
    path = tmp_path / "presets.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError):
        ConfigManager(path).load_presets()


def test_unknown_preset():
    with pytest.raises(KeyError):
        ConfigManager().get_preset("Nope")


def test_invalid_override_fails_validation():
    with pytest.raises(ValueError):
        ConfigManager().build_config(max_iterations=0)


def test_config_to_dict_is_json_ready():
    data = config_to_dict(NormalizationConfig())
    assert json.loads(json.dumps(data))["max_iterations"] == 10


def test_time_tracker_sections():
    tracker = TimeTracker("demo")
    with tracker.section("decode"):
        pass
    tracker.add("encode", 0.25)
    tracker.stop()

    timings = tracker.as_dict()
    assert timings["encode"] == 0.25
    assert timings["total"] >= timings["decode"] >= 0.0
    assert tracker.summary().startswith("decode=")


def test_generators():
    tone = TestSuite.generate_example(sr=8000, seconds=0.5, channels=3)
    assert tone.shape == (4000, 3)
    noise = TestSuite.generate_noise(sr=8000, seconds=1.0, level_dbfs=-20.0, seed=1)
    assert 20.0 * np.log10(np.sqrt(np.mean(noise ** 2))) == pytest.approx(-20.0, abs=0.1)


def test_ceiling_check():
    tone = TestSuite.generate_example(amplitude=0.5)
    assert TestSuite.assert_within_ceiling(tone, -1.0).ok
    assert not TestSuite.assert_within_ceiling(tone, -12.0).ok
    assert not TestSuite.assert_within_ceiling(np.full((4, 2), np.nan), 0.0).ok
