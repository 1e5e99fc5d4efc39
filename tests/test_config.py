from pathlib import Path

import pytest

from clipgrade.core.errors import ConfigError
from clipgrade.core.utils import (
    Deadline,
    apply_cli_overrides,
    default_config,
    load_config_file,
    merge_dicts,
    prepare_config,
    stable_config_signature,
)


def test_defaults():
    cfg = prepare_config({})
    assert cfg["grouping"]["similarity_threshold"] == pytest.approx(0.92)
    assert cfg["enhance"]["max_iterations"] == 3
    assert cfg["enhance"]["quality_target"] == pytest.approx(8.5)
    assert cfg["enhance"]["concurrency"] == 5
    assert cfg["limits"]["max_duration_seconds"] == pytest.approx(120.0)
    assert cfg["extract"]["frame_rate"] is None
    assert Path(cfg["output"]["folder"]).is_absolute()


def test_flat_aliases_map_onto_blocks():
    cfg = prepare_config(
        {
            "maxDurationSeconds": 60,
            "extractionFrameRate": 12,
            "groupSimilarityThreshold": 0.88,
            "maxIterationsPerGroup": 2,
            "qualityScoreTarget": 9,
            "concurrency": 3,
        }
    )
    assert cfg["limits"]["max_duration_seconds"] == pytest.approx(60.0)
    assert cfg["extract"]["frame_rate"] == pytest.approx(12.0)
    assert cfg["grouping"]["similarity_threshold"] == pytest.approx(0.88)
    assert cfg["enhance"]["max_iterations"] == 2
    assert cfg["enhance"]["quality_target"] == pytest.approx(9.0)
    assert cfg["enhance"]["concurrency"] == 3
    assert "concurrency" not in cfg


def test_out_of_range_values_are_clamped():
    cfg = prepare_config(
        {
            "enhance": {"quality_target": 42, "concurrency": 0, "max_iterations": -1},
            "transform": {"levels": 1},
            "reassemble": {"crf": 99},
            "grouping": {"representative": "loudest"},
        }
    )
    assert cfg["enhance"]["quality_target"] == pytest.approx(10.0)
    assert cfg["enhance"]["concurrency"] == 1
    assert cfg["enhance"]["max_iterations"] == 1
    assert cfg["transform"]["levels"] == 2
    assert cfg["reassemble"]["crf"] == 51
    assert cfg["grouping"]["representative"] == "midpoint"


def test_invalid_number_uses_default():
    cfg = prepare_config({"limits": {"max_file_mb": "lots"}})
    assert cfg["limits"]["max_file_mb"] == pytest.approx(1024.0)


def test_cli_overrides_use_dot_notation():
    cfg = apply_cli_overrides(default_config(), {"enhance.user_feedback": "warmer", "output.export_luts": True})
    assert cfg["enhance"]["user_feedback"] == "warmer"
    assert cfg["output"]["export_luts"] is True
    assert default_config()["enhance"]["user_feedback"] == ""


def test_merge_is_deep_and_non_mutating():
    base = {"a": {"b": 1, "c": 2}}
    merged = merge_dicts(base, {"a": {"c": 3}})
    assert merged == {"a": {"b": 1, "c": 3}}
    assert base == {"a": {"b": 1, "c": 2}}


def test_load_yaml_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("enhance:\n  max_iterations: 5\n", encoding="utf-8")
    cfg = load_config_file(path)
    assert cfg["enhance"]["max_iterations"] == 5
    assert cfg["enhance"]["quality_target"] == 8.5


def test_missing_file_returns_defaults(tmp_path):
    assert load_config_file(tmp_path / "absent.yaml") == default_config()


def test_broken_yaml_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("enhance: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(path)


def test_non_mapping_yaml_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(path)


def test_signature_is_stable():
    assert stable_config_signature({"a": 1, "b": 2}) == stable_config_signature({"b": 2, "a": 1})


def test_deadline_with_fake_clock():
    now = [100.0]
    deadline = Deadline(10.0, clock=lambda: now[0])
    assert not deadline.expired()
    now[0] = 104.0
    assert deadline.remaining() == pytest.approx(6.0)
    now[0] = 111.0
    assert deadline.expired()
    assert deadline.remaining() == 0.0
