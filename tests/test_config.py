import os

from facegate.app.config import AppConfig, config_from_dict, load_config


def test_defaults():
    cfg = AppConfig()
    assert cfg.thresholds.match_distance_threshold == 0.55
    assert cfg.thresholds.enrollment_quality_threshold == 0.75
    assert cfg.session.detection_min_interval_ms == 100
    assert cfg.session.settle_delay_ms == 1400
    assert cfg.challenge.required_blink_count == 2
    assert cfg.challenge.mismatch_policy == "hold"


def test_partial_override_keeps_other_defaults():
    cfg = config_from_dict({"thresholds": {"match_distance_threshold": 0.4}, "log_level": "DEBUG"})
    assert cfg.thresholds.match_distance_threshold == 0.4
    assert cfg.thresholds.enrollment_quality_threshold == 0.75
    assert cfg.log_level == "DEBUG"


def test_unknown_keys_ignored():
    cfg = config_from_dict({"camera": {"device_index": 2, "zoom": 3}})
    assert cfg.camera.device_index == 2
    assert not hasattr(cfg.camera, "zoom")


def test_load_yaml(tmp_path):
    path = os.path.join(tmp_path, "config.yaml")
    with open(path, "w", encoding="utf-8") as f:
        f.write(
            "paths:\n"
            f"  data_dir: {tmp_path}\n"
            f"  db_path: {tmp_path}/db/fg.db\n"
            "challenge:\n"
            "  preset: blink\n"
            "  required_blink_count: 3\n"
        )
    cfg = load_config(path)
    assert cfg.challenge.preset == "blink"
    assert cfg.challenge.required_blink_count == 3
    assert os.path.isdir(os.path.join(tmp_path, "db"))


def test_broken_yaml_keeps_defaults(tmp_path):
    path = os.path.join(tmp_path, "config.yaml")
    with open(path, "w", encoding="utf-8") as f:
        f.write("thresholds: [unclosed\n")
    cfg = load_config(path, ensure_dirs=False)
    assert cfg.thresholds.match_distance_threshold == 0.55
