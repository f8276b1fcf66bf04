"""Tests for hive.lib.config module."""

import pytest

from hive.lib.config import (
    DEFAULT_CONFIG_YAML,
    HiveConfig,
    HivePaths,
    HiveRootNotFound,
    config_from_dict,
    find_hive_root,
    load_config,
)


class TestDefaults:

    def test_manager_defaults(self):
        manager = HiveConfig().manager
        assert manager.stuck_threshold_ms == 120000
        assert manager.nudge_cooldown_ms == 300000
        assert manager.max_stuck_nudges_per_story == 1
        assert manager.completion_classifier.cli_tool == "codex"
        assert manager.completion_classifier.model == "gpt-5-mini"

    def test_models_per_tier(self):
        config = HiveConfig()
        assert config.model_for("junior").model == "haiku"
        assert config.model_for("senior").cli_tool == "claude"
        assert config.model_for("senior").safety_mode == "unsafe"

    def test_unknown_tier_falls_back(self):
        assert HiveConfig().model_for("intern").model == "sonnet"


class TestConfigFromDict:

    def test_empty(self):
        assert config_from_dict(None) == HiveConfig()

    def test_nested_sections(self):
        config = config_from_dict({
            "scaling": {"senior_capacity": 10, "refactor": {"enabled": True, "capacity_percent": 20}},
            "manager": {"stuck_threshold_ms": 5000, "completion_classifier": {"cli_tool": "claude"}},
            "merge_queue": {"autonomy": "partial"},
        })
        assert config.scaling.senior_capacity == 10
        assert config.scaling.refactor.capacity_percent == 20
        assert config.manager.stuck_threshold_ms == 5000
        assert config.manager.completion_classifier.cli_tool == "claude"
        assert config.manager.completion_classifier.model == "gpt-5-mini"
        assert config.merge_queue.autonomy == "partial"

    def test_model_override_keeps_other_fields(self):
        config = config_from_dict({"models": {"junior": {"cli_tool": "codex"}}})
        assert config.model_for("junior").cli_tool == "codex"
        assert config.model_for("junior").model == "haiku"

    def test_unknown_keys_dropped(self, caplog):
        config = config_from_dict({"manager": {"bogus": 1}})
        assert config.manager == HiveConfig().manager
        assert "bogus" in caplog.text


class TestLoading:

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(tmp_path) == HiveConfig()

    def test_default_yaml_round_trips(self, root):
        HivePaths(root).config_path.write_text(DEFAULT_CONFIG_YAML)
        config = load_config(root)
        assert config.model_for("junior").model == "haiku"
        assert config.merge_queue.autonomy == "full"

    def test_bad_yaml_gives_defaults(self, root, caplog):
        HivePaths(root).config_path.write_text("manager: [unclosed")
        assert load_config(root) == HiveConfig()
        assert "Failed to parse" in caplog.text

    def test_find_root_walks_up(self, root):
        nested = root / "a" / "b"
        nested.mkdir(parents=True)
        assert find_hive_root(nested) == root.resolve()

    def test_find_root_missing(self, tmp_path):
        with pytest.raises(HiveRootNotFound):
            find_hive_root(tmp_path)

    def test_paths(self, tmp_path):
        paths = HivePaths(tmp_path)
        assert paths.db_path == tmp_path / ".hive" / "hive.db"
        assert paths.lock_path.name == "manager.lock"
