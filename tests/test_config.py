"""
Tests for Config, ConfigSnapshot and runtime overrides.
"""

import dataclasses

import pytest

from flapguard.config import Config, ConfigSnapshot, parse_config_value
from flapguard.database import Database


@pytest.fixture
def database(temp_db_path, mock_plugin):
    db = Database(temp_db_path, mock_plugin)
    db.initialize()
    yield db
    db.close()


class TestParseConfigValue:

    @pytest.mark.parametrize("value,expected", [("true", True), ("Yes", True), ("0", False), ("off", False)])
    def test_bool(self, value, expected):
        assert parse_config_value("dry_run", value) is expected

    def test_int(self):
        assert parse_config_value("cooldown_seconds", "120") == 120
        with pytest.raises(ValueError):
            parse_config_value("cooldown_seconds", "soon")

    def test_unknown_key_is_string(self):
        assert parse_config_value("router_url", "https://r") == "https://r"


class TestSnapshot:

    def test_snapshot_copies_values(self):
        config = Config(flap_threshold_count=5, table_marker="", dry_run=True)
        cfg = config.snapshot()
        assert isinstance(cfg, ConfigSnapshot)
        assert cfg.flap_threshold_count == 5
        assert cfg.table_marker == ""
        assert cfg.dry_run is True

    def test_snapshot_is_frozen(self):
        cfg = Config().snapshot()
        with pytest.raises(dataclasses.FrozenInstanceError):
            cfg.cooldown_seconds = 1

    def test_snapshot_isolated_from_later_updates(self):
        config = Config()
        cfg = config.snapshot()
        config.cooldown_seconds = 10
        assert cfg.cooldown_seconds == 300


class TestRuntimeUpdate:

    def test_successful_update(self, database):
        config = Config()
        result = config.update_runtime(database, "cooldown_seconds", "600")

        assert result["status"] == "success"
        assert result["old_value"] == 300
        assert result["new_value"] == 600
        assert config.cooldown_seconds == 600
        assert config.snapshot().version == result["version"]

    def test_immutable_key_rejected(self, database):
        config = Config()
        assert "error" in config.update_runtime(database, "dry_run", "true")
        assert config.dry_run is False

    def test_unknown_key_rejected(self, database):
        assert "error" in Config().update_runtime(database, "no_such_key", "1")
        assert "error" in Config().update_runtime(database, "_version", "1")

    def test_bad_type_rejected(self, database):
        assert "error" in Config().update_runtime(database, "flap_threshold_count", "many")

    def test_out_of_range_rejected(self, database):
        assert "error" in Config().update_runtime(database, "flap_threshold_count", "0")
        assert database.get_all_config_overrides() == {}

    def test_marker_must_be_single_character(self, database):
        assert "error" in Config().update_runtime(database, "table_marker", "~~")
        assert Config().update_runtime(database, "table_marker", "#")["status"] == "success"

    def test_overrides_load_on_startup(self, database):
        Config().update_runtime(database, "flap_threshold_count", "5")
        Config().update_runtime(database, "release_expired_windows", "true")

        config = Config()
        config.load_overrides(database)
        assert config.flap_threshold_count == 5
        assert config.release_expired_windows is True
        assert config._version == 2

    def test_immutable_override_ignored_on_load(self, database):
        database.set_config_override("db_path", "/tmp/other.db")
        config = Config()
        config.load_overrides(database)
        assert config.db_path == Config().db_path
