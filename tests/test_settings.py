"""
Tests for buildmedia.config.settings module.

This test suite covers:
- Settings loading and saving
- Default settings initialization
- Settings persistence to JSON file
- Type conversion helpers (get_bool, get_int, get_float)
- Error handling for corrupted settings files
"""

import json

from buildmedia.config import settings


class TestLoadSettings:
    """Tests for load_settings() function."""

    def test_load_defaults_when_no_file(self, tmp_path, monkeypatch):
        """Test that default settings are loaded when file doesn't exist."""
        monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "missing" / "settings.json")

        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values["image_tool"] == "auto"
        assert settings.settings_store.values["extraction_margin_bytes"] == 2 * settings.GIB
        assert settings.settings_store.values["delete_retry_attempts"] == 5

    def test_load_merges_with_defaults(self, tmp_path, monkeypatch):
        """Test that loaded settings merge with defaults."""
        settings_file = tmp_path / "settings.json"
        settings_file.write_text(json.dumps({"image_tool": "wimlib"}))
        monkeypatch.setattr(settings, "SETTINGS_PATH", settings_file)

        settings.load_settings()

        assert settings.get_setting("image_tool") == "wimlib"
        assert settings.get_setting("conversion_space_multiplier") == 2.0

    def test_corrupted_file_falls_back_to_defaults(self, tmp_path, monkeypatch):
        """Test that a corrupted JSON file is ignored."""
        settings_file = tmp_path / "settings.json"
        settings_file.write_text("{not json")
        monkeypatch.setattr(settings, "SETTINGS_PATH", settings_file)

        settings.load_settings()

        assert settings.get_setting("image_tool") == "auto"

    def test_non_object_file_is_ignored(self, tmp_path, monkeypatch):
        settings_file = tmp_path / "settings.json"
        settings_file.write_text("[1, 2, 3]")
        monkeypatch.setattr(settings, "SETTINGS_PATH", settings_file)

        settings.load_settings()

        assert settings.get_setting("download_timeout_seconds") == 1800


class TestSaveSettings:
    """Tests for persisting settings."""

    def test_set_setting_persists(self, tmp_path, monkeypatch):
        """Test set_setting writes the JSON file."""
        settings_file = tmp_path / "nested" / "settings.json"
        monkeypatch.setattr(settings, "SETTINGS_PATH", settings_file)

        settings.set_setting("packaging_tool_path", "C:/tools/oscdimg.exe")

        data = json.loads(settings_file.read_text())
        assert data["packaging_tool_path"] == "C:/tools/oscdimg.exe"

    def test_round_trip_through_load(self, tmp_path, monkeypatch):
        settings_file = tmp_path / "settings.json"
        monkeypatch.setattr(settings, "SETTINGS_PATH", settings_file)

        settings.set_setting("delete_retry_attempts", 9)
        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.get_int("delete_retry_attempts") == 9


class TestTypedGetters:
    """Tests for type conversion helpers."""

    def test_get_int_invalid_value_returns_default(self):
        settings.settings_store.values["delete_retry_attempts"] = "many"
        assert settings.get_int("delete_retry_attempts", 3) == 3

    def test_get_float_parses_strings(self):
        settings.settings_store.values["conversion_space_multiplier"] = "1.5"
        assert settings.get_float("conversion_space_multiplier") == 1.5

    def test_get_bool_missing_key(self):
        assert settings.get_bool("does_not_exist") is False
        assert settings.get_bool("does_not_exist", True) is True

    def test_get_setting_default(self):
        assert settings.get_setting("missing", "fallback") == "fallback"
