"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for copilot configs.
"""

import os
import tempfile

import pytest
import yaml

from copilot_guard.config.loader import (
    CopilotConfig,
    QuotaConfig,
    SessionConfig,
    SuggestionConfig,
    config_to_dict,
    load_copilot_config,
)
from copilot_guard.core.retention import RetentionPolicy


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_path = self._write_config({
            "quota": {"monthly_minutes": 300, "daily_minutes": 60, "session_minutes": 30},
            "session": {"heartbeat_timeout_ms": 45000},
            "retention": {"events_days": 7},
            "guardrail": {"max_length": 2000},
            "suggestion": {"model": "gpt-4o", "temperature": 0.1, "context_events": 8},
        })

        config = load_copilot_config(config_path)

        assert config.quota == QuotaConfig(300, 60, 30)
        assert config.session.heartbeat_timeout_ms == 45000
        assert config.retention == RetentionPolicy(events_days=7)
        assert config.guardrail.max_length == 2000
        assert config.suggestion == SuggestionConfig("gpt-4o", 0.1, 8)

    def test_partial_config_keeps_defaults(self):
        config = load_copilot_config(self._write_config({"quota": {"daily_minutes": 30}}))

        assert config.quota.daily_minutes == 30
        assert config.quota.monthly_minutes == 600
        assert config.session == SessionConfig()

    def test_empty_file_gives_defaults(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, "w").close()

        assert load_copilot_config(config_path) == CopilotConfig.default()

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_copilot_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_copilot_config(self._write_config({"budget": {}}))

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown keys in quota"):
            load_copilot_config(self._write_config({"quota": {"weekly_minutes": 5}}))

    def test_invalid_value_names_section(self):
        with pytest.raises(ValueError, match="Invalid retention configuration"):
            load_copilot_config(self._write_config({"retention": {"events_days": 0}}))

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="'session' must be a dictionary"):
            load_copilot_config(self._write_config({"session": [1, 2]}))

    def test_root_must_be_mapping(self):
        with pytest.raises(ValueError, match="root must be a dictionary"):
            load_copilot_config(self._write_config(["a", "b"]))

    def test_invalid_yaml(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("quota: [unclosed")

        with pytest.raises(yaml.YAMLError):
            load_copilot_config(config_path)


class TestSectionValidation:
    """Test dataclass validation."""

    def test_negative_quota_rejected(self):
        with pytest.raises(ValueError):
            QuotaConfig(monthly_minutes=-1)

    def test_zero_quota_allowed(self):
        assert QuotaConfig(daily_minutes=0).daily_minutes == 0

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            SessionConfig(heartbeat_timeout_ms=0)

    def test_temperature_range(self):
        with pytest.raises(ValueError):
            SuggestionConfig(temperature=3)

    def test_config_to_dict(self):
        data = config_to_dict(CopilotConfig.default())

        assert data["quota"]["monthly_minutes"] == 600
        assert data["session"]["heartbeat_timeout_ms"] == 60000
        assert set(data) == {"quota", "session", "retention", "guardrail", "suggestion"}
