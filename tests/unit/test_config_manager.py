"""
Tests for ConfigManager and SessionConfig.
"""

from pathlib import Path

import pytest
import yaml

SCHEMA_PATH = Path(__file__).parent.parent.parent / "src" / "meeting" / "config_schema.yaml"


@pytest.fixture
def fresh_config():
    """Swap in an empty ConfigManager singleton for the duration of a test."""
    from utils import ConfigManager

    original = ConfigManager._instance
    ConfigManager._instance = None
    yield ConfigManager
    ConfigManager._instance = original


class TestConfigManager:
    """Tests for ConfigManager functionality."""

    def test_yaml_safe_load_used(self):
        """Verify yaml.safe_load is used (not yaml.load)."""
        utils_path = Path(__file__).parent.parent.parent / "src" / "utils.py"
        content = utils_path.read_text()

        assert "yaml.safe_load" in content
        assert "yaml.load(" not in content or "Loader=" in content

    def test_config_validation_type_checking(self):
        """Config validation should check types."""
        from utils import ConfigManager

        manager = ConfigManager()

        assert manager._validate_config_value("test", {"type": "str", "value": ""}, "test.path")
        assert manager._validate_config_value(42, {"type": "int", "value": 0}, "test.path")
        assert manager._validate_config_value(True, {"type": "bool", "value": False}, "test.path")
        assert manager._validate_config_value(2, {"type": "float", "value": 1.5}, "test.path")
        assert manager._validate_config_value([1.0], {"type": "list", "value": []}, "test.path")

        assert not manager._validate_config_value("2", {"type": "int", "value": 0}, "test.path")
        # bool is an int subclass but not a valid int setting
        assert not manager._validate_config_value(True, {"type": "int", "value": 0}, "test.path")

        # None should be allowed (optional values)
        assert manager._validate_config_value(None, {"type": "str", "value": ""}, "test.path")

    def test_config_validation_options_checking(self):
        """Config validation should check allowed options."""
        from utils import ConfigManager

        manager = ConfigManager()
        schema_item = {"type": "str", "value": "accurate", "options": ["fast", "accurate"]}

        assert manager._validate_config_value("fast", schema_item, "chunking.mode")
        assert manager._validate_config_value("accurate", schema_item, "chunking.mode")
        assert not manager._validate_config_value("turbo", schema_item, "chunking.mode")

    def test_user_config_merges_and_resets_invalid(self, fresh_config, temp_dir):
        """User values override defaults; invalid ones fall back to the default."""
        user_path = temp_dir / "config.yaml"
        user_path.write_text(yaml.safe_dump({
            "chunking": {"mode": "turbo", "queue_depth": 8},
            "capture": {"remote_gain": 1.5},
        }))

        fresh_config.initialize(schema_path=str(SCHEMA_PATH), config_path=str(user_path))

        assert fresh_config.get_config_value("chunking", "mode") == "accurate"
        assert fresh_config.get_config_value("chunking", "queue_depth") == 8
        assert fresh_config.get_config_value("capture", "remote_gain") == 1.5
        # Untouched defaults survive the merge
        assert fresh_config.get_config_value("capture", "local_gain") == 1.0

    def test_broken_user_config_keeps_defaults(self, fresh_config, temp_dir):
        """A YAML syntax error should leave the defaults in place."""
        user_path = temp_dir / "config.yaml"
        user_path.write_text("chunking: [unclosed\n")

        fresh_config.initialize(schema_path=str(SCHEMA_PATH), config_path=str(user_path))

        assert fresh_config.get_config_value("chunking", "queue_depth") == 4

    def test_initialize_twice_raises(self, fresh_config, temp_dir):
        """Should refuse to initialize the singleton twice."""
        fresh_config.initialize(schema_path=str(SCHEMA_PATH), config_path=str(temp_dir / "none.yaml"))
        with pytest.raises(RuntimeError):
            fresh_config.initialize(schema_path=str(SCHEMA_PATH))

    def test_save_config_round_trip(self, fresh_config, temp_dir):
        """Saved config should reload with the changed value."""
        config_path = temp_dir / "config.yaml"
        fresh_config.initialize(schema_path=str(SCHEMA_PATH), config_path=str(config_path))
        fresh_config.set_config_value("Alex", "profile", "user_name")
        fresh_config.save_config(str(config_path))

        fresh_config.reload_config(str(config_path))
        assert fresh_config.get_config_value("profile", "user_name") == "Alex"
        assert not (temp_dir / "config.tmp").exists()


class TestConfigManagerSingleton:
    """Tests for ConfigManager singleton behavior."""

    def test_get_config_value_nested_keys(self):
        """Should retrieve nested config values."""
        from utils import ConfigManager

        manager = ConfigManager()
        manager.config = {"level1": {"level2": {"value": "test"}}}

        original = ConfigManager._instance
        ConfigManager._instance = manager
        try:
            assert ConfigManager.get_config_value("level1", "level2", "value") == "test"
            assert ConfigManager.get_config_value("level1", "nonexistent") is None
        finally:
            ConfigManager._instance = original

    def test_set_config_value_creates_nested(self):
        """Should create nested structure if needed."""
        from utils import ConfigManager

        manager = ConfigManager()
        manager.config = {}

        original = ConfigManager._instance
        ConfigManager._instance = manager
        try:
            ConfigManager.set_config_value("new_value", "level1", "level2", "key")
            assert manager.config["level1"]["level2"]["key"] == "new_value"
        finally:
            ConfigManager._instance = original


class TestConfigSchema:
    """Tests for config schema compliance."""

    def test_schema_is_valid_yaml(self):
        """Config schema should be valid YAML."""
        with open(SCHEMA_PATH) as f:
            schema = yaml.safe_load(f)

        assert isinstance(schema, dict)

    def test_schema_has_required_sections(self):
        """Config schema should have all required sections."""
        with open(SCHEMA_PATH) as f:
            schema = yaml.safe_load(f)

        for section in ["profile", "capture", "activity", "chunking", "speakers",
                        "transcription", "session", "misc"]:
            assert section in schema, f"Missing required section: {section}"

    def test_every_leaf_has_type_and_value(self):
        """Each setting should declare a type and a default."""
        with open(SCHEMA_PATH) as f:
            schema = yaml.safe_load(f)

        for section, settings in schema.items():
            for key, item in settings.items():
                assert "type" in item, f"{section}.{key} has no type"
                assert "value" in item, f"{section}.{key} has no value"


class TestSessionConfig:
    """Tests for SessionConfig construction."""

    def test_mode_presets(self):
        """Modes should pick chunk length and polling cadence."""
        from meeting.config import SessionConfig

        fast = SessionConfig(mode="fast")
        accurate = SessionConfig(mode="accurate")

        assert fast.chunk_interval_ms == 2000
        assert accurate.chunk_interval_ms == 5000
        assert fast.poll_options == {"poll_interval": 1.0, "max_poll_attempts": 60}
        assert accurate.poll_options == {"poll_interval": 2.0, "max_poll_attempts": 120}

    def test_interval_override(self):
        """An explicit interval should win over the mode default."""
        from meeting.config import SessionConfig

        assert SessionConfig(mode="fast", interval_ms=3000).chunk_interval_ms == 3000

    def test_unknown_mode_rejected(self):
        """Should reject modes that have no preset."""
        from meeting.config import SessionConfig

        with pytest.raises(ValueError):
            SessionConfig(mode="turbo")

    def test_from_config_reads_sections(self, fresh_config, temp_dir, mock_config, monkeypatch):
        """Should build providers and settings from the config file and environment."""
        from meeting.config import SessionConfig

        monkeypatch.setenv("TEST_ASSEMBLYAI_KEY", "aai-secret")
        user_path = temp_dir / "config.yaml"
        user_path.write_text(yaml.safe_dump(mock_config))
        fresh_config.initialize(schema_path=str(SCHEMA_PATH), config_path=str(user_path))

        config = SessionConfig.from_config(title="Standup")

        assert config.mode == "fast"
        assert config.chunk_interval_ms == 2000
        assert config.user_name == "Test User"
        assert config.title == "Standup"
        assert config.max_retries == 1
        assert [p.provider_id for p in config.providers] == ["assemblyai", "openai"]
        assert config.providers[0].credentials == {"api_key": "aai-secret"}
        assert config.providers[1].options == {"model": "whisper-1"}

    def test_provider_spec_repr_hides_key(self):
        """Credentials should not appear in the repr."""
        from meeting.config import ProviderSpec

        spec = ProviderSpec.from_config({"id": "openai", "api_key": "sk-very-secret"})
        assert "sk-very-secret" not in repr(spec)

    def test_provider_spec_requires_id(self):
        """Should reject provider entries without an id."""
        from meeting.config import ProviderSpec

        with pytest.raises(ValueError):
            ProviderSpec.from_config({"api_key": "x"})
