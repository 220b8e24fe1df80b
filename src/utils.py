"""
Application settings for meetscribe.

Settings are described by ``meeting/config_schema.yaml``: every leaf carries a
``type``, a default ``value`` and optionally a list of allowed ``options``. A
user ``config.yaml`` is merged over the defaults; values that fail validation
are reset to the default with a warning.
"""

import os
from pathlib import Path

import yaml

from logger import get_logger

_log = get_logger("config")

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'meeting', 'config_schema.yaml')
DEFAULT_CONFIG_PATH = 'config.yaml'
CONFIG_PATH_ENV = 'MEETSCRIBE_CONFIG'

_MISSING = object()


def default_config_path():
    """User config location: $MEETSCRIBE_CONFIG, else ./config.yaml."""
    return os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH


def _walk(data, keys):
    for key in keys:
        if not isinstance(data, dict) or key not in data:
            return _MISSING
        data = data[key]
    return data


def _deep_merge(target, overrides):
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value


def _is_leaf(item):
    return isinstance(item, dict) and 'type' in item


class ConfigManager:
    """Process-wide settings singleton."""
    _instance = None

    # Schema type names -> accepted Python types
    TYPE_MAP = {
        'str': (str,),
        'int': (int,),
        'float': (float, int),
        'bool': (bool,),
        'list': (list, tuple),
        'dict': (dict,),
    }

    def __init__(self):
        self.config = None
        self.schema = None

    @classmethod
    def initialize(cls, schema_path=None, config_path=None):
        """Load the schema defaults, then merge the user config file over them."""
        if cls._instance is not None:
            raise RuntimeError("ConfigManager is already initialized")
        manager = cls()
        manager.schema = manager.load_config_schema(schema_path)
        manager.config = manager.load_default_config()
        manager.load_user_config(config_path)
        cls._instance = manager

    @classmethod
    def get_instance(cls) -> 'ConfigManager':
        if cls._instance is None:
            cls.initialize()
        if cls._instance.config is None:  # type: ignore
            cls._instance.config = {}  # type: ignore
        return cls._instance  # type: ignore

    @classmethod
    def reset(cls):
        """Drop the singleton so the next access reloads from disk."""
        cls._instance = None

    @classmethod
    def get_schema(cls):
        return cls.get_instance().schema

    @classmethod
    def get_config_section(cls, *keys):
        """A nested section, or {} when any key is missing."""
        section = _walk(cls.get_instance().config, keys)
        return {} if section is _MISSING or section is None else section

    @classmethod
    def get_config_value(cls, *keys):
        """A nested value, or None when any key is missing."""
        value = _walk(cls.get_instance().config, keys)
        return None if value is _MISSING else value

    @classmethod
    def set_config_value(cls, value, *keys):
        """Set a nested value, creating intermediate sections."""
        config: dict = cls.get_instance().config
        for key in keys[:-1]:
            if not isinstance(config.get(key), dict):
                config[key] = {}
            config = config[key]
        config[keys[-1]] = value

    @staticmethod
    def load_config_schema(schema_path=None):
        with open(schema_path or SCHEMA_PATH, 'r', encoding='utf-8') as file:
            schema = yaml.safe_load(file)
        return schema or {}

    def load_default_config(self):
        """Defaults from the schema's ``value`` entries."""
        def defaults(item):
            if _is_leaf(item) or (isinstance(item, dict) and 'value' in item):
                return item.get('value')
            if isinstance(item, dict):
                return {k: defaults(v) for k, v in item.items()}
            return item

        return {category: defaults(settings) for category, settings in self.schema.items()}

    def _validate_config_value(self, value, schema_item, path):
        """True if ``value`` fits its schema leaf (None is always allowed)."""
        if not _is_leaf(schema_item) or value is None:
            return True

        expected_type = schema_item['type']
        accepted = self.TYPE_MAP.get(expected_type)
        if accepted is not None:
            # bool is an int subclass; only accept it where bool is expected
            wrong_bool = isinstance(value, bool) and expected_type != 'bool'
            if wrong_bool or not isinstance(value, accepted):
                _log.warning("Config '%s' should be %s, got %s. Using default.",
                             path, expected_type, type(value).__name__)
                return False

        if 'options' in schema_item and value not in schema_item['options']:
            _log.warning("Config '%s' value %r not in allowed options %s. Using default.",
                         path, value, schema_item['options'])
            return False

        return True

    def _validate_config_section(self, user_section, schema_section, path=""):
        """Reset invalid user values to their defaults, in place."""
        if not isinstance(schema_section, dict) or not isinstance(user_section, dict):
            return

        for key, schema_value in schema_section.items():
            if key not in user_section:
                continue
            current_path = f"{path}.{key}" if path else key
            user_value = user_section[key]

            if _is_leaf(schema_value):
                if not self._validate_config_value(user_value, schema_value, current_path):
                    user_section[key] = schema_value.get('value')
            else:
                self._validate_config_section(user_value, schema_value, current_path)

    def load_user_config(self, config_path=None):
        """Merge a user config file over the current settings, if it exists."""
        config_path = config_path or default_config_path()
        if not os.path.isfile(config_path):
            _log.debug("No user config at %s; using defaults", config_path)
            return

        try:
            with open(config_path, 'r', encoding='utf-8') as file:
                user_config = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            _log.error("Error in configuration file %s: %s. Using default configuration.",
                       config_path, e)
            return

        self._validate_config_section(user_config, self.schema)
        _deep_merge(self.config, user_config)
        _log.info("Loaded user config from %s", config_path)

    @classmethod
    def save_config(cls, config_path=None):
        """Write the current settings as YAML (temp file, then rename)."""
        filepath = Path(config_path or default_config_path())
        temp_path = filepath.with_suffix('.tmp')

        with open(temp_path, 'w', encoding='utf-8') as file:
            yaml.safe_dump(cls.get_instance().config, file, default_flow_style=False)
            file.flush()
            os.fsync(file.fileno())

        temp_path.replace(filepath)

    @classmethod
    def reload_config(cls, config_path=None):
        manager = cls.get_instance()
        manager.config = manager.load_default_config()
        manager.load_user_config(config_path)
