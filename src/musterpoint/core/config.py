"""
Configuration Management System for MusterPoint

Handles loading configuration from environment variables, config files,
and provides validation and runtime updates.
"""

import os
import json
import yaml
import logging
from typing import Any, Dict, List, Optional, Callable
from pathlib import Path
from dataclasses import dataclass


@dataclass
class ConfigSource:
    """Configuration source definition"""
    name: str
    priority: int
    loader: Callable
    path: Optional[str] = None


class ConfigurationError(Exception):
    """Configuration-related errors"""
    pass


DEFAULTS: Dict[str, Any] = {
    "app": {
        "name": "MusterPoint",
        "version": "1.0.0",
        "debug": False,
        "log_level": "INFO"
    },
    "database": {
        "path": "data/musterpoint.db",
        "max_connections": 10
    },
    "locks": {
        "default_ttl_seconds": 10,
        "max_attempts": 5,
        "initial_delay_seconds": 0.2,
        "reconciliation_ttl_seconds": 8
    },
    "tracking": {
        "attendee_interval_seconds": 3,
        "attendee_min_displacement_meters": 2,
        "volunteer_interval_seconds": 5,
        "volunteer_min_displacement_meters": 5
    },
    "notifications": {
        "responder_radius_meters": 5000,
        "workers": 2,
        "max_queue_size": 1000,
        "max_retries": 1
    },
    "emergency": {
        "exclusive_create": False,
        "stale_after_hours": 24,
        "cleanup_interval_seconds": 3600,
        "walking_speed_mps": 1.4
    },
    "sync": {
        "cache_file": None
    },
    "logging": {
        "level": "INFO",
        "file": "logs/musterpoint.log",
        "max_size": "10MB",
        "backup_count": 5,
        "console": True,
        "console_level": "INFO"
    }
}

# Keys that must be strictly positive numbers
POSITIVE_KEYS = [
    'locks.default_ttl_seconds',
    'locks.max_attempts',
    'locks.reconciliation_ttl_seconds',
    'tracking.attendee_interval_seconds',
    'tracking.volunteer_interval_seconds',
    'notifications.responder_radius_meters',
    'notifications.workers',
    'emergency.stale_after_hours',
    'emergency.cleanup_interval_seconds',
    'emergency.walking_speed_mps',
]


class ConfigurationManager:
    """
    Manages system configuration with support for multiple sources,
    validation, and runtime updates.
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        self.config: Dict[str, Any] = {}
        self.watchers: Dict[str, List[Callable]] = {}
        self.sources: List[ConfigSource] = []
        self.logger = logging.getLogger(__name__)
        self.defaults = json.loads(json.dumps(DEFAULTS))

        self._setup_sources()

    def _setup_sources(self):
        """Set up configuration sources in priority order"""
        self.sources.append(ConfigSource(
            name="environment",
            priority=4,
            loader=self._load_from_env
        ))

        local_config_path = str(self.config_dir / "config.yaml")
        self.sources.append(ConfigSource(
            name="local_config",
            priority=3,
            loader=lambda: self._load_from_file(local_config_path),
            path=local_config_path
        ))

        default_config_path = str(self.config_dir / "default.yaml")
        self.sources.append(ConfigSource(
            name="default_config",
            priority=2,
            loader=lambda: self._load_from_file(default_config_path),
            path=default_config_path
        ))

        self.sources.append(ConfigSource(
            name="defaults",
            priority=1,
            loader=lambda: self.defaults
        ))

    def load_config(self) -> None:
        """Load configuration from all sources"""
        self.logger.info("Loading configuration from all sources")

        merged_config = {}
        for source in sorted(self.sources, key=lambda x: x.priority):
            source_config = source.loader()
            if source_config:
                merged_config = self._deep_merge(merged_config, source_config)
                self.logger.debug(f"Loaded configuration from {source.name}")

        self.config = merged_config
        self._validate_config()
        self.logger.info("Configuration loaded successfully")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config = {}

        env_mappings = {
            "MUSTER_DEBUG": "app.debug",
            "MUSTER_LOG_LEVEL": "app.log_level",
            "MUSTER_DB_PATH": "database.path",
            "MUSTER_RESPONDER_RADIUS_METERS": "notifications.responder_radius_meters",
            "MUSTER_EXCLUSIVE_CREATE": "emergency.exclusive_create",
            "MUSTER_SYNC_CACHE_FILE": "sync.cache_file",
        }

        for env_var, config_key in env_mappings.items():
            value = os.getenv(env_var)
            if value is None:
                continue
            if value.lower() in ('true', 'false'):
                value = value.lower() == 'true'
            elif value.isdigit():
                value = int(value)
            else:
                try:
                    value = float(value)
                except ValueError:
                    pass
            self._set_nested_value(config, config_key, value)

        return config

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file"""
        path = Path(file_path)

        if not path.exists():
            return {}

        try:
            with open(path, 'r') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    return yaml.safe_load(f) or {}
                elif path.suffix.lower() == '.json':
                    return json.load(f)
                self.logger.warning(f"Unsupported config file format: {path}")
                return {}
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Error loading config file {path}: {e}")

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _set_nested_value(self, config: Dict, key_path: str, value: Any) -> None:
        """Set a nested configuration value using dot notation"""
        keys = key_path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _validate_config(self) -> None:
        """Validate configuration values"""
        errors = []

        for section in ('app', 'database', 'locks'):
            if section not in self.config:
                errors.append(f"Missing required configuration section: {section}")

        db_path = self.get('database.path')
        if db_path and db_path != ':memory:':
            db_dir = Path(db_path).parent
            if not db_dir.exists():
                try:
                    db_dir.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    errors.append(f"Cannot create database directory {db_dir}: {e}")

        for key in POSITIVE_KEYS:
            value = self.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"{key} must be a positive number, got {value!r}")

        log_level = str(self.get('app.log_level', 'INFO'))
        if log_level.upper() not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            errors.append(f"Invalid log level: {log_level}")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation"""
        current = self.config

        try:
            for k in key.split('.'):
                current = current[k]
            return current
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation"""
        self._set_nested_value(self.config, key, value)

        for callback in self.watchers.get(key, []):
            try:
                callback(key, value)
            except Exception as e:
                self.logger.error(f"Error in config watcher for {key}: {e}")

    def watch(self, key: str, callback: Callable[[str, Any], None]) -> None:
        """Watch for configuration changes"""
        self.watchers.setdefault(key, []).append(callback)

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section"""
        return self.get(section, {})

    def get_responder_radius_meters(self) -> float:
        """Radius within which Volunteers and Organizers are alerted"""
        return float(self.get('notifications.responder_radius_meters', 5000))

    def get_stale_after_hours(self) -> float:
        """Age after which a terminal emergency's roster flag is cleared"""
        return float(self.get('emergency.stale_after_hours', 24))

    def is_exclusive_create_enabled(self) -> bool:
        """Whether emergency creation is serialised per reporter"""
        return bool(self.get('emergency.exclusive_create', False))

    def export_config(self, file_path: str) -> None:
        """Export current configuration to file"""
        path = Path(file_path)

        try:
            with open(path, 'w') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    yaml.dump(self.config, f, default_flow_style=False, indent=2)
                elif path.suffix.lower() == '.json':
                    json.dump(self.config, f, indent=2)
                else:
                    raise ValueError(f"Unsupported file format: {path.suffix}")

            self.logger.info(f"Configuration exported to {path}")
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to export configuration: {e}")
            raise ConfigurationError(f"Export failed: {e}")
