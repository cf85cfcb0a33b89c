"""
Configuration loader for YAML files
"""
import yaml
import logging
from pathlib import Path

from ..exceptions import ConfigurationError
from .models import AppConfig, merge_with_defaults, DEFAULT_SETTINGS

logger = logging.getLogger(__name__)


class ConfigLoader:
    """Loads and saves configuration from YAML files"""

    def __init__(self, config_path: str = "config/smclab.yaml"):
        self.config_path = Path(config_path)

    def load(self) -> AppConfig:
        """Load configuration from YAML file"""
        if not self.config_path.exists():
            logger.info(f"Config file not found at {self.config_path}, using defaults")
            return AppConfig()

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Malformed YAML in {self.config_path}: {e}") from e

        if not data:
            logger.warning("Empty config file, using defaults")
            return AppConfig()

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config root must be a mapping: {self.config_path}")

        settings = merge_with_defaults(data.get('settings') or {})

        config = AppConfig(
            settings=settings,
            optimization=data.get('optimization') or {},
            log_level=data.get('log_level', 'INFO'),
            log_file=data.get('log_file')
        )

        errors = config.validate()
        if errors:
            logger.error(f"Configuration validation errors: {errors}")
            raise ConfigurationError(f"Configuration validation failed: {errors}", details=errors)

        logger.info(f"Loaded configuration from {self.config_path}")
        return config

    def save(self, config: AppConfig) -> None:
        """Save configuration to YAML file; only non-default settings are written"""
        errors = config.validate()
        if errors:
            raise ConfigurationError(f"Cannot save invalid configuration: {errors}", details=errors)

        defaults = DEFAULT_SETTINGS.to_dict()
        settings = {
            key: value for key, value in config.settings.to_dict().items()
            if defaults[key] != value
        }

        data = {
            'log_level': config.log_level,
            'log_file': config.log_file,
            'settings': settings,
            'optimization': config.optimization,
        }

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, indent=2)

        logger.info(f"Configuration saved to {self.config_path}")


def load_config(config_path: str = "config/smclab.yaml") -> AppConfig:
    """Convenience function to load configuration"""
    loader = ConfigLoader(config_path)
    return loader.load()


def save_config(config: AppConfig, config_path: str = "config/smclab.yaml") -> None:
    """Convenience function to save configuration"""
    loader = ConfigLoader(config_path)
    loader.save(config)
