"""
Configuration Loader.

Responsible for reading the config.yaml file that names the device,
its access token and the relay connection settings.
"""
import yaml
import logging
from pathlib import Path
from typing import Dict, Any

from spark_mqtt_gpio.errors import ConfigurationError

logger = logging.getLogger(__name__)


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return {}

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse config file: {e}")
        raise

    if not isinstance(config, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping, got {type(config).__name__}")

    logger.info(f"Loaded configuration from {path}")
    return config
