import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("yaml_loader")

DEFAULT_CONFIG_PATH = Path("./config/config.yaml")

# Defaults for every section the gateway reads
DEFAULT_CONFIG: Dict[str, Any] = {
    'gateway': {
        'backend': 'simulated',
        'actor': 'Dashboard_User',
    },
    'confirmation': {
        'max_attempts': 5,
        'initial_wait': 5.0,
        'increment': 5.0,
        'require_online': None,
        'cancel_mode': 'detach',
    },
    'api': {
        'base_url': 'http://localhost:3001/api',
        'timeout': 10.0,
        'user_name': 'API_User',
    },
    'devices': [],
    'refresh': {
        'interval': 30,
    },
    'simulator': {
        'settle_after': 3.0,
        'failure_rate': 0.0,
        'reject_offline': True,
    },
    'mqtt': {
        'enabled': False,
        'broker_host': 'localhost',
        'broker_port': 1883,
        'username': None,
        'password': None,
        'base_topic': 'actuators',
        'qos': 0,
    },
    'web': {
        'host': '0.0.0.0',
        'port': 8000,
    },
    'logging': {
        'level': 'INFO',
        'file': 'logs/gateway.log',
        'levels': {},
    },
}


def load_yaml_config(filepath: Path) -> dict:
    """
    Loads configuration data from a YAML file.

    Args:
        filepath (Path): The path object pointing to the YAML configuration file.

    Returns:
        dict: The loaded configuration as a dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If there is an issue parsing the YAML content.
    """
    if not filepath.exists():
        raise FileNotFoundError(f"Configuration file not found at: {filepath}")

    try:
        with open(filepath, 'r') as f:
            config_data = yaml.safe_load(f)
        return config_data if config_data is not None else {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML file: {e}")
        raise
    except IOError as e:
        logger.error(f"Error reading config file: {e}")
        raise


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(filepath: Optional[Path] = None) -> Dict[str, Any]:
    """Load config.yaml on top of the defaults. A missing file means defaults."""
    path = Path(filepath) if filepath else DEFAULT_CONFIG_PATH
    try:
        user_config = load_yaml_config(path)
    except FileNotFoundError:
        logger.info(f"No configuration at {path}, using defaults")
        user_config = {}

    if not isinstance(user_config, dict):
        raise ValueError(f"Configuration root must be a mapping, got {type(user_config).__name__}")

    return _merge(DEFAULT_CONFIG, user_config)


def get_conf(config: Dict[str, Any], section: str, key: str, default: Any = None) -> Any:
    """Get configuration value."""
    value = (config.get(section) or {}).get(key)
    return default if value is None else value
