"""Configuration module for loading and managing engine settings"""
from typing import Dict, Any, Optional

from .lib.load_settings_conf import (
    ConfigurationError,
    SettingsError,
    DEFAULTS,
    SOURCE_ADDRESS_KEYS,
    load_settings_conf,
    source_addresses,
)

__all__ = [
    'load_config',
    'source_addresses',
    'ConfigurationError',
    'SettingsError',
    'DEFAULTS',
    'SOURCE_ADDRESS_KEYS',
]


def load_config(settings_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from settings.conf and the environment.

    Args:
        settings_path: Optional directory containing settings.conf. If not provided,
                       will look in the current directory.

    Returns:
        Dictionary of validated settings

    Raises:
        ConfigurationError: If a required setting is missing or invalid
    """
    try:
        return load_settings_conf(settings_path or ".")
    except SettingsError as e:
        # Re-raise the error but provide more context
        raise type(e)(
            f"Configuration Error\n"
            "=================\n\n"
            f"{str(e)}\n\n"
            "Set the values in settings.conf or the matching upper-case environment variables.\n"
            "Run `python -m config` to write an example settings file."
        ) from e
