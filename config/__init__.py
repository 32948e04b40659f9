"""Configuration module for loading and managing application settings"""
from typing import Dict, Any
from .lib.load_settings_conf import (
    load_settings_conf,
    validate_settings,
    SettingsError,
    DEFAULTS,
    LOCK_ORDERS,
)

__all__ = [
    'settings_conf',
    'load_settings_conf',
    'validate_settings',
    'SettingsError',
    'DEFAULTS',
    'LOCK_ORDERS',
]

try:
    settings_conf: Dict[str, Any] = load_settings_conf()

except SettingsError as e:
    # Re-raise the error but provide more context
    raise SettingsError(
        f"Configuration Error\n"
        "=================\n\n"
        f"{str(e)}\n\n"
        "Please check settings.conf and the STORE_* environment variables.\n"
        "See examples/settings.conf.example for the available settings."
    )
