"""Settings configuration loader module.

This module handles loading and parsing of the settings.conf file which contains
the ledger endpoint, the tracked contract addresses and the engine tunables.

The settings file uses INI format with a [DEFAULT] section containing key-value pairs.
Every key can be overridden by an environment variable of the same name in upper case
(e.g. LEDGER_WS_URL, REGISTRY_ADDRESS), so the file itself is optional when the
environment carries the required values.

Required settings:
    ledger_ws_url: Websocket JSON-RPC endpoint of the ledger node
    registry_address, staking_address, lending_address,
    marketplace_address, oracle_address: One contract address per tracked source

Example settings.conf:
    [DEFAULT]
    ledger_ws_url = wss://node.example/ws
    registry_address = 0x5FbDB2315678afecb367f032d93F642f64180aa3
    db_url = postgresql://root@localhost:26257/tickets?sslmode=disable

Raises:
    SettingsError: If the settings file is invalid or required settings are missing
"""
from configparser import ConfigParser, Error as ConfigParserError
from pathlib import Path
from typing import Dict, Any, List, Mapping, Optional
import os
import re


class ConfigurationError(Exception):
    """Raised when the engine cannot be configured. Always fatal at startup."""
    pass


class SettingsError(ConfigurationError):
    """Raised when there are issues loading or parsing the settings configuration."""
    pass


class ConfigValidationError:
    """Helper class to format configuration validation errors"""
    def __init__(self):
        self.missing: List[str] = []
        self.invalid: List[str] = []

    def has_errors(self) -> bool:
        """Check if any errors exist"""
        return bool(self.missing or self.invalid)

    def format_message(self) -> str:
        """Format error message in a clean, readable way"""
        messages = []

        if self.missing:
            messages.append("Missing required settings:")
            messages.extend(f"  - {item}" for item in self.missing)

        if self.invalid:
            if messages:
                messages.append("")
            messages.append("Invalid settings:")
            messages.extend(f"  - {item}" for item in self.invalid)

        return "\n".join(messages)


# Tracked event sources and the setting naming each one's contract address
SOURCE_ADDRESS_KEYS = {
    'registry': 'registry_address',
    'staking': 'staking_address',
    'lending': 'lending_address',
    'marketplace': 'marketplace_address',
    'oracle': 'oracle_address',
}

REQUIRED_SETTINGS = ['ledger_ws_url'] + list(SOURCE_ADDRESS_KEYS.values())

# Default settings
DEFAULTS = {
    'db_url': 'postgresql://root@localhost:26257/tickets?sslmode=disable',
    'store_backend': 'postgres',
    'reconnect_delay': '5',  # Seconds between reconnect attempts
    'reconnect_max_delay': '5',  # Equal to reconnect_delay means a fixed interval
    'reconnect_jitter': 'false',
    'request_timeout': '10',
    'token_decimals': '6',  # Display scaling for amounts (USDC style)
    'start_block': '',  # Empty means start at the current head when no cursor exists
    'abi_dir': '',
    'recent_transactions': '10',
    'api_host': '0.0.0.0',
    'api_port': '8000',
    'embed_ingestion': 'false',
    'log_level': 'INFO',
}

INT_SETTINGS = ('token_decimals', 'recent_transactions', 'api_port')
FLOAT_SETTINGS = ('reconnect_delay', 'reconnect_max_delay', 'request_timeout')
BOOL_SETTINGS = ('reconnect_jitter', 'embed_ingestion')

_ADDRESS_RE = re.compile(r'^0x[0-9a-fA-F]{40}$')
_TRUE = {'1', 'true', 'yes', 'on'}
_FALSE = {'0', 'false', 'no', 'off', ''}


def load_settings_conf(
    settings_path: str = ".",
    environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Load settings.conf, apply environment overrides and validate.

    Args:
        settings_path: Directory containing settings.conf
        environ: Environment mapping, defaults to os.environ

    Returns:
        Dictionary containing validated settings

    Raises:
        SettingsError: If parsing fails or validation fails
    """
    environ = os.environ if environ is None else environ
    config_path = Path(settings_path) / 'settings.conf'

    settings: Dict[str, Any] = dict(DEFAULTS)

    if config_path.exists():
        try:
            parser = ConfigParser()
            parser.read(config_path)
            settings.update(dict(parser['DEFAULT']))
        except ConfigParserError as e:
            raise SettingsError(f"Error parsing {config_path}: {str(e)}")

    for key in list(DEFAULTS) + REQUIRED_SETTINGS:
        value = environ.get(key.upper())
        if value is not None:
            settings[key] = value

    return validate_settings(settings)


def validate_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Validate loaded settings.

    Args:
        settings: Dictionary of raw (string) settings

    Returns:
        Validated and processed settings

    Raises:
        SettingsError: If validation fails
    """
    errors = ConfigValidationError()

    errors.missing.extend(key for key in REQUIRED_SETTINGS if not settings.get(key))

    url = settings.get('ledger_ws_url')
    if url and not url.startswith(('ws://', 'wss://')):
        errors.invalid.append(f"ledger_ws_url: expected ws:// or wss:// URL, got {url}")

    for key in SOURCE_ADDRESS_KEYS.values():
        address = settings.get(key)
        if address and not _ADDRESS_RE.match(address):
            errors.invalid.append(f"{key}: not a 20-byte hex address ({address})")
        elif address:
            settings[key] = address.lower()

    for key in INT_SETTINGS:
        try:
            settings[key] = int(settings[key])
            if settings[key] < 0:
                raise ValueError("must not be negative")
        except (TypeError, ValueError) as e:
            errors.invalid.append(f"{key}: {e}")

    for key in FLOAT_SETTINGS:
        try:
            settings[key] = float(settings[key])
            if settings[key] < 0:
                raise ValueError("must not be negative")
        except (TypeError, ValueError) as e:
            errors.invalid.append(f"{key}: {e}")

    for key in BOOL_SETTINGS:
        value = str(settings[key]).strip().lower()
        if value in _TRUE:
            settings[key] = True
        elif value in _FALSE:
            settings[key] = False
        else:
            errors.invalid.append(f"{key}: expected a boolean, got {settings[key]}")

    start_block = str(settings.get('start_block') or '').strip()
    if start_block:
        try:
            settings['start_block'] = int(start_block, 0)
        except ValueError:
            errors.invalid.append(f"start_block: not a block number ({start_block})")
    else:
        settings['start_block'] = None

    settings['abi_dir'] = settings.get('abi_dir') or None

    if settings.get('store_backend') not in ('postgres', 'memory'):
        errors.invalid.append(
            f"store_backend: expected 'postgres' or 'memory', got {settings.get('store_backend')}"
        )

    if (not errors.invalid
            and settings['reconnect_max_delay'] < settings['reconnect_delay']):
        settings['reconnect_max_delay'] = settings['reconnect_delay']

    if errors.has_errors():
        raise SettingsError(
            "Settings Configuration Validation Failed\n\n" +
            errors.format_message()
        )

    return settings


def source_addresses(settings: Dict[str, Any]) -> Dict[str, str]:
    """Map each tracked source name to its configured contract address."""
    return {source: settings[key] for source, key in SOURCE_ADDRESS_KEYS.items()}
