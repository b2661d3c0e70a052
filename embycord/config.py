"""
Handles loading and validation of configuration settings.

This module is responsible for loading, merging, and validating configuration settings from:
1. The config.yaml file (primary configuration source)
2. Environment variables (for secrets and overrides)

It provides a unified configuration access mechanism through the get_config_value function,
ensures settings are validated against expected types and requirements, and makes the
configuration available to main.py, which hands the values to the services it builds.

Key components:
- APP_CONFIG: The global configuration dictionary
- get_config_value: Function to retrieve values using dot notation
- validate_config: Validates configuration against expected structure and types
- load_app_config: Loads and merges configuration from all sources
"""

import json
import logging
import os
import sys
from typing import Any, Dict, Tuple

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load environment variables from .env file first
load_dotenv()

APP_CONFIG: Dict[str, Any] = {}

__all__ = [
    "APP_CONFIG",
    "load_app_config",
    "get_config_value",
    "validate_config",
]

DEFAULT_CONFIG_STRUCTURE = {
    "bot_settings": {
        "bot_name": "Embycord",
        "log_file_name": "logs/embycord.log",
        "debug_mode": False,
        "log_level": "INFO",
    },
    "discord": {
        "token": None,  # Secret
        "guild_id": None,
        "admin_ids": [],
        "admin_log_channel_id": None,
    },
    "database": {
        "dsn": "data/emby.db",
    },
    "account": {
        "default_expire_days": 30,
        "default_max_devices": 3,
        "username_prefix": "emby_",
        "password_length": 12,
        "max_accounts_per_user": 3,
        "max_accounts_per_admin": -1,
    },
    "emby": {
        "server_url": "http://localhost:8096",
        "api_key": None,  # Secret
        "enable_sync": True,
        "sync_on_create": True,
        "sync_on_delete": True,
        "timeout": 30,
        "retry_count": 3,
    },
    "sync_settings": {
        "reconcile_interval_minutes": 30,
        "expiry_check_interval_minutes": 60,
    },
    "message_settings": {
        "templates_file": "message_templates.json",
        "embed_colors": {
            "success": "0x28a745",
            "error": "0xdc3545",
            "info": "0x17a2b8",
            "warning": "0xffc107",
            "blue": "0x007bff",
        },
        "embed_footer_text": "Powered by {bot_name}",
        "bot_display_name_in_messages": "Embycord",
    },
}

# (type, is_required, default_value)
EXPECTED_CONFIG: Dict[str, Tuple[type, bool, Any]] = {
    "bot_settings.bot_name": (str, False, "Embycord"),
    "bot_settings.log_file_name": (str, False, "logs/embycord.log"),
    "bot_settings.debug_mode": (bool, False, False),
    "bot_settings.log_level": (str, False, "INFO"),
    "discord.token": (str, True, None),
    "discord.guild_id": (str, True, None),
    "discord.admin_ids": (list, False, []),
    "discord.admin_log_channel_id": (str, False, None),
    "database.dsn": (str, True, "data/emby.db"),
    "account.default_expire_days": (int, False, 30),
    "account.default_max_devices": (int, False, 3),
    "account.username_prefix": (str, False, "emby_"),
    "account.password_length": (int, False, 12),
    "account.max_accounts_per_user": (int, False, 3),
    "account.max_accounts_per_admin": (int, False, -1),
    "emby.server_url": (str, False, "http://localhost:8096"),
    "emby.api_key": (str, False, None),  # Required only when sync is enabled
    "emby.enable_sync": (bool, False, True),
    "emby.sync_on_create": (bool, False, True),
    "emby.sync_on_delete": (bool, False, True),
    "emby.timeout": (int, False, 30),
    "emby.retry_count": (int, False, 3),
    "sync_settings.reconcile_interval_minutes": (int, False, 30),
    "sync_settings.expiry_check_interval_minutes": (int, False, 60),
    "message_settings.templates_file": (str, False, "message_templates.json"),
    "message_settings.embed_colors": (dict, False, {}),
    "message_settings.embed_footer_text": (str, False, "Powered by {bot_name}"),
    "message_settings.bot_display_name_in_messages": (str, False, "Embycord"),
}

# Environment variables that do not follow the SECTION_KEY naming
ENV_VAR_ALIASES = {
    ("discord", "token"): "DISCORD_TOKEN",
    ("emby", "server_url"): "EMBY_SERVER_URL",
    ("emby", "api_key"): "EMBY_API_KEY",
    ("database", "dsn"): "DB_DSN",
}


def _load_yaml_config(path: str = "config.yaml") -> Dict[str, Any]:
    """Loads configuration from a YAML file."""
    path = os.getenv("EMBYCORD_CONFIG", path)
    try:
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f)
                logger.info(f"Successfully loaded configuration from {path}")
                return yaml_config or {}
        else:
            logger.warning(
                f"YAML configuration file not found at {path}. "
                "Ensure 'config.yaml' exists or all settings are provided via environment variables."
            )
            return {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML configuration file {path}: {e}")
        sys.exit(f"Critical error: Could not parse {path}. Please check its syntax.")
    except OSError as e:
        logger.error(f"Could not read YAML configuration {path}: {e}")
        return {}


def _get_typed_env_var(key: str, default_value: Any, expected_type: type) -> Any:
    """Gets an environment variable and attempts to cast it to the expected type."""
    value = os.getenv(key)
    if value is None:
        return default_value

    try:
        if expected_type is bool:
            return value.lower() in ("true", "1", "t", "yes", "y")
        if expected_type is int:
            return int(value)
        if expected_type is list:  # Comma-separated string for lists from env
            return [item.strip() for item in value.split(",") if item.strip()]
        if expected_type is dict:
            return json.loads(value)
        return expected_type(value)
    except ValueError:
        logger.warning(
            f"Could not cast environment variable {key} to {expected_type.__name__}. Using default: {default_value}"
        )
        return default_value


def _merge_configs(
    yaml_config: Dict[str, Any], defaults: Dict[str, Any]
) -> Dict[str, Any]:
    """Merges the YAML config over the defaults, section by section."""
    merged_config = {}

    for section, section_defaults in defaults.items():
        merged_config[section] = section_defaults.copy()
        yaml_section = yaml_config.get(section, {})

        if isinstance(yaml_section, dict):
            for key, default_val in section_defaults.items():
                merged_config[section][key] = yaml_section.get(key, default_val)
        elif yaml_section is not None:
            logger.warning(
                f"Config section '{section}' should be a mapping, ignoring value of type {type(yaml_section).__name__}"
            )

    return merged_config


def _apply_env_vars_to_merged_config(
    config_dict: Dict[str, Any], defaults: Dict[str, Any]
) -> None:
    """Applies environment variables to the config_dict based on default structure.
    Environment variables are expected to be in format SECTION_KEY=value (e.g., EMBY_RETRY_COUNT=5),
    except for the aliases in ENV_VAR_ALIASES.
    """
    for section_name, section_defaults in defaults.items():
        for key_name, default_value in section_defaults.items():
            env_var_key = ENV_VAR_ALIASES.get(
                (section_name, key_name), f"{section_name.upper()}_{key_name.upper()}"
            )
            if os.getenv(env_var_key) is None:
                continue

            expected_type = type(default_value) if default_value is not None else str
            current_val_in_config = config_dict[section_name].get(key_name, default_value)
            env_val = _get_typed_env_var(env_var_key, current_val_in_config, expected_type)
            config_dict[section_name][key_name] = env_val
            if section_name in ("discord", "emby") and key_name in ("token", "api_key"):
                logger.debug(f"Applied secret from environment variable '{env_var_key}'")
            else:
                logger.debug(
                    f"Applied environment variable '{env_var_key}' to '{section_name}.{key_name}' (value: {env_val})"
                )


def load_app_config() -> Dict[str, Any]:
    """
    Load application configuration from YAML and environment variables.

    The configuration loading follows this priority order:
    - Defaults from DEFAULT_CONFIG_STRUCTURE
    - Base settings from config.yaml (or the file named by EMBYCORD_CONFIG)
    - Overrides from environment variables

    Returns:
        Dict[str, Any]: The loaded configuration dictionary
    """
    global APP_CONFIG

    yaml_config = _load_yaml_config()
    merged_config = _merge_configs(yaml_config, DEFAULT_CONFIG_STRUCTURE)
    _apply_env_vars_to_merged_config(merged_config, DEFAULT_CONFIG_STRUCTURE)
    APP_CONFIG = merged_config

    logger.debug(f"Configuration loaded with {len(APP_CONFIG)} top-level keys.")
    return APP_CONFIG


# Load configuration when this module is imported
load_app_config()


def get_config_value(path: str, default: Any = None) -> Any:
    """
    Retrieves a configuration value using dot notation path.

    Args:
        path: Dot-notation path to the configuration value (e.g., 'emby.retry_count')
        default: Value to return if the path is not found

    Returns:
        The configuration value at the specified path, or the default if not found

    Examples:
        >>> get_config_value('account.default_expire_days', 30)
        30
        >>> get_config_value('nonexistent.path', 'fallback')
        'fallback'
    """
    if not APP_CONFIG:
        load_app_config()

    current: Any = APP_CONFIG
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return default
    return current


def _is_discord_id(value: Any) -> bool:
    return isinstance(value, str) and value.isdigit()


def validate_config() -> None:
    """
    Validates the loaded configuration against expected types and requirements.

    Every problem is logged at CRITICAL level before exiting, so a single run
    reports all of them.

    Raises:
        SystemExit: If a critical configuration error is found
    """
    logger.info("Validating configuration...")
    valid = True

    for key, (p_type, is_required, _default) in EXPECTED_CONFIG.items():
        val = get_config_value(key)

        if val is None or val == "":
            if is_required:
                logger.critical(f"Config Error: Required key '{key}' is missing or not set.")
                valid = False
            continue

        # bool is a subclass of int, so it has to be excluded explicitly
        if p_type is int and (isinstance(val, bool) or not isinstance(val, int)):
            type_valid = False
        else:
            type_valid = isinstance(val, p_type)
        if not type_valid:
            logger.critical(
                f"Config Error: Key '{key}' (type: {type(val).__name__}) must be of type {p_type.__name__}."
            )
            valid = False
            continue

        if key == "bot_settings.log_level":
            if val.upper() not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
                logger.critical(
                    f"Config Error: '{key}' (value: {val}) must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL."
                )
                valid = False

        elif key in ["discord.guild_id", "discord.admin_log_channel_id"]:
            if not _is_discord_id(val):
                logger.critical(
                    f"Config Error: '{key}' (value: {val}) must be a valid Discord ID (string of digits)."
                )
                valid = False

        elif key == "discord.admin_ids":
            if not all(_is_discord_id(str(item)) for item in val):
                logger.critical(f"Config Error: All items in '{key}' must be Discord user IDs.")
                valid = False

        elif key in [
            "account.default_max_devices",
            "account.password_length",
            "emby.timeout",
        ]:
            if val <= 0:
                logger.critical(f"Config Error: Key '{key}' (value: {val}) must be a positive integer.")
                valid = False

        elif key in [
            "account.default_expire_days",
            "emby.retry_count",
            "sync_settings.reconcile_interval_minutes",
            "sync_settings.expiry_check_interval_minutes",
        ]:
            if val < 0:
                logger.critical(
                    f"Config Error: Key '{key}' (value: {val}) must be a non-negative integer."
                )
                valid = False

        elif key in ["account.max_accounts_per_user", "account.max_accounts_per_admin"]:
            if val < -1:
                logger.critical(f"Config Error: Key '{key}' (value: {val}) must be -1 (unlimited) or more.")
                valid = False

        elif key == "emby.server_url" and val:
            if not (val.startswith("http://") or val.startswith("https://")):
                logger.critical(f"Config Error: Key '{key}' (value: {val}) must be an HTTP/HTTPS URL.")
                valid = False

        elif key == "message_settings.embed_colors":
            for color_name, color_value in val.items():
                if not (
                    isinstance(color_value, str)
                    and color_value.startswith("0x")
                    and len(color_value) == 8
                    and all(c in "0123456789abcdefABCDEF" for c in color_value[2:])
                ):
                    logger.critical(
                        f"Config Error: In '{key}', color value '{color_value}' for '{color_name}' is not a valid hex color string (e.g., '0xFF00FF')."
                    )
                    valid = False
                    break

    if get_config_value("emby.enable_sync", True) and not get_config_value("emby.api_key"):
        logger.critical(
            "Config Error: 'emby.api_key' (or EMBY_API_KEY) is required while emby.enable_sync is true."
        )
        valid = False

    if not valid:
        logger.critical(
            "Configuration validation failed. Please check your config.yaml and .env files, or bot logs for details."
        )
        sys.exit(1)
    logger.info("Configuration validated successfully.")
