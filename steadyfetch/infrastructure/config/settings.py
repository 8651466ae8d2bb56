"""Provides functions for loading and accessing configuration settings.

Supports loading from .env files, environment variables, and a dedicated
configuration file (~/.steadyfetch/config.yaml). Typed getters turn the flat
keys into the option dataclasses used by the data-access components.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from steadyfetch.domain.models.common import (
    DEFAULT_CATEGORY_TTLS,
    CacheSettings,
    FetchOptions,
    OptimisticOptions,
    RateLimitOptions,
    ThrottleOptions,
)

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
DEFAULT_CONFIG_DIR = Path.home() / ".steadyfetch"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_CACHE_DIR = DEFAULT_CONFIG_DIR / "cache"
ENV_FILE_NAME = ".env"
ENV_PREFIX = "STEADYFETCH_"

# --- Global Configuration Store ---
_config: Dict[str, Any] = {}
_test_config: Dict[str, Any] = {}
_loaded = False


def _flatten(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Turns nested YAML sections into dotted keys ('cache.default_ttl')."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict) and key != "category_ttls":
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


def load_configuration(config_file: Path = DEFAULT_CONFIG_FILE, env_file: Optional[Path] = None, reload: bool = False) -> None:
    """Loads configuration from the YAML file and the .env file.

    Priority order (highest to lowest) as resolved by `get_config`:
    1. Test overrides
    2. Environment variables (including those loaded from .env)
    3. YAML configuration file
    4. Default values

    Args:
        config_file: Path to the YAML configuration file.
        env_file: Path to the .env file (searches upwards from cwd if None).
        reload: Discard previously loaded values and read the files again.
    """
    global _config, _loaded
    if _loaded and not reload:
        logger.debug("Configuration already loaded.")
        return

    _config = {}

    if config_file.exists():
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f)
            if isinstance(yaml_config, dict):
                _config.update(_flatten(yaml_config))
                logger.info(f"Loaded configuration from YAML: {config_file}")
            elif yaml_config is not None:
                logger.warning(f"YAML config file {config_file} did not contain a dictionary.")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load or parse YAML config {config_file}: {e}")
    else:
        logger.debug(f"YAML config file not found: {config_file}")

    dotenv_path = env_file or find_dotenv_path()
    if dotenv_path:
        # override=False: real environment variables take precedence
        if load_dotenv(dotenv_path=dotenv_path, override=False):
            logger.info(f"Loaded environment variables from: {dotenv_path}")
    else:
        logger.debug("Skipping .env file loading (no file found).")

    _loaded = True
    logger.debug("Configuration loading process completed.")


def _coerce(value: str) -> Any:
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def env_key_for(key: str) -> str:
    return f"{ENV_PREFIX}{key.upper().replace('.', '_')}"


def get_config(key: str, default: Any = None) -> Any:
    """Get a configuration value by dotted key.

    Priority:
    1. Test configuration
    2. Environment variable (STEADYFETCH_ + key upper-cased, dots as underscores)
    3. YAML config
    4. Default value
    """
    if key in _test_config:
        return _test_config[key]

    env_key = env_key_for(key)
    if env_key in os.environ:
        return _coerce(os.environ[env_key])

    if key in _config:
        return _config[key]

    return default


def find_dotenv_path() -> Optional[Path]:
    """Searches for the .env file upwards from the current directory."""
    cwd = Path.cwd()
    for path in [cwd] + list(cwd.parents):
        env_path = path / ENV_FILE_NAME
        if env_path.is_file():
            return env_path
    return None


# --- Convenience Functions ---

def get_cache_directory() -> Path:
    """Directory of the durable (local tier and offline) stores."""
    return Path(str(get_config("cache.directory", DEFAULT_CACHE_DIR))).expanduser()


def get_cache_settings() -> CacheSettings:
    category_ttls = dict(DEFAULT_CATEGORY_TTLS)
    configured = get_config("cache.category_ttls")
    if isinstance(configured, dict):
        category_ttls.update({str(k): float(v) for k, v in configured.items()})
    defaults = CacheSettings()
    return CacheSettings(
        default_ttl=float(get_config("cache.default_ttl", defaults.default_ttl)),
        category_ttls=category_ttls,
        max_memory_entries=int(get_config("cache.max_memory_entries", defaults.max_memory_entries)),
        tier_budget_bytes=int(get_config("cache.tier_budget_bytes", defaults.tier_budget_bytes)),
        reserved_bytes=int(get_config("cache.reserved_bytes", defaults.reserved_bytes)),
        max_entry_bytes=int(get_config("cache.max_entry_bytes", defaults.max_entry_bytes)),
        minimized_list_items=int(get_config("cache.minimized_list_items", defaults.minimized_list_items)),
        cleanup_interval=float(get_config("cache.cleanup_interval", defaults.cleanup_interval)),
    )


def get_throttle_options() -> ThrottleOptions:
    defaults = ThrottleOptions()
    return ThrottleOptions(
        max_concurrent=int(get_config("throttle.max_concurrent", defaults.max_concurrent)),
        delay_between_batches=float(get_config("throttle.delay_between_batches", defaults.delay_between_batches)),
        retry_on_failure=bool(get_config("throttle.retry_on_failure", defaults.retry_on_failure)),
        max_retries=int(get_config("throttle.max_retries", defaults.max_retries)),
        retry_delay=float(get_config("throttle.retry_delay", defaults.retry_delay)),
        exhaustion_backoff=float(get_config("throttle.exhaustion_backoff", defaults.exhaustion_backoff)),
    )


def get_rate_limit_options() -> RateLimitOptions:
    defaults = RateLimitOptions()
    return RateLimitOptions(
        max_requests=int(get_config("throttle.rate_limit.max_requests", defaults.max_requests)),
        time_window=float(get_config("throttle.rate_limit.time_window", defaults.time_window)),
    )


def get_fetch_options() -> FetchOptions:
    defaults = FetchOptions()
    return FetchOptions(
        auto_fetch=bool(get_config("fetch.auto_fetch", defaults.auto_fetch)),
        cache_time=float(get_config("fetch.cache_time", defaults.cache_time)),
        retry_count=int(get_config("fetch.retry_count", defaults.retry_count)),
        retry_delay=float(get_config("fetch.retry_delay", defaults.retry_delay)),
        use_exponential_backoff=bool(get_config("fetch.use_exponential_backoff", defaults.use_exponential_backoff)),
        max_retry_delay=float(get_config("fetch.max_retry_delay", defaults.max_retry_delay)),
        debounce_delay=float(get_config("fetch.debounce_delay", defaults.debounce_delay)),
        circuit_cooldown=float(get_config("fetch.circuit_cooldown", defaults.circuit_cooldown)),
    )


def get_optimistic_options() -> OptimisticOptions:
    defaults = OptimisticOptions()
    return OptimisticOptions(
        rollback_delay=float(get_config("optimistic.rollback_delay", defaults.rollback_delay)),
        cancel_previous=bool(get_config("optimistic.cancel_previous", defaults.cancel_previous)),
    )


def set_config_for_testing(config_dict: Dict[str, Any]) -> None:
    """Set configuration values that override everything else (tests only)."""
    _test_config.update(config_dict)
    logger.debug(f"Set testing configuration: {config_dict}")


def clear_test_config() -> None:
    """Clear all testing configuration values."""
    _test_config.clear()
    logger.debug("Cleared testing configuration")


# Load configuration when the module is imported
load_configuration()
