import pytest

from steadyfetch.infrastructure.config import settings
from steadyfetch.infrastructure.config.settings import (
    env_key_for,
    get_cache_directory,
    get_cache_settings,
    get_config,
    get_fetch_options,
    get_rate_limit_options,
    get_throttle_options,
    load_configuration,
    set_config_for_testing,
)


@pytest.fixture
def reload_afterwards():
    """Restores the process configuration after a test reloads it from other files."""
    yield
    load_configuration(reload=True)


def test_env_key_for_dotted_keys():
    assert env_key_for("cache.default_ttl") == "STEADYFETCH_CACHE_DEFAULT_TTL"


@pytest.mark.parametrize(
    "raw, expected",
    [("true", True), ("False", False), ("3", 3), ("0.5", 0.5), ("dark", "dark")],
)
def test_environment_values_are_coerced(raw, expected):
    assert settings._coerce(raw) == expected


def test_get_config_priority(monkeypatch):
    key = "throttle.max_retries"
    monkeypatch.delenv(env_key_for(key), raising=False)
    assert get_config(key, "fallback") == "fallback"

    monkeypatch.setitem(settings._config, key, 4)
    assert get_config(key) == 4

    monkeypatch.setenv(env_key_for(key), "5")
    assert get_config(key) == 5

    set_config_for_testing({key: 6})
    assert get_config(key) == 6


def test_load_configuration_from_yaml_and_dotenv(tmp_path, monkeypatch, reload_afterwards):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "cache:\n"
        "  default_ttl: 42\n"
        "  category_ttls:\n"
        "    races: 60\n"
        "fetch:\n"
        "  retry_count: 2\n"
        "throttle:\n"
        "  rate_limit:\n"
        "    time_window: 2.5\n",
        encoding="utf-8",
    )
    env_file = tmp_path / ".env"
    env_file.write_text("STEADYFETCH_THROTTLE_MAX_CONCURRENT=7\n", encoding="utf-8")
    # setenv first so the variable written by load_dotenv is removed on teardown
    for key in ("cache.default_ttl", "fetch.retry_count", "throttle.max_concurrent", "throttle.rate_limit.time_window"):
        monkeypatch.setenv(env_key_for(key), "")
        monkeypatch.delenv(env_key_for(key))

    load_configuration(config_file=config_file, env_file=env_file, reload=True)

    cache_settings = get_cache_settings()
    assert cache_settings.default_ttl == 42
    assert cache_settings.category_ttls["races"] == 60
    assert cache_settings.category_ttls["meetings"] == 5 * 60
    assert get_fetch_options().retry_count == 2
    assert get_throttle_options().max_concurrent == 7
    assert get_rate_limit_options().time_window == 2.5


def test_invalid_yaml_is_ignored(tmp_path, reload_afterwards):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("cache: [unclosed\n", encoding="utf-8")

    load_configuration(config_file=config_file, env_file=tmp_path / "missing.env", reload=True)

    assert get_config("cache.default_ttl", "default") == "default"


def test_typed_getters_use_test_overrides(tmp_path):
    set_config_for_testing({
        "cache.directory": str(tmp_path),
        "fetch.use_exponential_backoff": True,
        "throttle.retry_delay": 0.25,
    })

    assert get_cache_directory() == tmp_path
    assert get_fetch_options().use_exponential_backoff is True
    assert get_throttle_options().retry_delay == 0.25
