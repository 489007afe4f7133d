import pytest

from bastion.config import Settings, get_settings, reset_settings_cache
from bastion.service.errors import ConfigError


def test_defaults():
    settings = Settings()
    assert settings.access_token_ttl_seconds == 900
    assert settings.refresh_token_ttl_seconds == 604800
    assert settings.api_prefix == "/api"
    assert settings.admin_path_prefixes == ["/admin", "/api/admin"]
    assert settings.csrf_enabled is True


def test_csv_lists_and_prefix_normalization():
    settings = Settings(
        admin_path_prefixes="admin/, /ops ,",
        cors_allow_origins="https://a.example, https://b.example",
        api_prefix="v1/",
    )
    assert settings.admin_path_prefixes == ["/admin", "/ops"]
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.api_prefix == "/v1"


def test_non_positive_ttl_rejected():
    with pytest.raises(ValueError):
        Settings(access_token_ttl_seconds=0)


@pytest.mark.parametrize("secret", [None, "", "   "])
def test_missing_secret_is_config_error(secret):
    with pytest.raises(ConfigError):
        Settings(jwt_secret=secret).require_jwt_secret()


def test_short_secret_is_config_error():
    with pytest.raises(ConfigError):
        Settings(jwt_secret="short").require_jwt_secret()


def test_from_env_reads_env_names(monkeypatch):
    monkeypatch.setenv("JWT_ACCESS_EXP", "60")
    monkeypatch.setenv("JWT_REFRESH_EXP", "120")
    monkeypatch.setenv("CSRF_ENABLED", "false")
    monkeypatch.setenv("ADMIN_PATH_PREFIXES", "/staff")
    settings = Settings.from_env()
    assert settings.access_token_ttl_seconds == 60
    assert settings.refresh_token_ttl_seconds == 120
    assert settings.csrf_enabled is False
    assert settings.admin_path_prefixes == ["/staff"]


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("APP_NAME", "Renamed")
    reset_settings_cache()
    assert get_settings().app_name == "Renamed"
    reset_settings_cache()
