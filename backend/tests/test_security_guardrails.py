import pytest

from core import config as config_module


def _reset_settings_cache():
    config_module.get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _fresh_settings():
    _reset_settings_cache()
    yield
    _reset_settings_cache()


def test_non_local_debug_mode_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://trolleyops:real-password@db:5432/trolleyops")

    with pytest.raises(ValueError, match="debug=true"):
        config_module.get_settings()


def test_non_local_default_database_password_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(ValueError, match="default database password"):
        config_module.get_settings()


def test_non_local_sqlite_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///trolleyops.db")

    with pytest.raises(ValueError, match="SQLite"):
        config_module.get_settings()


def test_local_allows_dev_defaults(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.delenv("DATABASE_URL", raising=False)

    settings = config_module.get_settings()
    assert settings.app_env == "local"
    assert settings.checkout_grace_hours == 4
    assert settings.default_geofence_radius_m == 500


def test_domain_knobs_from_environment(monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("CHECKOUT_GRACE_HOURS", "6")
    monkeypatch.setenv("BLOCK_OVERDUE_THRESHOLD", "5")

    settings = config_module.get_settings()
    assert settings.checkout_grace_hours == 6
    assert settings.block_overdue_threshold == 5
