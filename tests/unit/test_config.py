import os
from decimal import Decimal
from unittest.mock import patch

from scheduled_messaging.core.config import Settings


def test_settings_defaults():
    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

    assert settings.app_name == "Scheduled Messaging Service"
    assert settings.scheduler_enabled is True
    assert settings.scheduler_max_in_flight == 10
    assert settings.default_max_retries == 3
    assert settings.domestic_sms_rate == Decimal("4.00")
    assert settings.backup_provider_enabled is False


def test_connection_urls_are_assembled():
    env = {
        "POSTGRES_USER": "u",
        "POSTGRES_PASSWORD": "p",
        "POSTGRES_HOST": "db",
        "POSTGRES_DB": "sched",
        "REDIS_HOST": "cache",
        "REDIS_PASSWORD": "secret",
    }
    with patch.dict(os.environ, env, clear=True):
        settings = Settings(_env_file=None)

    assert settings.database_url == "postgresql+asyncpg://u:p@db:5432/sched"
    assert settings.redis_url == "redis://:secret@cache:6379/0"


def test_explicit_database_url_wins():
    with patch.dict(os.environ, {"DATABASE_URL": "sqlite+aiosqlite:///./local.db"}, clear=True):
        settings = Settings(_env_file=None)
    assert settings.database_url == "sqlite+aiosqlite:///./local.db"


def test_settings_override():
    env = {
        "APP_NAME": "Test App",
        "TEST_ENV": "unit",
        "SCHEDULER_ENABLED": "false",
        "SCHEDULER_POLL_INTERVAL": "5",
        "INTERNATIONAL_SMS_RATE": "25.50",
    }
    with patch.dict(os.environ, env):
        settings = Settings(_env_file=None)

    assert settings.app_name == "Test App"
    assert settings.test_env == "unit"
    assert settings.scheduler_enabled is False
    assert settings.scheduler_poll_interval == 5.0
    assert settings.international_sms_rate == Decimal("25.50")
