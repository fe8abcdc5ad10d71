import logging

import pytest

from app.core.settings import ItemReadinessPolicy, Settings, validate_settings

STRONG = "a-very-long-secret-value-for-tests-0001"


def test_development_tolerates_weak_secret(caplog):
    settings = Settings(app_env="development", secret_key="change-me")

    with caplog.at_level(logging.WARNING, logger="clinic_plans.config"):
        validate_settings(settings)

    assert "SECRET_KEY is missing or too weak" in caplog.text


def test_production_rejects_weak_secret():
    with pytest.raises(RuntimeError, match="SECRET_KEY"):
        validate_settings(Settings(app_env="production", secret_key="short"))


def test_jwt_secret_is_used_as_fallback():
    settings = Settings(app_env="production", jwt_secret=STRONG)

    validate_settings(settings)

    assert settings.secret_key == STRONG


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"conflict_max_retries": 0}, "CONFLICT_MAX_RETRIES"),
        ({"booking_persist_retries": 0}, "BOOKING_PERSIST_RETRIES"),
        ({"appointment_timeout_seconds": 0}, "APPOINTMENT_TIMEOUT_SECONDS"),
        ({"default_page_size": 50, "max_page_size": 20}, "DEFAULT_PAGE_SIZE"),
        ({"plan_code_prefix": "  "}, "PLAN_CODE_PREFIX"),
    ],
)
def test_invalid_values_fail_startup(overrides, message):
    with pytest.raises(RuntimeError, match=message):
        validate_settings(Settings(secret_key=STRONG, **overrides))


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("ITEM_READINESS_POLICY", "all_pending")
    monkeypatch.setenv("CONFLICT_MAX_RETRIES", "")
    monkeypatch.setenv("APPOINTMENT_SERVICE_URL", "   ")
    monkeypatch.setenv("MAX_PAGE_SIZE", "40")

    settings = Settings(_env_file=None)

    assert settings.item_readiness_policy == ItemReadinessPolicy.all_pending
    assert settings.conflict_max_retries == 3
    assert settings.appointment_service_url is None
    assert settings.max_page_size == 40
