import logging

import pytest

from quotagate.core.config import Settings, validate_config


def _settings(**overrides):
    values = {
        "DATABASE_URL": "sqlite:///quotagate.db",
        "AI_API_URL": "http://ai.internal/reply",
        "JWT_SECRET": "secret",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_complete_config_passes_strict():
    assert validate_config(strict=True, settings_obj=_settings()) is True


def test_missing_keys_raise_in_strict_mode():
    cfg = _settings(AI_API_URL=None, JWT_SECRET=None)
    with pytest.raises(RuntimeError) as excinfo:
        validate_config(strict=True, settings_obj=cfg)
    assert "AI_API_URL" in str(excinfo.value)
    assert "JWT_SECRET|JWT_JWKS_URL" in str(excinfo.value)


def test_missing_keys_only_warn_when_lenient(caplog):
    cfg = _settings(DATABASE_URL=None)
    with caplog.at_level(logging.WARNING, logger="quotagate"):
        assert validate_config(strict=False, settings_obj=cfg) is True
    assert "DATABASE_URL" in caplog.text


def test_jwks_url_satisfies_auth_requirement():
    cfg = _settings(JWT_SECRET=None, JWT_JWKS_URL="https://auth.test/jwks")
    assert validate_config(strict=True, settings_obj=cfg) is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"USAGE_LOG_MODE": "kafka"},
        {"ENVIRONMENT": "prod", "AUTH_ALLOW_USER_HEADER": True},
    ],
)
def test_unsafe_settings_rejected_in_strict_mode(overrides):
    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=_settings(**overrides))


def test_header_auth_in_prod_raises_even_when_lenient():
    cfg = _settings(ENVIRONMENT="prod", AUTH_ALLOW_USER_HEADER=True)
    with pytest.raises(RuntimeError):
        validate_config(strict=False, settings_obj=cfg)
