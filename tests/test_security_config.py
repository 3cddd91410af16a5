import pytest

from cursor_proxy.security_config import (
    SecurityValidationError,
    get_cors_settings,
    validate_security_settings,
)
from cursor_rotator.config import Settings


def test_cors_defaults_are_safe(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    monkeypatch.delenv("CORS_ALLOW_CREDENTIALS", raising=False)

    settings = get_cors_settings()

    assert settings.allow_origins == []
    assert settings.allow_credentials is False


def test_cors_rejects_wildcard_with_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "*")
    monkeypatch.setenv("CORS_ALLOW_CREDENTIALS", "true")

    with pytest.raises(SecurityValidationError):
        get_cors_settings()


def test_closed_deployment_requires_proxy_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALLOW_OPEN_ACCESS", "false")

    with pytest.raises(SecurityValidationError):
        validate_security_settings(Settings())


def test_open_access_is_allowed_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ALLOW_OPEN_ACCESS", raising=False)

    validate_security_settings(Settings())


def test_proxy_key_satisfies_closed_deployment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALLOW_OPEN_ACCESS", "false")

    validate_security_settings(Settings(proxy_api_key="secret"))
