import pytest

from cursor_rotator.config import Settings, load_settings, parse_interval
from cursor_rotator.utils import extract_token, split_credentials


@pytest.mark.parametrize(
    "value, expected",
    [("30s", 30.0), ("5m", 300.0), ("2h", 7200.0), (" 10 M ", 600.0)],
)
def test_parse_interval(value: str, expected: float) -> None:
    assert parse_interval(value) == expected


@pytest.mark.parametrize("value", [None, "", "5x", "m5", "-1m"])
def test_parse_interval_falls_back_to_default(value) -> None:
    assert parse_interval(value) == 300.0


def test_split_and_extract() -> None:
    assert split_credentials(" a, user%3A%3Ab ,, c::d ") == ["a", "user%3A%3Ab", "c::d"]
    assert [extract_token(entry) for entry in ["a", "user%3A%3Ab", "c::d"]] == ["a", "b", "d"]
    assert extract_token("") is None


def test_load_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AUTH_COOKIE",
        "COOKIE_ROTATION",
        "COOKIE_TIME",
        "PROXY_ENABLED",
        "RATELIMIT_WORK",
        "PRIVILEGED_MODE",
        "RECOVERY_INTERVAL",
        "PROXY_API_KEY",
        "ADMIN_PASSWORD",
        "PORT",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.env_credentials == []
    assert settings.rotation_enabled is False
    assert settings.rotation_interval == 300.0
    assert settings.rate_limit_enabled is True
    assert settings.upstream_proxy is None
    assert settings.recovery_interval == 600


def test_load_settings_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTH_COOKIE", "tok-a, tok-b")
    monkeypatch.setenv("COOKIE_ROTATION", "true")
    monkeypatch.setenv("COOKIE_TIME", "10s")
    monkeypatch.setenv("PROXY_ENABLED", "true")
    monkeypatch.setenv("PROXY_URL", "http://proxy:8080")
    monkeypatch.setenv("RATELIMIT_WORK", "false")
    monkeypatch.setenv("RECOVERY_INTERVAL", "not-a-number")

    settings = load_settings()

    assert settings.env_credentials == ["tok-a", "tok-b"]
    assert settings.rotation_enabled is True
    assert settings.rotation_interval == 10.0
    assert settings.upstream_proxy == "http://proxy:8080"
    assert settings.rate_limit_enabled is False
    assert settings.recovery_interval == 600


def test_upstream_proxy_requires_flag() -> None:
    assert Settings(proxy_url="http://proxy:8080").upstream_proxy is None


@pytest.mark.parametrize(
    "value, expected",
    [("false", False), (" FALSE ", False), ("true", True), ("enabled", True), ("0", True), ("", True)],
)
def test_rate_limit_enforcement_only_disabled_by_false(
    monkeypatch: pytest.MonkeyPatch, value: str, expected: bool
) -> None:
    monkeypatch.setenv("RATELIMIT_WORK", value)

    assert load_settings().rate_limit_enabled is expected
