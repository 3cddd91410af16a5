import logging
import os
from dataclasses import dataclass

from cursor_rotator.config import Settings, parse_bool_env


class SecurityValidationError(RuntimeError):
    pass


def allow_open_access() -> bool:
    return parse_bool_env("ALLOW_OPEN_ACCESS", True)


def validate_security_settings(settings: Settings) -> None:
    """
    Warn about (or refuse) an unauthenticated deployment.

    Without ``PROXY_API_KEY`` any caller may spend the pooled credentials.
    That is the default for local use; setting ``ALLOW_OPEN_ACCESS=false``
    turns it into a startup error.
    """
    if not settings.admin_password:
        logging.warning(
            "SECURITY WARNING: ADMIN_PASSWORD is not set. "
            "The credential admin API is disabled."
        )

    if settings.proxy_api_key:
        return

    if allow_open_access():
        logging.warning(
            "SECURITY WARNING: PROXY_API_KEY is not set. "
            "Any client can use the pooled credentials."
        )
        return

    raise SecurityValidationError(
        "Refusing startup: PROXY_API_KEY is missing and ALLOW_OPEN_ACCESS=false. "
        "Set PROXY_API_KEY or allow open access explicitly."
    )


@dataclass(frozen=True)
class CORSSettings:
    allow_origins: list[str]
    allow_credentials: bool
    allow_methods: list[str]
    allow_headers: list[str]


def _split_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    values = [value.strip() for value in raw.split(",")]
    return [value for value in values if value]


def get_cors_settings() -> CORSSettings:
    origins = _split_csv_env("CORS_ALLOW_ORIGINS", "")
    allow_credentials = parse_bool_env("CORS_ALLOW_CREDENTIALS", False)

    if not origins:
        allow_credentials = False

    if allow_credentials and "*" in origins:
        raise SecurityValidationError(
            "Invalid CORS config: CORS_ALLOW_ORIGINS cannot include '*' when "
            "CORS_ALLOW_CREDENTIALS=true."
        )

    return CORSSettings(
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=_split_csv_env("CORS_ALLOW_METHODS", "GET,POST,PATCH,DELETE,OPTIONS"),
        allow_headers=_split_csv_env(
            "CORS_ALLOW_HEADERS", "Authorization,Content-Type,X-Cursor-Checksum"
        ),
    )
