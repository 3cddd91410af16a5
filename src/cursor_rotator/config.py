# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Environment-driven settings for the credential broker.

Values are read once at startup (after ``load_dotenv``) into a frozen
``Settings`` instance that is passed to the store, selector and orchestrator.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import List, Optional

from .utils import split_credentials

lib_logger = logging.getLogger("cursor_rotator")

DEFAULT_ROTATION_INTERVAL = "5m"
DEFAULT_PROXY_URL = "http://127.0.0.1:7890"
DEFAULT_STORE_PATH = "data/auth_cookies.json"
DEFAULT_API_KEY_STORE_PATH = "data/api_keys.json"
DEFAULT_RECOVERY_INTERVAL = 600  # 10 minutes
DEFAULT_PORT = 3010

_INTERVAL_PATTERN = re.compile(r"^\s*(\d+)\s*([smh])\s*$", re.IGNORECASE)
_INTERVAL_UNITS = {"s": 1, "m": 60, "h": 3600}


def parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_interval(value: Optional[str], default: str = DEFAULT_ROTATION_INTERVAL) -> float:
    """
    Parse a rotation interval of the form ``<n>[smh]`` into seconds.

    Invalid values fall back to ``default`` with a warning.
    """
    match = _INTERVAL_PATTERN.match(value or "")
    if not match:
        if value:
            lib_logger.warning(
                f"Invalid rotation interval '{value}'. Falling back to {default}."
            )
        match = _INTERVAL_PATTERN.match(default)
    amount, unit = match.groups()
    return float(int(amount) * _INTERVAL_UNITS[unit.lower()])


@dataclass(frozen=True)
class Settings:
    env_credentials: List[str] = field(default_factory=list)
    rotation_enabled: bool = False
    rotation_interval: float = 300.0
    proxy_enabled: bool = False
    proxy_url: str = DEFAULT_PROXY_URL
    rate_limit_enabled: bool = True
    privileged_mode: bool = False
    store_path: str = DEFAULT_STORE_PATH
    api_key_store_path: str = DEFAULT_API_KEY_STORE_PATH
    recovery_interval: int = DEFAULT_RECOVERY_INTERVAL
    proxy_api_key: Optional[str] = None
    admin_password: Optional[str] = None
    port: int = DEFAULT_PORT

    @property
    def upstream_proxy(self) -> Optional[str]:
        return self.proxy_url if self.proxy_enabled else None


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        lib_logger.warning(f"Invalid {name} '{raw}'. Falling back to {default}.")
        return default


def load_settings() -> Settings:
    """Build ``Settings`` from the current environment."""
    return Settings(
        env_credentials=split_credentials(os.getenv("AUTH_COOKIE")),
        rotation_enabled=parse_bool_env("COOKIE_ROTATION", False),
        rotation_interval=parse_interval(os.getenv("COOKIE_TIME")),
        proxy_enabled=parse_bool_env("PROXY_ENABLED", False),
        proxy_url=os.getenv("PROXY_URL") or DEFAULT_PROXY_URL,
        # Enforcement stays on unless explicitly disabled
        rate_limit_enabled=(os.getenv("RATELIMIT_WORK") or "").strip().lower() != "false",
        privileged_mode=parse_bool_env("PRIVILEGED_MODE", False),
        store_path=os.getenv("CREDENTIAL_STORE_PATH") or DEFAULT_STORE_PATH,
        api_key_store_path=os.getenv("API_KEY_STORE_PATH") or DEFAULT_API_KEY_STORE_PATH,
        recovery_interval=_int_env("RECOVERY_INTERVAL", DEFAULT_RECOVERY_INTERVAL),
        proxy_api_key=(os.getenv("PROXY_API_KEY") or "").strip() or None,
        admin_password=(os.getenv("ADMIN_PASSWORD") or "").strip() or None,
        port=_int_env("PORT", DEFAULT_PORT),
    )
