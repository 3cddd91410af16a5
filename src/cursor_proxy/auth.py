import hmac
import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from cursor_rotator import (
    ApiKeyStore,
    CredentialPool,
    CredentialStore,
    CursorClient,
    RecoveryTask,
    RetryOrchestrator,
    Settings,
)
from cursor_rotator.api_key_store import API_KEY_PREFIX

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> CredentialStore:
    return request.app.state.credential_store


def get_key_store(request: Request) -> ApiKeyStore:
    return request.app.state.api_key_store


def get_pool(request: Request) -> CredentialPool:
    return request.app.state.credential_pool


def get_orchestrator(request: Request) -> RetryOrchestrator:
    return request.app.state.orchestrator


def get_cursor_client(request: Request) -> CursorClient:
    return request.app.state.cursor_client


def get_recovery(request: Request) -> RecoveryTask:
    return request.app.state.recovery


def _bearer_value(auth: str | None) -> str | None:
    if not auth:
        return None
    if auth.startswith("Bearer "):
        auth = auth[len("Bearer "):]
    return auth.strip() or None


def _matches(candidate: str | None, expected: str) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def api_key_verifier(record_usage: bool):
    """
    Build the inbound auth dependency for an endpoint.

    ``sk-`` bearers must be enabled managed keys; with ``record_usage`` the
    request is counted against the key. Any other bearer must equal
    ``PROXY_API_KEY`` when one is configured.
    """

    async def verify(
        auth: str | None = Depends(api_key_header),
        settings: Settings = Depends(get_settings),
        key_store: ApiKeyStore = Depends(get_key_store),
    ) -> str | None:
        bearer = _bearer_value(auth)
        if bearer and bearer.startswith(API_KEY_PREFIX):
            if key_store.get_by_value(bearer) is None:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Invalid or disabled API Key",
                )
            if record_usage:
                await key_store.record_usage(bearer)
            return auth

        if settings.proxy_api_key and not _matches(auth, f"Bearer {settings.proxy_api_key}"):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing API Key",
            )
        return auth

    return verify


verify_api_key = api_key_verifier(record_usage=True)
verify_api_key_without_usage = api_key_verifier(record_usage=False)


async def require_admin(
    auth: str | None = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.admin_password:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API disabled: ADMIN_PASSWORD is not set",
        )
    if not _matches(auth, f"Bearer {settings.admin_password}"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin password",
        )


def get_auth_token(
    auth: str | None, pool: CredentialPool, settings: Settings
) -> str | None:
    """
    Resolve the raw credential string for a request.

    Pooled credentials win. Without any, a caller-supplied bearer value is
    used as the session token unless it is an API key.
    """
    if len(pool) > 0:
        return pool.raw_credentials()

    if settings.proxy_api_key:
        logging.info("No pooled credentials and bearer is the proxy API key")
        return None

    bearer = _bearer_value(auth)
    if bearer and not bearer.startswith(API_KEY_PREFIX):
        logging.info("Using session token from the Authorization header")
        return bearer

    logging.info("No usable credential for the request")
    return None
