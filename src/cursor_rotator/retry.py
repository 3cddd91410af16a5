# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Retry loop that rotates credentials on errors and upstream rate limits.

The orchestrator owns the whole attempt loop: a rate limit detected in the
first chunk of a response restarts the upstream call with another credential
while the caller only ever sees the final response or the terminal error.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from .credential_store import CredentialStore
from .error_handler import (
    AttemptCeilingError,
    UpstreamStatusError,
    is_retryable_error,
    mask_credential,
)
from .failure_logger import log_failure
from .frame_codec import FrameStreamDecoder, decode_frame_stream
from .rotation import CredentialSelector
from .utils import split_credentials

lib_logger = logging.getLogger("cursor_rotator")

# Upper bound on attempts of one call, rate-limit rotations included
MAX_TOTAL_ATTEMPTS = 50

DEFAULT_RETRY_BACKOFF = 0.5

AttemptFn = Callable[[str], Awaitable[Any]]

_RATE_LIMITED = object()


class PeekedResponse:
    """
    A streamed upstream response whose first chunk was already read.

    ``aiter_bytes`` replays the peeked chunk before the rest of the body.
    ``token`` is the credential the response was obtained with.
    """

    def __init__(
        self,
        response: Any,
        first_chunk: bytes,
        rest: AsyncIterator[bytes],
        token: Optional[str] = None,
    ):
        self.response = response
        self.first_chunk = first_chunk
        self.token = token
        self._rest = rest

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def headers(self):
        return self.response.headers

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        if self.first_chunk:
            yield self.first_chunk
        async for chunk in self._rest:
            yield chunk

    async def aread(self) -> bytes:
        return b"".join([chunk async for chunk in self.aiter_bytes()])

    async def aclose(self) -> None:
        await self.response.aclose()


def _is_streamed_response(result: Any) -> bool:
    return hasattr(result, "status_code") and hasattr(result, "aiter_bytes")


class RetryOrchestrator:
    """
    Runs an upstream attempt with credential rotation.

    Args:
        selector: Shared credential selector
        store: Store used to ban rate-limited credentials (optional)
        rate_limit_enabled: When False, rate-limited answers are returned as is
        retry_backoff: Seconds to wait before retrying after an error
        max_total_attempts: Ceiling across error and rate-limit attempts
    """

    def __init__(
        self,
        selector: CredentialSelector,
        store: Optional[CredentialStore] = None,
        rate_limit_enabled: bool = True,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        max_total_attempts: int = MAX_TOTAL_ATTEMPTS,
    ):
        self.selector = selector
        self.store = store
        self.rate_limit_enabled = rate_limit_enabled
        self.retry_backoff = retry_backoff
        self.max_total_attempts = max_total_attempts

    async def run_with_retry(
        self, attempt_fn: AttemptFn, max_attempts: int, raw: str
    ) -> Any:
        """
        Call ``attempt_fn`` until it yields a usable response.

        Args:
            attempt_fn: Coroutine taking the session token to present for
                this attempt
            max_attempts: Attempts allowed to end in an error
            raw: Comma separated credential entries

        Returns:
            A ``PeekedResponse`` for streamed upstream responses, otherwise
            whatever ``attempt_fn`` returned

        Raises:
            NoCredentialError: If ``raw`` holds no entries
            AttemptCeilingError: If ``max_total_attempts`` is reached
            Exception: The last error once ``max_attempts`` errors occurred,
                or any non-retryable error immediately
        """
        can_rotate = len(split_credentials(raw)) > 1
        error_attempts = 0
        total_attempts = 0
        last_error: Optional[Exception] = None
        # Per-attempt token; selector.last_token is shared across requests
        token = self.selector.select(raw)

        while True:
            if total_attempts >= self.max_total_attempts:
                lib_logger.error(
                    f"Giving up after {total_attempts} attempts (ceiling reached)"
                )
                raise AttemptCeilingError(total_attempts, last_error) from last_error
            total_attempts += 1

            try:
                result = await attempt_fn(token)
                outcome = await self._inspect(result, token, can_rotate)
            except Exception as e:
                if not is_retryable_error(e):
                    raise
                last_error = e
                error_attempts += 1
                log_failure(
                    credential=token,
                    attempt=total_attempts,
                    error=e,
                    context={"error_attempts": error_attempts, "max_attempts": max_attempts},
                )
                if error_attempts >= max_attempts:
                    lib_logger.error(
                        f"Attempt {error_attempts}/{max_attempts} with credential "
                        f"{mask_credential(token)} failed: {e}. No retries left."
                    )
                    raise
                lib_logger.warning(
                    f"Attempt {error_attempts}/{max_attempts} with credential "
                    f"{mask_credential(token)} failed: {e}. Rotating."
                )
                self.selector.mark_failed(raw, token)
                token = await self.selector.advance(raw)
                if self.retry_backoff > 0:
                    await asyncio.sleep(self.retry_backoff)
                continue

            if outcome is not _RATE_LIMITED:
                return outcome

            self.selector.mark_failed(raw, token)
            token = await self.selector.advance(raw)

    async def _inspect(self, result: Any, token: str, can_rotate: bool) -> Any:
        """
        Classify an attempt result.

        Returns ``_RATE_LIMITED`` after banning ``token`` when another
        credential can be tried, otherwise the value to hand back to the
        caller. With a single credential a throttled answer is still banned
        but passed through, since there is nothing to rotate to.
        """
        if not _is_streamed_response(result):
            return result

        if result.status_code != 200:
            body = await result.aread()
            await result.aclose()
            if self.rate_limit_enabled and decode_frame_stream(body).is_rate_limited:
                await self.ban(token)
                if can_rotate:
                    return _RATE_LIMITED
            raise UpstreamStatusError(
                result.status_code, body, getattr(result, "reason_phrase", "")
            )

        stream = result.aiter_bytes()
        try:
            first_chunk = await stream.__anext__()
        except StopAsyncIteration:
            first_chunk = b""
        except BaseException:
            await result.aclose()
            raise

        if self.rate_limit_enabled and FrameStreamDecoder().feed(first_chunk).is_rate_limited:
            await self.ban(token)
            if can_rotate:
                await result.aclose()
                return _RATE_LIMITED
            lib_logger.warning("No other credential to rotate to, passing the rate-limited answer through")

        return PeekedResponse(result, first_chunk, stream, token=token)

    async def ban(self, token: Optional[str]) -> None:
        """Mark the store record holding ``token`` as rate limited."""
        lib_logger.warning(f"Credential {mask_credential(token)} is rate limited upstream")
        if self.store is None:
            return
        record = self.store.find_by_token(token)
        if record is None:
            lib_logger.debug(f"Rate-limited credential {mask_credential(token)} is not in the store")
            return
        await self.store.mark_as_rate_limited(record.id)
