# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Exception types and error classification for the credential broker.

The retry orchestrator consults ``is_retryable_error`` to decide whether a
failed attempt should rotate to the next credential or abort the request.
"""

from typing import Optional

import httpx


class NoCredentialError(Exception):
    """Raised when no credential can be resolved for a request."""


class FrameCodecError(Exception):
    """
    Raised when a request cannot be encoded into an upstream frame.

    This indicates a logic bug (bad message shape) rather than a transient
    condition, so it is never retried.
    """


class UpstreamStatusError(Exception):
    """
    Raised when the upstream answers with a non-200 status.

    Attributes:
        status_code: HTTP status returned by the upstream
        body: Raw response body (may be empty)
    """

    def __init__(self, status_code: int, body: bytes = b"", reason: str = ""):
        self.status_code = status_code
        self.body = body
        self.reason = reason
        super().__init__(f"Upstream returned HTTP {status_code} {reason}".strip())


class AttemptCeilingError(Exception):
    """Raised when the global attempt ceiling of a retry loop is reached."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        message = f"Attempt ceiling reached after {attempts} attempts"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)


class StoreImportError(ValueError):
    """Raised when an import document does not have the export layout."""


FATAL_ERROR_TYPES = (NoCredentialError, FrameCodecError, AttemptCeilingError)


def is_retryable_error(e: Exception) -> bool:
    """
    Checks if a failed attempt may be retried with another credential.

    Network errors, timeouts, non-200 statuses and anything unexpected are
    retryable; codec errors, missing credentials and ceiling exhaustion are not.
    """
    if isinstance(e, FATAL_ERROR_TYPES):
        return False
    return True


def is_timeout_error(e: Exception) -> bool:
    """Checks if the exception (or its cause) is an upstream timeout."""
    while e is not None:
        if isinstance(e, (httpx.TimeoutException, TimeoutError)):
            return True
        e = e.__cause__
    return False


def mask_credential(credential: Optional[str], style: str = "short") -> str:
    """
    Format a credential for display in logs.

    Args:
        credential: The raw credential or token
        style: "short" shows the last 4 characters, "full" the first 4 and last 4

    Returns:
        A display-safe representation of the credential
    """
    if not credential:
        return "<none>"
    if len(credential) <= 8:
        return "****"
    if style == "full":
        return f"{credential[:4]}...{credential[-4:]}"
    return f"...{credential[-4:]}"
