# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Credential selection and rotation.

A raw credential string holds one or more comma separated entries. The
selector picks the entry presented to the upstream for the current attempt
and provides the path to "the next different one" after a failure.

The rotation cursor is process-wide: every request sharing a raw string
advances the same cursor, so concurrent requests can observe each other's
rotations and failure marks.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Set

from .error_handler import NoCredentialError, mask_credential
from .utils import extract_token, split_credentials

lib_logger = logging.getLogger("cursor_rotator")

# Forced rotations allowed per failure cycle before failed marks are dropped
MAX_ROTATION_ATTEMPTS = 50

# Seconds without a new failure after which failed marks are forgotten
FAILURE_RESET_WINDOW = 300

# Pause after a forced rotation before the next upstream call
DEFAULT_ROTATION_DELAY = 2.0


@dataclass
class RotationCursor:
    last_selected_index: int = -1
    last_selection_time: Optional[float] = None
    failed_indices: Set[int] = field(default_factory=set)
    attempt_counter: int = 0
    last_failure_time: Optional[float] = None

    def reset_failures(self) -> None:
        self.failed_indices.clear()
        self.attempt_counter = 0
        self.last_failure_time = None


class CredentialSelector:
    """
    Picks credentials out of a raw credential string.

    Args:
        rotation_enabled: Rotate on a timer instead of picking at random
        rotation_interval: Seconds a selection stays sticky when rotating
        rate_limit_enabled: When False, failed marks never exclude an entry
        rotation_delay: Seconds ``advance`` waits after rotating
        clock: Time source, seconds since the epoch
    """

    def __init__(
        self,
        rotation_enabled: bool = False,
        rotation_interval: float = 300.0,
        rate_limit_enabled: bool = True,
        rotation_delay: float = DEFAULT_ROTATION_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        self.rotation_enabled = rotation_enabled
        self.rotation_interval = rotation_interval
        self.rate_limit_enabled = rate_limit_enabled
        self.rotation_delay = rotation_delay
        self._clock = clock
        self.cursor = RotationCursor()
        self._last_token: Optional[str] = None

    @property
    def last_token(self) -> Optional[str]:
        """The token handed out by the most recent ``select``."""
        return self._last_token

    def reset(self) -> None:
        self.cursor = RotationCursor()
        self._last_token = None

    def select(self, raw: Optional[str], force_rotate: bool = False) -> str:
        """
        Pick the token to present for the current attempt.

        Args:
            raw: Comma separated credential entries
            force_rotate: Move past the current entry regardless of the interval

        Returns:
            The extracted session token

        Raises:
            NoCredentialError: If ``raw`` holds no entries
        """
        entries = split_credentials(raw)
        if not entries:
            raise NoCredentialError("No credential available for the request")

        if len(entries) == 1:
            return self._hand_out(entries[0])

        if not self.rotation_enabled and not force_rotate:
            return self._hand_out(random.choice(entries))

        now = self._clock()
        cursor = self.cursor
        if (
            cursor.last_failure_time is not None
            and now - cursor.last_failure_time > FAILURE_RESET_WINDOW
        ):
            lib_logger.debug("Failure window elapsed, forgetting failed credentials")
            cursor.reset_failures()

        if force_rotate:
            cursor.attempt_counter += 1
            if cursor.attempt_counter > MAX_ROTATION_ATTEMPTS:
                lib_logger.warning(
                    f"Rotation ceiling of {MAX_ROTATION_ATTEMPTS} reached, "
                    "resetting failed credentials"
                )
                cursor.failed_indices.clear()
                cursor.attempt_counter = 1

        should_rotate = (
            force_rotate
            or cursor.last_selection_time is None
            or not 0 <= cursor.last_selected_index < len(entries)
            or now - cursor.last_selection_time >= self.rotation_interval
        )
        if should_rotate:
            cursor.last_selected_index = self._next_index(len(entries))
            cursor.last_selection_time = now

        return self._hand_out(entries[cursor.last_selected_index])

    def _next_index(self, count: int) -> int:
        cursor = self.cursor
        excluded = cursor.failed_indices if self.rate_limit_enabled else set()
        index = cursor.last_selected_index
        for _ in range(count):
            index = (index + 1) % count
            if index not in excluded:
                return index
        lib_logger.warning(
            f"All {count} credentials marked as failed, starting over from the first"
        )
        cursor.failed_indices.clear()
        return 0

    def _hand_out(self, entry: str) -> str:
        token = extract_token(entry)
        if not token:
            raise NoCredentialError("Credential entry holds no token")
        self._last_token = token
        return token

    def mark_failed(self, raw: Optional[str], token: Optional[str] = None) -> None:
        """
        Exclude an entry from upcoming rotations.

        Args:
            raw: Comma separated credential entries
            token: The token that failed. Without it the last selected
                entry is marked.
        """
        entries = split_credentials(raw)
        if len(entries) <= 1:
            return
        cursor = self.cursor
        if token is None:
            index = cursor.last_selected_index
        else:
            index = next(
                (i for i, entry in enumerate(entries) if extract_token(entry) == token),
                -1,
            )
        if 0 <= index < len(entries):
            cursor.failed_indices.add(index)
        cursor.last_failure_time = self._clock()
        lib_logger.info(
            f"Marked credential {mask_credential(token or self._last_token)} as failed "
            f"({len(cursor.failed_indices)}/{len(entries)} failed)"
        )

    async def advance(self, raw: Optional[str]) -> str:
        """Force a rotation to the next entry, then pause ``rotation_delay``."""
        token = self.select(raw, force_rotate=True)
        lib_logger.info(f"Rotated to credential {mask_credential(token)}")
        if self.rotation_delay > 0:
            await asyncio.sleep(self.rotation_delay)
        return token
