# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/cursor_rotator/recovery.py

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from .credential_store import CredentialRecord, CredentialStore
from .error_handler import mask_credential
from .frame_codec import FrameStreamDecoder, build_request_frame
from .upstream import CursorClient

lib_logger = logging.getLogger("cursor_rotator")

# =============================================================================
# CONFIGURATION DEFAULTS
# =============================================================================

# Seconds between recovery passes
# Override: RECOVERY_INTERVAL=<seconds>
DEFAULT_RECOVERY_INTERVAL: int = 600  # 10 minutes

# Model used for the synthetic probe request
DEFAULT_PROBE_MODEL: str = "gpt-4o"
PROBE_MESSAGES = [{"role": "user", "content": "hi"}]


class RecoveryTask:
    """
    Background task that brings rate-limited credentials back into rotation.

    Each pass releases throttles older than the maximum ban age, then probes
    every credential whose retry time has come with a minimal chat request.
    A clean answer clears the throttle; a rate-limited answer or an error
    postpones the next probe.
    """

    def __init__(
        self,
        store: CredentialStore,
        client: CursorClient,
        interval: int = DEFAULT_RECOVERY_INTERVAL,
        probe_model: str = DEFAULT_PROBE_MODEL,
    ):
        self._store = store
        self._client = client
        self._interval = interval
        self._probe_model = probe_model
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._run_lock = asyncio.Lock()

    def start(self):
        """Starts the periodic recovery loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            lib_logger.info(
                f"Credential recovery started. Check interval: {self._interval} seconds."
            )

    async def stop(self):
        """Stops the periodic loop and any pass scheduled on demand."""
        tasks = list(self._pending)
        if self._task:
            tasks.append(self._task)
        for task in tasks:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._pending.clear()
        if self._task:
            self._task = None
            lib_logger.info("Credential recovery stopped.")

    def schedule(self) -> Optional[asyncio.Task]:
        """
        Run one pass in the background unless there is nothing to probe.

        Used after a chat response completes so recovered credentials return
        to the pool without waiting for the next periodic pass.
        """
        if self._run_lock.locked() or not self._store.get_candidates_for_probe():
            return None
        task = asyncio.create_task(self.run_once())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def run_once(self) -> Dict[str, Any]:
        """
        Execute one recovery pass.

        Returns:
            Summary with the number of reactivated and still-limited
            credentials and whether expired throttles were released
        """
        async with self._run_lock:
            summary = {"expired_released": False, "reactivated": 0, "still_limited": 0}
            summary["expired_released"] = await self._store.sweep_expired()

            candidates = self._store.get_candidates_for_probe()
            if candidates:
                lib_logger.info(f"Probing {len(candidates)} rate-limited credentials")

            for record in candidates:
                if await self._probe_and_update(record):
                    summary["reactivated"] += 1
                else:
                    summary["still_limited"] += 1
            return summary

    async def _probe_and_update(self, record: CredentialRecord) -> bool:
        label = record.name or record.id[:8]
        try:
            recovered = await self.probe(record)
        except Exception as e:
            lib_logger.warning(f"Probe of credential {label} failed: {e}")
            recovered = False

        if recovered:
            await self._store.clear_rate_limit(record.id)
            lib_logger.info(f"Credential {label} is no longer rate limited")
        else:
            await self._store.push_next_retry(record.id)
            lib_logger.info(f"Credential {label} is still rate limited")
        return recovered

    async def probe(self, record: CredentialRecord) -> bool:
        """
        Send a minimal chat request with the record's token.

        Returns:
            True if the upstream answered without a rate-limit signal

        Raises:
            Exception: Network and status errors propagate to the caller
        """
        token = record.token
        body = build_request_frame(PROBE_MESSAGES, self._probe_model)
        response = await self._client.stream_chat(token, body)
        try:
            if response.status_code != 200:
                lib_logger.debug(
                    f"Probe of {mask_credential(token)} got HTTP {response.status_code}"
                )
                return False
            decoder = FrameStreamDecoder()
            async for chunk in response.aiter_bytes():
                if decoder.feed(chunk).is_rate_limited:
                    return False
            return True
        finally:
            await response.aclose()

    async def _run(self):
        """The main loop for periodic recovery."""
        while True:
            try:
                await self.run_once()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                lib_logger.error(f"Unexpected error in credential recovery loop: {e}")
                await asyncio.sleep(self._interval)
