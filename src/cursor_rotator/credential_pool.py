# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from typing import List, Optional

from .credential_store import KIND_NORMAL, KIND_PREMIUM, CredentialStore

lib_logger = logging.getLogger("cursor_rotator")


class CredentialPool:
    """
    The set of credentials currently usable for requests.

    Combines the ``AUTH_COOKIE`` environment entries with the enabled,
    non-throttled records of the store. Registered as a store listener so the
    view is recomputed after every store mutation.
    """

    def __init__(self, env_credentials: Optional[List[str]] = None):
        self._env_credentials = list(env_credentials or [])
        self._entries: List[str] = list(self._env_credentials)
        self._premium_entries: List[str] = []

    def attach(self, store: CredentialStore) -> None:
        store.add_listener(self.refresh)

    def refresh(self, store: CredentialStore) -> None:
        # In privileged mode premium records are kept out of the shared pool
        kind = KIND_NORMAL if store.privileged_mode else None
        entries = list(self._env_credentials)
        for value in store.usable_values(kind):
            if value not in entries:
                entries.append(value)
        self._entries = entries
        self._premium_entries = (
            store.usable_values(KIND_PREMIUM) if store.privileged_mode else []
        )
        lib_logger.debug(
            f"Credential pool refreshed: {len(self._entries)} usable, "
            f"{len(self._premium_entries)} premium"
        )

    @property
    def entries(self) -> List[str]:
        return list(self._entries)

    @property
    def premium_entries(self) -> List[str]:
        return list(self._premium_entries)

    def raw_credentials(self) -> str:
        """Comma separated raw credential string consumed by the selector."""
        return ",".join(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
