# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Durable registry of session credentials.

Records are kept in memory and persisted to a JSON file after every
mutation. Each mutation also notifies registered listeners so derived views
(the pool of currently usable credentials) are recomputed immediately.
"""

import asyncio
import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import aiofiles
from filelock import FileLock

from .error_handler import StoreImportError, mask_credential
from .utils import extract_token

lib_logger = logging.getLogger("cursor_rotator")

KIND_NORMAL = "normal"
KIND_PREMIUM = "premium"
CREDENTIAL_KINDS = (KIND_NORMAL, KIND_PREMIUM)

RATE_LIMIT_RETRY_INTERVAL = timedelta(hours=2)
RATE_LIMIT_MAX_AGE = timedelta(hours=12)

EXPORT_VERSION = "1.0"

# Persisted camelCase key -> record attribute
_FIELD_ALIASES = {
    "rateLimited": "rate_limited",
    "rateLimitedAt": "rate_limited_at",
    "nextRetryAt": "next_retry_at",
    "usageCount": "usage_count",
    "lastUsedAt": "last_used_at",
    "createdAt": "created_at",
}
# Keys written by older releases
_LEGACY_ALIASES = {
    "type": "kind",
    "nextTestAt": "next_retry_at",
    "lastUsed": "last_used_at",
}
_TIMESTAMP_FIELDS = ("rate_limited_at", "next_retry_at", "last_used_at", "created_at")
_EDITABLE_FIELDS = {"name", "value", "description", "kind", "enabled"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class CredentialRecord:
    """One registered long-lived session credential."""

    id: str
    value: str
    name: str = ""
    description: str = ""
    kind: str = KIND_NORMAL
    enabled: bool = True
    rate_limited: bool = False
    rate_limited_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def token(self) -> Optional[str]:
        return extract_token(self.value)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted camelCase layout."""
        data = asdict(self)
        for name in _TIMESTAMP_FIELDS:
            data[name] = _format_timestamp(getattr(self, name))
        reverse = {attr: key for key, attr in _FIELD_ALIASES.items()}
        return {reverse.get(key, key): value for key, value in data.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], record_id: Optional[str] = None) -> "CredentialRecord":
        """
        Build a record from persisted data, migrating older layouts.

        Missing fields get their defaults so no downstream code has to deal
        with partially populated records.

        Raises:
            ValueError: If the record has no credential value
        """
        normalized: Dict[str, Any] = {}
        for key, value in data.items():
            attr = _FIELD_ALIASES.get(key) or _LEGACY_ALIASES.get(key) or key
            # Current keys win over legacy ones
            if attr in normalized and key in _LEGACY_ALIASES:
                continue
            normalized[attr] = value

        known = {f.name for f in fields(cls)}
        normalized = {k: v for k, v in normalized.items() if k in known}
        normalized["id"] = record_id or normalized.get("id") or str(uuid.uuid4())

        if not normalized.get("value"):
            raise ValueError(f"Credential record {normalized['id']} has no value")

        for name in _TIMESTAMP_FIELDS:
            if name in normalized:
                normalized[name] = _parse_timestamp(normalized[name])
        if normalized.get("created_at") is None:
            normalized.pop("created_at", None)
        if normalized.get("kind") not in CREDENTIAL_KINDS:
            normalized["kind"] = KIND_NORMAL
        normalized["enabled"] = bool(normalized.get("enabled", True))
        normalized["rate_limited"] = bool(normalized.get("rate_limited", False))
        normalized["usage_count"] = int(normalized.get("usage_count") or 0)
        for text_field in ("name", "description"):
            normalized[text_field] = normalized.get(text_field) or ""
        return cls(**normalized)


StoreListener = Callable[["CredentialStore"], None]


class CredentialStore:
    """
    Manages credential records with asyncio-safe locking and JSON persistence.

    All mutations persist before returning. Cross-process writers are
    serialized with a file lock; within the process records are only
    mutated under ``_data_lock``.
    """

    def __init__(
        self,
        file_path: Union[str, Path] = "data/auth_cookies.json",
        rate_limit_enabled: bool = True,
        privileged_mode: bool = False,
    ):
        self.file_path = Path(file_path)
        self.file_lock = FileLock(f"{self.file_path}.lock")
        self.rate_limit_enabled = rate_limit_enabled
        self.privileged_mode = privileged_mode

        self._records: Dict[str, CredentialRecord] = {}
        self._data_lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self._listeners: List[StoreListener] = []

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    async def load(self) -> int:
        """
        Load records from disk, creating an empty file when none exists.

        Returns:
            Number of records loaded
        """
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.file_path.exists():
            lib_logger.info(f"No credential file found at {self.file_path}, starting fresh")
            await self.save()
            self._notify()
            return 0

        try:
            async with aiofiles.open(self.file_path, "r", encoding="utf-8") as f:
                content = await f.read()
            data = json.loads(content) if content.strip() else {}
        except (json.JSONDecodeError, OSError) as e:
            lib_logger.error(f"Failed to load credential file {self.file_path}: {e}")
            data = {}

        records = {}
        for record_id, record_data in self._iter_document(data):
            try:
                record = CredentialRecord.from_dict(record_data, record_id)
            except (TypeError, ValueError) as e:
                lib_logger.warning(f"Skipping malformed credential record {record_id}: {e}")
                continue
            records[record.id] = record

        async with self._data_lock:
            self._records = records

        lib_logger.info(f"Loaded {len(records)} credentials from {self.file_path}")
        self._notify()
        return len(records)

    async def save(self) -> None:
        """Write all records to disk atomically (temp file, then rename)."""
        async with self._save_lock:
            async with self._data_lock:
                data = {
                    "records": [[rid, rec.to_dict()] for rid, rec in self._records.items()],
                    "savedAt": utcnow().isoformat(),
                }
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
            with self.file_lock:  # Use filelock to prevent multi-process race conditions
                async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                    await f.write(json.dumps(data, indent=2))
                os.replace(tmp_path, self.file_path)

    @staticmethod
    def _iter_document(data: Any):
        if not isinstance(data, dict):
            return
        entries = data.get("records")
        if entries is None:
            entries = data.get("authCookies", [])
        for entry in entries or []:
            if isinstance(entry, (list, tuple)) and len(entry) == 2 and isinstance(entry[1], dict):
                yield entry[0], entry[1]
            elif isinstance(entry, dict):
                yield entry.get("id"), entry

    # =========================================================================
    # CHANGE NOTIFICATION
    # =========================================================================

    def add_listener(self, listener: StoreListener) -> None:
        """Register a callback run after every mutation (and after load)."""
        self._listeners.append(listener)
        listener(self)

    def _notify(self) -> None:
        for listener in self._listeners:
            try:
                listener(self)
            except Exception as e:
                lib_logger.error(f"Credential store listener failed: {e}")

    async def _commit(self) -> None:
        await self.save()
        self._notify()

    # =========================================================================
    # QUERIES
    # =========================================================================

    def list(self) -> List[CredentialRecord]:
        return list(self._records.values())

    def get(self, record_id: str) -> Optional[CredentialRecord]:
        return self._records.get(record_id)

    def get_by_value(self, value: str) -> Optional[CredentialRecord]:
        """Return the enabled, non-throttled record holding exactly ``value``."""
        for record in self._records.values():
            if record.value == value and record.enabled and not record.rate_limited:
                return record
        return None

    def find_by_token(self, token: Optional[str]) -> Optional[CredentialRecord]:
        """Return the record whose value is, or resolves to, ``token``."""
        if not token:
            return None
        for record in self._records.values():
            if record.value == token or record.token == token:
                return record
        return None

    def _has_value(self, value: str) -> bool:
        return any(record.value == value for record in self._records.values())

    def _is_usable(self, record: CredentialRecord) -> bool:
        if not record.enabled:
            return False
        return not (self.rate_limit_enabled and record.rate_limited)

    def usable_values(self, kind: Optional[str] = None) -> List[str]:
        """Values of enabled, non-throttled records, optionally of one kind."""
        return [
            record.value
            for record in self._records.values()
            if self._is_usable(record) and (kind is None or record.kind == kind)
        ]

    def get_candidates_for_probe(self, now: Optional[datetime] = None) -> List[CredentialRecord]:
        """Throttled records whose next retry time has come."""
        now = now or utcnow()
        return [
            record
            for record in self._records.values()
            if record.rate_limited
            and record.next_retry_at is not None
            and record.next_retry_at <= now
        ]

    def stats(self) -> Dict[str, int]:
        records = self.list()
        available = [r for r in records if r.enabled and not r.rate_limited]
        stats = {
            "total": len(records),
            "enabled": sum(1 for r in records if r.enabled),
            "rate_limited": sum(1 for r in records if r.rate_limited),
            "available": len(available),
            "normal": len(available),
            "premium": 0,
        }
        if self.privileged_mode:
            stats["normal"] = sum(1 for r in available if r.kind == KIND_NORMAL)
            stats["premium"] = sum(1 for r in available if r.kind == KIND_PREMIUM)
        return stats

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def create(
        self,
        name: str,
        value: str,
        description: str = "",
        kind: str = KIND_NORMAL,
    ) -> CredentialRecord:
        """
        Register a new credential.

        The kind is only honored in privileged mode; otherwise every record
        is ``normal``.

        Raises:
            ValueError: If the value is empty or the kind is unknown
        """
        value = (value or "").strip()
        if not value:
            raise ValueError("Credential value cannot be empty")
        if kind not in CREDENTIAL_KINDS:
            raise ValueError(f"Unknown credential kind '{kind}'")

        record = CredentialRecord(
            id=str(uuid.uuid4()),
            name=(name or "").strip(),
            value=value,
            description=description or "",
            kind=kind if self.privileged_mode else KIND_NORMAL,
        )
        async with self._data_lock:
            self._records[record.id] = record
        await self._commit()
        lib_logger.info(f"Registered credential {record.name or record.id[:8]} ({mask_credential(record.token)})")
        return record

    async def update(self, record_id: str, **changes: Any) -> Optional[CredentialRecord]:
        """
        Apply administrative edits to a record.

        Raises:
            ValueError: If a change targets a field that cannot be edited
        """
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "kind" in changes and changes["kind"] not in CREDENTIAL_KINDS:
            raise ValueError(f"Unknown credential kind '{changes['kind']}'")
        if "value" in changes and not (changes["value"] or "").strip():
            raise ValueError("Credential value cannot be empty")

        async with self._data_lock:
            record = self._records.get(record_id)
            if record is None:
                return None
            for key, value in changes.items():
                setattr(record, key, value.strip() if key == "value" else value)
        await self._commit()
        return record

    async def delete(self, record_id: str) -> bool:
        async with self._data_lock:
            if self._records.pop(record_id, None) is None:
                return False
        await self._commit()
        return True

    async def clear_all(self) -> None:
        async with self._data_lock:
            self._records.clear()
        await self._commit()

    async def record_usage(self, record_id: str, now: Optional[datetime] = None) -> bool:
        async with self._data_lock:
            record = self._records.get(record_id)
            if record is None:
                return False
            record.usage_count += 1
            record.last_used_at = now or utcnow()
        await self._commit()
        return True

    async def mark_as_rate_limited(self, record_id: str, now: Optional[datetime] = None) -> bool:
        """
        Ban a credential after the upstream signaled throttling.

        The record is probed again after ``RATE_LIMIT_RETRY_INTERVAL`` and
        released unconditionally once ``RATE_LIMIT_MAX_AGE`` has passed.
        """
        if not self.rate_limit_enabled:
            lib_logger.debug("Rate-limit enforcement disabled; not banning credential")
            return False

        now = now or utcnow()
        async with self._data_lock:
            record = self._records.get(record_id)
            if record is None:
                return False
            record.rate_limited = True
            record.rate_limited_at = now
            record.next_retry_at = now + RATE_LIMIT_RETRY_INTERVAL
        await self._commit()
        lib_logger.warning(
            f"Credential {record.name or record_id[:8]} marked as rate-limited "
            f"until {(now + RATE_LIMIT_MAX_AGE).isoformat()}"
        )
        return True

    async def clear_rate_limit(self, record_id: str) -> bool:
        async with self._data_lock:
            record = self._records.get(record_id)
            if record is None:
                return False
            record.rate_limited = False
            record.rate_limited_at = None
            record.next_retry_at = None
        await self._commit()
        lib_logger.info(f"Credential {record.name or record_id[:8]} reactivated")
        return True

    async def push_next_retry(self, record_id: str, now: Optional[datetime] = None) -> bool:
        """Postpone the next probe of a throttled record."""
        now = now or utcnow()
        async with self._data_lock:
            record = self._records.get(record_id)
            if record is None or not record.rate_limited:
                return False
            record.next_retry_at = now + RATE_LIMIT_RETRY_INTERVAL
        await self._commit()
        return True

    async def sweep_expired(self, now: Optional[datetime] = None) -> bool:
        """
        Release every throttle older than ``RATE_LIMIT_MAX_AGE``.

        Returns:
            True if any record changed
        """
        now = now or utcnow()
        changed = False
        async with self._data_lock:
            for record in self._records.values():
                if not record.rate_limited or record.rate_limited_at is None:
                    continue
                if now - record.rate_limited_at >= RATE_LIMIT_MAX_AGE:
                    lib_logger.info(
                        f"Reactivating credential {record.name or record.id[:8]} "
                        f"after {RATE_LIMIT_MAX_AGE} of rate limit"
                    )
                    record.rate_limited = False
                    record.rate_limited_at = None
                    record.next_retry_at = None
                    changed = True
        if changed:
            await self._commit()
        return changed

    # =========================================================================
    # IMPORT / EXPORT
    # =========================================================================

    def export_json(self) -> str:
        data = {
            "records": [[rid, rec.to_dict()] for rid, rec in self._records.items()],
            "exportedAt": utcnow().isoformat(),
            "version": EXPORT_VERSION,
        }
        return json.dumps(data, indent=2)

    async def import_json(self, document: Union[str, bytes, Dict[str, Any]]) -> int:
        """
        Import records from an export document.

        Records whose value is already registered are skipped; existing
        records are never overwritten.

        Returns:
            Number of imported records

        Raises:
            StoreImportError: If the document is not valid export JSON
        """
        try:
            data = json.loads(document) if isinstance(document, (str, bytes)) else document
        except json.JSONDecodeError as e:
            raise StoreImportError(f"Invalid JSON: {e}") from e
        if not isinstance(data, dict) or not isinstance(
            data.get("records", data.get("authCookies")), list
        ):
            raise StoreImportError("Document has no 'records' list")

        imported = 0
        async with self._data_lock:
            for record_id, record_data in self._iter_document(data):
                try:
                    record = CredentialRecord.from_dict(record_data, record_id)
                except (TypeError, ValueError) as e:
                    lib_logger.warning(f"Skipping malformed imported record {record_id}: {e}")
                    continue
                if self._has_value(record.value) or record.id in self._records:
                    continue
                self._records[record.id] = record
                imported += 1
        await self._commit()
        lib_logger.info(f"Imported {imported} credentials")
        return imported
