# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Managed inbound API keys.

Keys are issued by the admin API and presented by clients as
``Authorization: Bearer sk-...``. Each key carries request counters: a
lifetime total and a per-day histogram kept for ``DAILY_USAGE_RETENTION``.

The persisted document keeps key metadata and usage apart:
``{"apiKeys": [[id, key]], "usage": [[apiKey, {...}]], "savedAt": ...}``.
"""

import asyncio
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import aiofiles
from filelock import FileLock

from .credential_store import _format_timestamp, _parse_timestamp, utcnow
from .error_handler import StoreImportError, mask_credential

lib_logger = logging.getLogger("cursor_rotator")

API_KEY_PREFIX = "sk-"

DAILY_USAGE_RETENTION = timedelta(days=30)

# Usage-only changes are flushed to disk once every N recorded requests
USAGE_SAVE_EVERY = 10

EXPORT_VERSION = "1.0"

_EDITABLE_FIELDS = {"name", "description", "enabled", "exempt_from_rate_limit"}


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{uuid.uuid4().hex}"


@dataclass
class ApiKeyRecord:
    """One issued inbound API key and its request counters."""

    id: str
    api_key: str
    name: str = ""
    description: str = ""
    enabled: bool = True
    exempt_from_rate_limit: bool = False
    total_requests: int = 0
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    daily_usage: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "apiKey": self.api_key,
            "enabled": self.enabled,
            "exemptFromRateLimit": self.exempt_from_rate_limit,
            "createdAt": _format_timestamp(self.created_at),
            "lastUsed": _format_timestamp(self.last_used_at),
            "totalRequests": self.total_requests,
        }

    def usage_dict(self) -> Dict[str, Any]:
        return {
            "requests": self.total_requests,
            "lastRequest": _format_timestamp(self.last_used_at),
            "dailyUsage": [[day, count] for day, count in sorted(self.daily_usage.items())],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], record_id: Optional[str] = None) -> "ApiKeyRecord":
        """
        Raises:
            ValueError: If the entry holds no key value
        """
        api_key = data.get("apiKey") or data.get("api_key")
        if not api_key:
            raise ValueError(f"API key record {record_id} has no key value")
        record = cls(
            id=record_id or data.get("id") or str(uuid.uuid4()),
            api_key=api_key,
            name=data.get("name") or "",
            description=data.get("description") or "",
            enabled=bool(data.get("enabled", True)),
            exempt_from_rate_limit=bool(data.get("exemptFromRateLimit", False)),
            total_requests=int(data.get("totalRequests") or 0),
            last_used_at=_parse_timestamp(data.get("lastUsed")),
        )
        created_at = _parse_timestamp(data.get("createdAt"))
        if created_at is not None:
            record.created_at = created_at
        return record

    def apply_usage(self, usage: Dict[str, Any]) -> None:
        """Merge a persisted usage entry into the record."""
        self.total_requests = max(self.total_requests, int(usage.get("requests") or 0))
        last_request = _parse_timestamp(usage.get("lastRequest"))
        if last_request is not None:
            self.last_used_at = last_request
        daily = usage.get("dailyUsage") or []
        if isinstance(daily, dict):
            daily = daily.items()
        for entry in daily:
            try:
                day, count = entry
                self.daily_usage[str(day)] = int(count)
            except (TypeError, ValueError):
                continue


def _iter_pairs(entries: Any) -> Iterator[Tuple[Any, Dict[str, Any]]]:
    for entry in entries or []:
        if isinstance(entry, (list, tuple)) and len(entry) == 2 and isinstance(entry[1], dict):
            yield entry[0], entry[1]


class ApiKeyStore:
    """
    Issued API keys with asyncio-safe locking and JSON persistence.

    Administrative mutations persist before returning. Usage counting only
    persists every ``USAGE_SAVE_EVERY`` requests; ``save`` on shutdown
    flushes the remainder.
    """

    def __init__(self, file_path: Union[str, Path] = "data/api_keys.json"):
        self.file_path = Path(file_path)
        self.file_lock = FileLock(f"{self.file_path}.lock")

        self._records: Dict[str, ApiKeyRecord] = {}
        self._data_lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self._unsaved_requests = 0

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    async def load(self) -> int:
        """
        Load keys from disk, creating an empty file when none exists.

        Returns:
            Number of keys loaded
        """
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.file_path.exists():
            lib_logger.info(f"No API key file found at {self.file_path}, starting fresh")
            await self.save()
            return 0

        try:
            async with aiofiles.open(self.file_path, "r", encoding="utf-8") as f:
                content = await f.read()
            data = json.loads(content) if content.strip() else {}
        except (json.JSONDecodeError, OSError) as e:
            lib_logger.error(f"Failed to load API key file {self.file_path}: {e}")
            data = {}

        records = self._records_from_document(data if isinstance(data, dict) else {})
        async with self._data_lock:
            self._records = records

        lib_logger.info(f"Loaded {len(records)} API keys from {self.file_path}")
        return len(records)

    async def save(self) -> None:
        """Write all keys and usage to disk atomically (temp file, then rename)."""
        async with self._save_lock:
            async with self._data_lock:
                data = self._document()
                data["savedAt"] = utcnow().isoformat()
                self._unsaved_requests = 0
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
            with self.file_lock:
                async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                    await f.write(json.dumps(data, indent=2))
                os.replace(tmp_path, self.file_path)

    def _document(self) -> Dict[str, Any]:
        return {
            "apiKeys": [[rid, rec.to_dict()] for rid, rec in self._records.items()],
            "usage": [[rec.api_key, rec.usage_dict()] for rec in self._records.values()],
        }

    @staticmethod
    def _records_from_document(data: Dict[str, Any]) -> Dict[str, ApiKeyRecord]:
        records: Dict[str, ApiKeyRecord] = {}
        for record_id, key_data in _iter_pairs(data.get("apiKeys")):
            try:
                record = ApiKeyRecord.from_dict(key_data, record_id)
            except (TypeError, ValueError) as e:
                lib_logger.warning(f"Skipping malformed API key record {record_id}: {e}")
                continue
            records[record.id] = record

        by_value = {record.api_key: record for record in records.values()}
        for api_key, usage in _iter_pairs(data.get("usage")):
            record = by_value.get(api_key)
            if record is not None:
                record.apply_usage(usage)
        return records

    # =========================================================================
    # QUERIES
    # =========================================================================

    def list(self) -> List[ApiKeyRecord]:
        return list(self._records.values())

    def get(self, record_id: str) -> Optional[ApiKeyRecord]:
        return self._records.get(record_id)

    def get_by_value(self, api_key: Optional[str]) -> Optional[ApiKeyRecord]:
        """Return the enabled record issued as exactly ``api_key``."""
        if not api_key:
            return None
        for record in self._records.values():
            if record.api_key == api_key and record.enabled:
                return record
        return None

    def usage_stats(self, api_key: str) -> Optional[Dict[str, Any]]:
        record = self.get_by_value(api_key)
        if record is None:
            return None
        return {
            "name": record.name,
            "total_requests": record.total_requests,
            "last_used_at": record.last_used_at,
            "daily_usage": dict(sorted(record.daily_usage.items())),
        }

    def stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        today = (now or utcnow()).date().isoformat()
        records = self.list()
        return {
            "total_keys": len(records),
            "enabled_keys": sum(1 for r in records if r.enabled),
            "total_requests": sum(r.total_requests for r in records),
            "today_requests": sum(r.daily_usage.get(today, 0) for r in records),
        }

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def create(self, name: str, description: str = "") -> ApiKeyRecord:
        """
        Issue a new ``sk-`` key.

        Raises:
            ValueError: If the name is empty
        """
        name = (name or "").strip()
        if not name:
            raise ValueError("API key name cannot be empty")

        record = ApiKeyRecord(
            id=str(uuid.uuid4()),
            api_key=generate_api_key(),
            name=name,
            description=description or "",
        )
        async with self._data_lock:
            self._records[record.id] = record
        await self.save()
        lib_logger.info(f"Issued API key {name} ({mask_credential(record.api_key)})")
        return record

    async def update(self, record_id: str, **changes: Any) -> Optional[ApiKeyRecord]:
        """
        Raises:
            ValueError: If a change targets a field that cannot be edited
        """
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValueError("API key name cannot be empty")

        async with self._data_lock:
            record = self._records.get(record_id)
            if record is None:
                return None
            for key, value in changes.items():
                setattr(record, key, value.strip() if key == "name" else value)
        await self.save()
        return record

    async def toggle_rate_limit_exemption(self, record_id: str) -> Optional[bool]:
        """Flip the exemption flag; returns the new value, None if unknown."""
        async with self._data_lock:
            record = self._records.get(record_id)
            if record is None:
                return None
            record.exempt_from_rate_limit = not record.exempt_from_rate_limit
            exempt = record.exempt_from_rate_limit
        await self.save()
        return exempt

    async def delete(self, record_id: str) -> bool:
        async with self._data_lock:
            if self._records.pop(record_id, None) is None:
                return False
        await self.save()
        return True

    async def clear_all(self) -> None:
        async with self._data_lock:
            self._records.clear()
        await self.save()

    async def record_usage(self, api_key: str, now: Optional[datetime] = None) -> bool:
        """
        Count one request against an enabled key.

        Day buckets older than ``DAILY_USAGE_RETENTION`` are dropped.

        Returns:
            False if ``api_key`` is not an enabled key
        """
        now = now or utcnow()
        cutoff = (now - DAILY_USAGE_RETENTION).date()
        async with self._data_lock:
            record = self.get_by_value(api_key)
            if record is None:
                return False
            record.total_requests += 1
            record.last_used_at = now
            today = now.date().isoformat()
            record.daily_usage[today] = record.daily_usage.get(today, 0) + 1
            for day in list(record.daily_usage):
                try:
                    expired = date.fromisoformat(day) < cutoff
                except ValueError:
                    expired = True
                if expired:
                    del record.daily_usage[day]
            self._unsaved_requests += 1
            flush = self._unsaved_requests >= USAGE_SAVE_EVERY
        if flush:
            await self.save()
        return True

    # =========================================================================
    # IMPORT / EXPORT
    # =========================================================================

    def export_json(self) -> str:
        data = self._document()
        data["exportedAt"] = utcnow().isoformat()
        data["version"] = EXPORT_VERSION
        return json.dumps(data, indent=2)

    async def import_json(self, document: Union[str, bytes, Dict[str, Any]]) -> int:
        """
        Import keys and their usage from an export document.

        Keys whose value is already issued are skipped along with their usage.

        Returns:
            Number of imported keys

        Raises:
            StoreImportError: If the document is not valid export JSON
        """
        try:
            data = json.loads(document) if isinstance(document, (str, bytes)) else document
        except json.JSONDecodeError as e:
            raise StoreImportError(f"Invalid JSON: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("apiKeys"), list):
            raise StoreImportError("Document has no 'apiKeys' list")

        incoming = self._records_from_document(data)
        imported = 0
        async with self._data_lock:
            issued = {record.api_key for record in self._records.values()}
            for record in incoming.values():
                if record.api_key in issued or record.id in self._records:
                    continue
                self._records[record.id] = record
                issued.add(record.api_key)
                imported += 1
        await self.save()
        lib_logger.info(f"Imported {imported} API keys")
        return imported
