import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from cursor_rotator.api_key_store import USAGE_SAVE_EVERY, ApiKeyStore
from cursor_rotator.error_handler import StoreImportError

T0 = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def key_store(tmp_path: Path) -> ApiKeyStore:
    api_key_store = ApiKeyStore(tmp_path / "api_keys.json")
    await api_key_store.load()
    return api_key_store


@pytest.mark.asyncio
async def test_create_issues_prefixed_key(key_store: ApiKeyStore) -> None:
    record = await key_store.create("ci", "build agents")

    assert record.api_key.startswith("sk-")
    assert len(record.api_key) == len("sk-") + 32
    assert record.enabled is True
    assert record.exempt_from_rate_limit is False
    assert key_store.get_by_value(record.api_key) is record

    with pytest.raises(ValueError):
        await key_store.create("  ")


@pytest.mark.asyncio
async def test_disabled_keys_are_not_resolved(key_store: ApiKeyStore) -> None:
    record = await key_store.create("ci")

    await key_store.update(record.id, enabled=False)

    assert key_store.get_by_value(record.api_key) is None
    assert await key_store.record_usage(record.api_key) is False
    assert key_store.get(record.id).total_requests == 0

    with pytest.raises(ValueError):
        await key_store.update(record.id, api_key="sk-other")


@pytest.mark.asyncio
async def test_usage_counts_and_daily_retention(key_store: ApiKeyStore) -> None:
    record = await key_store.create("ci")

    await key_store.record_usage(record.api_key, now=T0)
    await key_store.record_usage(record.api_key, now=T0 + timedelta(hours=1))
    await key_store.record_usage(record.api_key, now=T0 + timedelta(days=31))

    usage = key_store.usage_stats(record.api_key)
    assert usage["total_requests"] == 3
    assert usage["last_used_at"] == T0 + timedelta(days=31)
    assert usage["daily_usage"] == {"2026-04-01": 1}

    stats = key_store.stats(now=T0 + timedelta(days=31))
    assert stats == {
        "total_keys": 1,
        "enabled_keys": 1,
        "total_requests": 3,
        "today_requests": 1,
    }


@pytest.mark.asyncio
async def test_usage_is_flushed_in_batches(tmp_path: Path) -> None:
    path = tmp_path / "api_keys.json"
    key_store = ApiKeyStore(path)
    await key_store.load()
    record = await key_store.create("ci")

    for _ in range(USAGE_SAVE_EVERY - 1):
        await key_store.record_usage(record.api_key, now=T0)
    on_disk = json.loads(path.read_text())
    assert on_disk["usage"][0][1]["requests"] == 0

    await key_store.record_usage(record.api_key, now=T0)
    on_disk = json.loads(path.read_text())
    assert on_disk["usage"][0][1]["requests"] == USAGE_SAVE_EVERY
    assert on_disk["usage"][0][1]["dailyUsage"] == [["2026-03-01", USAGE_SAVE_EVERY]]


@pytest.mark.asyncio
async def test_persisted_layout_round_trips(tmp_path: Path) -> None:
    path = tmp_path / "api_keys.json"
    key_store = ApiKeyStore(path)
    await key_store.load()
    record = await key_store.create("ci")
    await key_store.record_usage(record.api_key, now=T0)
    await key_store.toggle_rate_limit_exemption(record.id)
    await key_store.save()

    data = json.loads(path.read_text())
    assert data["apiKeys"][0][0] == record.id
    assert data["apiKeys"][0][1]["apiKey"] == record.api_key
    assert data["apiKeys"][0][1]["exemptFromRateLimit"] is True
    assert data["usage"][0][0] == record.api_key

    reloaded = ApiKeyStore(path)
    assert await reloaded.load() == 1
    restored = reloaded.get(record.id)
    assert restored.exempt_from_rate_limit is True
    assert restored.total_requests == 1
    assert restored.daily_usage == {"2026-03-01": 1}


@pytest.mark.asyncio
async def test_import_skips_already_issued_keys(key_store: ApiKeyStore) -> None:
    existing = await key_store.create("ci")
    document = {
        "apiKeys": [
            ["other-id", {"name": "dup", "apiKey": existing.api_key, "enabled": True}],
            ["new-id", {"name": "mobile", "apiKey": "sk-imported", "enabled": True, "totalRequests": 4}],
            ["bad-id", {"name": "no value"}],
        ],
        "usage": [
            ["sk-imported", {"requests": 4, "lastRequest": T0.isoformat(), "dailyUsage": [["2026-03-01", 4]]}],
        ],
        "version": "1.0",
    }

    assert await key_store.import_json(json.dumps(document)) == 1

    imported = key_store.get("new-id")
    assert imported.total_requests == 4
    assert imported.daily_usage == {"2026-03-01": 4}
    assert key_store.get("other-id") is None

    exported = json.loads(key_store.export_json())
    assert exported["version"] == "1.0"
    assert len(exported["apiKeys"]) == 2


@pytest.mark.asyncio
async def test_import_rejects_documents_without_keys(key_store: ApiKeyStore) -> None:
    with pytest.raises(StoreImportError):
        await key_store.import_json("{not json")
    with pytest.raises(StoreImportError):
        await key_store.import_json({"records": []})


@pytest.mark.asyncio
async def test_delete_and_clear(key_store: ApiKeyStore) -> None:
    first = await key_store.create("one")
    await key_store.create("two")

    assert await key_store.delete(first.id) is True
    assert await key_store.delete(first.id) is False
    assert len(key_store.list()) == 1

    await key_store.clear_all()
    assert key_store.list() == []
