from datetime import timedelta

import httpx
import pytest

from cursor_rotator.credential_store import RATE_LIMIT_RETRY_INTERVAL, utcnow
from cursor_rotator.frame_codec import RATE_LIMIT_MARKDOWN_MESSAGE
from cursor_rotator.recovery import RecoveryTask


class FakeCursorClient:
    def __init__(self, replies):
        self.replies = replies
        self.tokens = []

    async def stream_chat(self, token, body, checksum=None):
        self.tokens.append(token)
        reply = self.replies[token]
        if isinstance(reply, Exception):
            raise reply
        return reply


async def _throttled(store, name, value, hours_ago=3):
    record = await store.create(name, value)
    await store.mark_as_rate_limited(record.id, now=utcnow() - timedelta(hours=hours_ago))
    return record


@pytest.mark.asyncio
async def test_recovered_credential_is_reactivated(store, make_response_frame) -> None:
    record = await _throttled(store, "a", "name::tok-a")
    client = FakeCursorClient({"tok-a": httpx.Response(200, content=make_response_frame(text="hi"))})

    summary = await RecoveryTask(store, client).run_once()

    assert client.tokens == ["tok-a"]
    assert summary == {"expired_released": False, "reactivated": 1, "still_limited": 0}
    assert store.get(record.id).rate_limited is False


@pytest.mark.asyncio
async def test_still_limited_and_failing_probes_are_postponed(store, make_response_frame) -> None:
    limited = await _throttled(store, "a", "tok-a")
    failing = await _throttled(store, "b", "tok-b")
    client = FakeCursorClient(
        {
            "tok-a": httpx.Response(
                200, content=make_response_frame(text=RATE_LIMIT_MARKDOWN_MESSAGE)
            ),
            "tok-b": httpx.ConnectError("unreachable"),
        }
    )
    before = utcnow()

    summary = await RecoveryTask(store, client).run_once()

    assert summary["still_limited"] == 2
    for record_id in (limited.id, failing.id):
        record = store.get(record_id)
        assert record.rate_limited is True
        assert record.next_retry_at >= before + RATE_LIMIT_RETRY_INTERVAL


@pytest.mark.asyncio
async def test_expired_throttles_released_without_probe(store) -> None:
    record = await _throttled(store, "old", "tok-old", hours_ago=13)
    client = FakeCursorClient({})

    summary = await RecoveryTask(store, client).run_once()

    assert summary["expired_released"] is True
    assert client.tokens == []
    assert store.get(record.id).rate_limited is False


@pytest.mark.asyncio
async def test_throttles_not_yet_due_are_left_alone(store) -> None:
    record = await _throttled(store, "fresh", "tok-fresh", hours_ago=0)
    client = FakeCursorClient({})
    task = RecoveryTask(store, client)

    assert task.schedule() is None
    assert (await task.run_once())["still_limited"] == 0
    assert store.get(record.id).rate_limited is True


@pytest.mark.asyncio
async def test_periodic_loop_starts_and_stops(store) -> None:
    task = RecoveryTask(store, FakeCursorClient({}), interval=3600)

    task.start()
    await task.stop()

    assert task._task is None
