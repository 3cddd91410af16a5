import asyncio

import httpx
import pytest

from cursor_rotator.error_handler import (
    AttemptCeilingError,
    FrameCodecError,
    UpstreamStatusError,
)
from cursor_rotator.frame_codec import RATE_LIMIT_MESSAGE, decode_frame_stream
from cursor_rotator.retry import PeekedResponse, RetryOrchestrator
from cursor_rotator.rotation import CredentialSelector


def _orchestrator(store=None, **kwargs) -> RetryOrchestrator:
    selector = CredentialSelector(
        rotation_enabled=True,
        rotation_interval=0,
        rotation_delay=0,
        rate_limit_enabled=kwargs.get("rate_limit_enabled", True),
    )
    return RetryOrchestrator(selector, store, retry_backoff=0, **kwargs)


@pytest.mark.asyncio
async def test_rate_limited_credential_is_banned_and_rotated(store, make_response_frame) -> None:
    record_a = await store.create("A", "A")
    record_b = await store.create("B", "B")
    orchestrator = _orchestrator(store)
    calls = []

    async def attempt(token: str):
        calls.append(token)
        if token == "A":
            return httpx.Response(200, content=make_response_frame(text=RATE_LIMIT_MESSAGE))
        return httpx.Response(200, content=make_response_frame(text="from B"))

    result = await orchestrator.run_with_retry(attempt, 5, "A,B")

    assert calls == ["A", "B"]
    assert isinstance(result, PeekedResponse)
    assert result.token == "B"
    assert decode_frame_stream(await result.aread()).text == "from B"
    assert store.get(record_a.id).rate_limited is True
    assert store.get(record_b.id).rate_limited is False


@pytest.mark.asyncio
async def test_overlapping_requests_ban_their_own_credential(store, make_response_frame) -> None:
    record_a = await store.create("A", "A")
    record_b = await store.create("B", "B")
    record_c = await store.create("C", "C")
    orchestrator = _orchestrator(store)
    second_request_done = asyncio.Event()

    async def first_attempt(token: str):
        if token == "A":
            await second_request_done.wait()
            return httpx.Response(200, content=make_response_frame(text=RATE_LIMIT_MESSAGE))
        return httpx.Response(200, content=make_response_frame(text=f"from {token}"))

    async def second_attempt(token: str):
        second_request_done.set()
        return httpx.Response(200, content=make_response_frame(text=f"from {token}"))

    first, second = await asyncio.gather(
        orchestrator.run_with_retry(first_attempt, 5, "A,B,C"),
        orchestrator.run_with_retry(second_attempt, 5, "A,B,C"),
    )

    assert second.token == "B"
    assert first.token != "A"
    assert store.get(record_a.id).rate_limited is True
    assert store.get(record_b.id).rate_limited is False
    assert store.get(record_c.id).rate_limited is False


@pytest.mark.asyncio
async def test_always_failing_attempt_raises_last_error() -> None:
    orchestrator = _orchestrator()
    calls = []

    async def attempt(token: str):
        calls.append(token)
        raise RuntimeError(f"boom {len(calls)}")

    with pytest.raises(RuntimeError, match="boom 3"):
        await orchestrator.run_with_retry(attempt, 3, "A,B")

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_error_then_success_rotates_credential(make_response_frame) -> None:
    orchestrator = _orchestrator()
    calls = []

    async def attempt(token: str):
        calls.append(token)
        if token == "A":
            raise httpx.ConnectError("connection refused")
        return httpx.Response(200, content=make_response_frame(text="ok"))

    result = await orchestrator.run_with_retry(attempt, 3, "A,B")

    assert calls == ["A", "B"]
    assert result.first_chunk
    assert orchestrator.selector.cursor.failed_indices == {0}


@pytest.mark.asyncio
async def test_non_200_without_rate_limit_is_retried(make_response_frame) -> None:
    orchestrator = _orchestrator()
    statuses = iter([500, 200])

    async def attempt(token: str):
        status = next(statuses)
        if status != 200:
            return httpx.Response(status, content=b"upstream exploded")
        return httpx.Response(200, content=make_response_frame(text="ok"))

    result = await orchestrator.run_with_retry(attempt, 3, "A,B")

    assert result.status_code == 200


@pytest.mark.asyncio
async def test_non_200_error_surfaces_after_max_attempts() -> None:
    orchestrator = _orchestrator()

    async def attempt(token: str):
        return httpx.Response(401, content=b"unauthorized")

    with pytest.raises(UpstreamStatusError) as exc_info:
        await orchestrator.run_with_retry(attempt, 2, "A,B")

    assert exc_info.value.status_code == 401
    assert exc_info.value.body == b"unauthorized"


@pytest.mark.asyncio
async def test_codec_errors_are_not_retried() -> None:
    orchestrator = _orchestrator()
    calls = []

    async def attempt(token: str):
        calls.append(token)
        raise FrameCodecError("bad shape")

    with pytest.raises(FrameCodecError):
        await orchestrator.run_with_retry(attempt, 5, "A,B")

    assert calls == ["A"]


@pytest.mark.asyncio
async def test_attempt_ceiling_bounds_rate_limit_rotations(make_response_frame) -> None:
    orchestrator = _orchestrator(max_total_attempts=4)
    calls = []

    async def attempt(token: str):
        calls.append(token)
        return httpx.Response(200, content=make_response_frame(text=RATE_LIMIT_MESSAGE))

    with pytest.raises(AttemptCeilingError):
        await orchestrator.run_with_retry(attempt, 5, "A,B")

    assert calls == ["A", "B", "A", "B"]


@pytest.mark.asyncio
async def test_rate_limit_passthrough_when_enforcement_disabled(store, make_response_frame) -> None:
    record = await store.create("A", "A")
    orchestrator = _orchestrator(store, rate_limit_enabled=False)
    calls = []

    async def attempt(token: str):
        calls.append(token)
        return httpx.Response(200, content=make_response_frame(text=RATE_LIMIT_MESSAGE))

    result = await orchestrator.run_with_retry(attempt, 5, "A,B")

    assert len(calls) == 1
    assert decode_frame_stream(await result.aread()).is_rate_limited is True
    assert store.get(record.id).rate_limited is False


@pytest.mark.asyncio
async def test_single_credential_rate_limit_is_banned_and_returned(store, make_response_frame) -> None:
    record = await store.create("A", "only")
    orchestrator = _orchestrator(store)
    calls = []

    async def attempt(token: str):
        calls.append(token)
        return httpx.Response(200, content=make_response_frame(text=RATE_LIMIT_MESSAGE))

    result = await orchestrator.run_with_retry(attempt, 5, "only")

    assert calls == ["only"]
    assert decode_frame_stream(await result.aread()).is_rate_limited is True
    assert store.get(record.id).rate_limited is True


@pytest.mark.asyncio
async def test_non_response_results_are_returned_unchanged() -> None:
    orchestrator = _orchestrator()

    async def attempt(token: str):
        return ["gpt-4o"]

    assert await orchestrator.run_with_retry(attempt, 1, "A") == ["gpt-4o"]


@pytest.mark.asyncio
async def test_peeked_response_replays_first_chunk(make_response_frame) -> None:
    orchestrator = _orchestrator()
    frames = [make_response_frame(text="one"), make_response_frame(text=" two")]

    async def body():
        for frame in frames:
            yield frame

    async def attempt(token: str):
        return httpx.Response(200, content=body())

    result = await orchestrator.run_with_retry(attempt, 1, "A")
    chunks = [chunk async for chunk in result.aiter_bytes()]
    await result.aclose()

    assert chunks == frames
