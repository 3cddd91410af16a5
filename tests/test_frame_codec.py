import gzip
import json

import pytest

from cursor_rotator.error_handler import FrameCodecError
from cursor_rotator.frame_codec import (
    FLAG_JSON,
    FLAG_PROTO,
    FLAG_PROTO_GZIP,
    FRAME_HEADER_SIZE,
    RATE_LIMIT_CHECKOUT_URL,
    RATE_LIMIT_MARKDOWN_MESSAGE,
    RATE_LIMIT_MESSAGE,
    FrameStreamDecoder,
    build_request_frame,
    decode_available_models,
    decode_frame_stream,
    encode_frame,
    iter_frames,
    parse_frame_header,
)
from cursor_rotator.protocol import (
    AvailableModelsResponse,
    StreamUnifiedChatWithToolsRequest,
)


def _decode_request(frame: bytes):
    flag, length = parse_frame_header(frame)
    payload = frame[FRAME_HEADER_SIZE:]
    if flag == FLAG_PROTO_GZIP:
        payload = gzip.decompress(payload)
    return StreamUnifiedChatWithToolsRequest.FromString(payload).request


def test_request_frame_header_recovers_payload_length() -> None:
    frame = build_request_frame([{"role": "user", "content": "hello"}], "gpt-4o")

    flag, length = parse_frame_header(frame)

    assert flag == FLAG_PROTO
    assert length == len(frame) - FRAME_HEADER_SIZE


def test_request_frame_compressed_from_three_turns() -> None:
    messages = [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
        {"role": "user", "content": "how are you?"},
    ]

    frame = build_request_frame(messages, "claude-3.5-sonnet")

    flag, length = parse_frame_header(frame)
    assert flag == FLAG_PROTO_GZIP
    assert length == len(frame) - FRAME_HEADER_SIZE


def test_system_messages_do_not_count_as_turns() -> None:
    messages = [
        {"role": "system", "content": "one"},
        {"role": "system", "content": "two"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]

    frame = build_request_frame(messages, "gpt-4o")

    flag, _ = parse_frame_header(frame)
    assert flag == FLAG_PROTO


def test_request_body_fields() -> None:
    messages = [
        {"role": "system", "content": "one"},
        {"role": "system", "content": "two"},
        {"role": "user", "content": [{"type": "text", "text": "hi "}, {"type": "text", "text": "there"}]},
        {"role": "assistant", "content": "hello"},
        {"role": "user", "content": "bye"},
    ]

    request = _decode_request(build_request_frame(messages, "gpt-4o"))

    assert request.instruction.instruction == "one\ntwo"
    assert request.model.name == "gpt-4o"
    assert [m.content for m in request.messages] == ["hi there", "hello", "bye"]
    assert [m.role for m in request.messages] == [1, 2, 1]
    assert [m.chat_mode_enum for m in request.messages] == [1, 0, 1]
    ids = [m.message_id for m in request.messages]
    assert len(set(ids)) == 3
    assert [m.message_id for m in request.message_ids] == ids


@pytest.mark.parametrize(
    "messages",
    [
        "not a list",
        [{"role": "user", "content": {"nested": True}}],
        ["plain string"],
    ],
)
def test_request_frame_rejects_invalid_messages(messages) -> None:
    with pytest.raises(FrameCodecError):
        build_request_frame(messages, "gpt-4o")


def test_parse_frame_header_rejects_truncated_header() -> None:
    with pytest.raises(FrameCodecError):
        parse_frame_header(b"\x00\x00\x00")


def test_iter_frames_leaves_partial_frame() -> None:
    buffer = encode_frame(b"abc") + encode_frame(b"defg", json_payload=True)

    frames = list(iter_frames(buffer + b"\x00\x00\x00\x00\x09abc"))

    assert [(f.flag, f.payload) for f in frames] == [(FLAG_PROTO, b"abc"), (FLAG_JSON, b"defg")]


def test_decode_accumulates_thinking_and_text(make_response_frame) -> None:
    buffer = (
        make_response_frame(thinking="let me ")
        + make_response_frame(thinking="think")
        + make_response_frame(text="Hello", compressed=True)
        + make_response_frame(text=" world")
    )

    fragment = decode_frame_stream(buffer)

    assert fragment.thinking == "let me think"
    assert fragment.text == "Hello world"
    assert fragment.is_rate_limited is False


def test_decode_skips_side_channel_and_unknown_frames(make_response_frame) -> None:
    side_channel = encode_frame(
        gzip.compress(json.dumps({"error": {"code": "x"}}).encode()),
        compressed=True,
        json_payload=True,
    )
    unknown = b"\x07\x00\x00\x00\x01z"

    fragment = decode_frame_stream(
        make_response_frame(text="a") + side_channel + unknown + make_response_frame(text="b")
    )

    assert fragment.text == "ab"


def test_decode_error_keeps_other_frames(make_response_frame) -> None:
    # Flagged as gzip but not compressed
    broken = encode_frame(b"not gzip data", compressed=True)

    fragment = decode_frame_stream(make_response_frame(text="kept") + broken)

    assert fragment.text == "kept"


@pytest.mark.parametrize(
    "text",
    [
        RATE_LIMIT_MESSAGE,
        RATE_LIMIT_MARKDOWN_MESSAGE,
        RATE_LIMIT_CHECKOUT_URL,
    ],
)
def test_rate_limit_sentinels_detected(make_response_frame, text: str) -> None:
    assert decode_frame_stream(make_response_frame(text=text)).is_rate_limited is True


@pytest.mark.parametrize(
    "text",
    ["", "Hello there", "You've reached the end of the list.", "https://www.cursor.com/pricing"],
)
def test_other_text_not_rate_limited(make_response_frame, text: str) -> None:
    assert decode_frame_stream(make_response_frame(text=text)).is_rate_limited is False


def test_stream_decoder_handles_frames_split_across_chunks(make_response_frame) -> None:
    data = make_response_frame(thinking="hmm") + make_response_frame(text="Hello world")
    decoder = FrameStreamDecoder()

    first = decoder.feed(data[:3])
    second = decoder.feed(data[3:12])
    third = decoder.feed(data[12:])

    assert (first.thinking, first.text) == ("", "")
    assert second.thinking + third.thinking == "hmm"
    assert second.text + third.text == "Hello world"
    assert decoder.pending == 0


def test_decode_available_models() -> None:
    response = AvailableModelsResponse()
    for name in ("gpt-4o", "claude-3.5-sonnet"):
        response.models.add(name=name)

    assert decode_available_models(response.SerializeToString()) == ["gpt-4o", "claude-3.5-sonnet"]


def test_decode_available_models_rejects_garbage() -> None:
    with pytest.raises(FrameCodecError):
        decode_available_models(b"\xff\xff\xff")
