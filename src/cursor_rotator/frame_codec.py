# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Length-prefixed frame codec for the upstream chat stream.

Every frame is laid out as ``[1-byte flag][4-byte big-endian length][payload]``:

- flag 0 / 1: protobuf chat payload (1 = gzip compressed)
- flag 2 / 3: JSON side-channel payload (3 = gzip compressed)

Outbound requests are a single frame; inbound responses are a stream of
concatenated frames that may be split arbitrarily across network chunks.
"""

import gzip
import json
import logging
import struct
import uuid
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, NamedTuple, Tuple

from .error_handler import FrameCodecError
from .protocol import (
    AvailableModelsResponse,
    DecodeError,
    StreamUnifiedChatWithToolsRequest,
    StreamUnifiedChatWithToolsResponse,
    build_message,
)

lib_logger = logging.getLogger("cursor_rotator")

FRAME_HEADER = struct.Struct(">BI")
FRAME_HEADER_SIZE = FRAME_HEADER.size

FLAG_PROTO = 0x00
FLAG_PROTO_GZIP = 0x01
FLAG_JSON = 0x02
FLAG_JSON_GZIP = 0x03

# Requests with this many chat turns or more are gzip compressed
GZIP_TURN_THRESHOLD = 3

ROLE_USER = 1
ROLE_ASSISTANT = 2

RATE_LIMIT_CHECKOUT_URL = "https://www.cursor.com/api/auth/checkoutDeepControl?tier=pro"
RATE_LIMIT_MESSAGE = (
    "You've reached your free requests limit. "
    "Upgrade to Pro for more usage and frontier models."
)
RATE_LIMIT_MARKDOWN_MESSAGE = (
    "You've reached your free requests limit. "
    f"[Upgrade to Pro]({RATE_LIMIT_CHECKOUT_URL}) for more usage and frontier models."
)
RATE_LIMIT_SENTINELS = (
    RATE_LIMIT_MESSAGE,
    RATE_LIMIT_MARKDOWN_MESSAGE,
    RATE_LIMIT_CHECKOUT_URL,
)

_DECODE_ERRORS = (DecodeError, OSError, EOFError, zlib.error, ValueError)


class Frame(NamedTuple):
    flag: int
    payload: bytes


@dataclass
class DecodedFragment:
    thinking: str = ""
    text: str = ""
    is_rate_limited: bool = False


def is_rate_limit_text(text: str) -> bool:
    """Checks if decoded answer text carries one of the rate-limit sentinels."""
    if not text:
        return False
    return any(sentinel in text for sentinel in RATE_LIMIT_SENTINELS)


# =============================================================================
# FRAMING
# =============================================================================


def encode_frame(payload: bytes, compressed: bool = False, json_payload: bool = False) -> bytes:
    """Wrap a payload in a frame header. The payload must already be compressed."""
    if json_payload:
        flag = FLAG_JSON_GZIP if compressed else FLAG_JSON
    else:
        flag = FLAG_PROTO_GZIP if compressed else FLAG_PROTO
    return FRAME_HEADER.pack(flag, len(payload)) + payload


def parse_frame_header(buffer: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Read the ``(flag, length)`` header of the frame starting at ``offset``.

    Raises:
        FrameCodecError: If fewer than 5 bytes are available
    """
    if len(buffer) - offset < FRAME_HEADER_SIZE:
        raise FrameCodecError(
            f"Truncated frame header: {len(buffer) - offset} of {FRAME_HEADER_SIZE} bytes"
        )
    return FRAME_HEADER.unpack_from(buffer, offset)


def split_frames(buffer: bytes) -> Tuple[List[Frame], int]:
    """
    Split a buffer into complete frames.

    Returns:
        The complete frames and the number of bytes they consumed. A trailing
        partial frame is left unconsumed.
    """
    frames: List[Frame] = []
    offset = 0
    while len(buffer) - offset >= FRAME_HEADER_SIZE:
        flag, length = FRAME_HEADER.unpack_from(buffer, offset)
        end = offset + FRAME_HEADER_SIZE + length
        if end > len(buffer):
            break
        frames.append(Frame(flag, bytes(buffer[offset + FRAME_HEADER_SIZE : end])))
        offset = end
    return frames, offset


def iter_frames(buffer: bytes) -> Iterable[Frame]:
    frames, _ = split_frames(buffer)
    return iter(frames)


# =============================================================================
# ENCODE
# =============================================================================


def _message_text(content: Any) -> Any:
    """Flatten OpenAI multi-part content into plain text."""
    if isinstance(content, list):
        return "".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return content


def build_request_body(messages: List[Dict[str, Any]], model_name: str) -> Dict[str, Any]:
    """Build the upstream request document for a chat message list."""
    instruction = "\n".join(
        _message_text(msg.get("content")) or ""
        for msg in messages
        if msg.get("role") == "system"
    )

    formatted_messages = []
    for msg in messages:
        if msg.get("role") == "system":
            continue
        is_user = msg.get("role") == "user"
        entry = {
            "content": _message_text(msg.get("content")),
            "role": ROLE_USER if is_user else ROLE_ASSISTANT,
            "message_id": str(uuid.uuid4()),
        }
        if is_user:
            entry["chat_mode_enum"] = 1
        formatted_messages.append(entry)

    message_ids = [
        {"role": msg["role"], "message_id": msg["message_id"]}
        for msg in formatted_messages
    ]

    return {
        "request": {
            "messages": formatted_messages,
            "unknown2": 1,
            "instruction": {"instruction": instruction},
            "unknown4": 1,
            "model": {"name": model_name, "empty": ""},
            "web_tool": "",
            "unknown13": 1,
            "cursor_setting": {
                "name": "cursor\\aisettings",
                "unknown3": "",
                "unknown6": {"unknown1": "", "unknown2": ""},
                "unknown8": 1,
                "unknown9": 1,
            },
            "unknown19": 1,
            "conversation_id": str(uuid.uuid4()),
            "metadata": {
                "os": "win32",
                "arch": "x64",
                "version": "10.0.22631",
                "path": "C:\\Program Files\\PowerShell\\7\\pwsh.exe",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            "unknown27": 0,
            "message_ids": message_ids,
            "large_context": 0,
            "unknown38": 0,
            "chat_mode_enum": 1,
            "unknown47": "",
            "unknown48": 0,
            "unknown49": 0,
            "unknown51": 0,
            "unknown53": 1,
            "chat_mode": "Ask",
        }
    }


def build_request_frame(messages: List[Dict[str, Any]], model_name: str) -> bytes:
    """
    Encode a chat message list into a single upstream request frame.

    Args:
        messages: OpenAI-style messages (``role`` / ``content``)
        model_name: Upstream model name

    Returns:
        ``[flag][length][payload]`` bytes, gzip compressed when the
        conversation has ``GZIP_TURN_THRESHOLD`` or more non-system turns

    Raises:
        FrameCodecError: If the messages do not fit the request schema
    """
    if not isinstance(messages, list) or not all(isinstance(m, dict) for m in messages):
        raise FrameCodecError("messages must be a list of objects")

    body = build_request_body(messages, model_name)
    try:
        request = build_message(StreamUnifiedChatWithToolsRequest, body)
    except ValueError as e:
        raise FrameCodecError(f"Request does not match upstream schema: {e}") from e

    payload = request.SerializeToString()
    compressed = len(body["request"]["messages"]) >= GZIP_TURN_THRESHOLD
    if compressed:
        payload = gzip.compress(payload)
    return encode_frame(payload, compressed=compressed)


# =============================================================================
# DECODE
# =============================================================================


def _decode_chat_frame(frame: Frame, thinking: List[str], text: List[str]) -> None:
    data = gzip.decompress(frame.payload) if frame.flag == FLAG_PROTO_GZIP else frame.payload
    response = StreamUnifiedChatWithToolsResponse.FromString(data)
    if not response.HasField("message"):
        return
    message = response.message
    if message.HasField("thinking"):
        thinking.append(message.thinking.content)
    if message.content:
        text.append(message.content)


def _decode_side_channel_frame(frame: Frame) -> None:
    data = gzip.decompress(frame.payload) if frame.flag == FLAG_JSON_GZIP else frame.payload
    utf8 = data.decode("utf-8")
    message = json.loads(utf8)
    if message is not None and (not isinstance(message, (dict, list)) or len(message) > 0):
        lib_logger.warning(f"Upstream side-channel message: {utf8}")


def decode_frames(frames: Iterable[Frame]) -> DecodedFragment:
    """
    Decode frames into accumulated thinking and answer text.

    A frame that fails to decode is skipped; whatever was accumulated from
    the other frames is still returned.
    """
    thinking: List[str] = []
    text: List[str] = []
    for frame in frames:
        try:
            if frame.flag in (FLAG_PROTO, FLAG_PROTO_GZIP):
                _decode_chat_frame(frame, thinking, text)
            elif frame.flag in (FLAG_JSON, FLAG_JSON_GZIP):
                _decode_side_channel_frame(frame)
            else:
                lib_logger.debug(f"Skipping frame with unknown flag {frame.flag}")
        except _DECODE_ERRORS as e:
            lib_logger.warning(
                f"Failed to decode frame (flag={frame.flag}, {len(frame.payload)} bytes): {e}"
            )

    joined_text = "".join(text)
    return DecodedFragment(
        thinking="".join(thinking),
        text=joined_text,
        is_rate_limited=is_rate_limit_text(joined_text),
    )


def decode_frame_stream(buffer: bytes) -> DecodedFragment:
    """Decode every complete frame found in ``buffer``."""
    frames, _ = split_frames(buffer)
    return decode_frames(frames)


class FrameStreamDecoder:
    """
    Incremental decoder for a streamed response body.

    Network chunks do not respect frame boundaries, so a trailing partial
    frame is buffered until the rest of it arrives.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes belonging to an incomplete frame."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> DecodedFragment:
        self._buffer.extend(chunk)
        frames, consumed = split_frames(self._buffer)
        del self._buffer[:consumed]
        return decode_frames(frames)


def decode_available_models(body: bytes) -> List[str]:
    """
    Decode an ``AvailableModels`` response body into model names.

    Raises:
        FrameCodecError: If the body is not a valid models response
    """
    try:
        response = AvailableModelsResponse.FromString(body)
    except DecodeError as e:
        text = body.decode("utf-8", errors="replace")
        raise FrameCodecError(f"Unexpected AvailableModels response: {text[:200]}") from e
    return [model.name for model in response.models]
