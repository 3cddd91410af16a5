# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
HTTP client for the upstream chat service.

Builds the headers each call must carry (bearer token, per-request checksum,
client key and session identifiers) and issues the calls through a shared
``httpx.AsyncClient``.
"""

import base64
import hashlib
import logging
import time
import uuid
from typing import Dict, List, Optional

import httpx

from .error_handler import UpstreamStatusError
from .frame_codec import decode_available_models

lib_logger = logging.getLogger("cursor_rotator")

API_BASE = "https://api2.cursor.sh"
CHAT_URL = f"{API_BASE}/aiserver.v1.ChatService/StreamUnifiedChatWithTools"
MODELS_URL = f"{API_BASE}/aiserver.v1.AiService/AvailableModels"

CLIENT_VERSION = "0.48.7"
CLIENT_TIMEZONE = "Asia/Shanghai"
USER_AGENT = "connect-es/1.6.1"

CONNECT_TIMEOUT = 5.0
READ_TIMEOUT = 30.0


def generate_hashed_64_hex(value: str, salt: str = "") -> str:
    return hashlib.sha256((value + salt).encode("utf-8")).hexdigest()


def obfuscate_bytes(data: bytearray) -> bytearray:
    """XOR-chain each byte with the previous output byte, seeded with 165."""
    previous = 165
    for index in range(len(data)):
        data[index] = ((data[index] ^ previous) + (index % 256)) & 0xFF
        previous = data[index]
    return data


def generate_cursor_checksum(token: str, now: Optional[float] = None) -> str:
    """
    Derive the ``x-cursor-checksum`` header value for a token.

    The checksum is an obfuscated coarse timestamp followed by two stable
    fingerprints of the token (machine id and mac machine id).

    Args:
        token: Session token the request is made with
        now: Seconds since the epoch, defaults to the current time

    Returns:
        ``<base64 timestamp><machine id>/<mac machine id>``
    """
    machine_id = generate_hashed_64_hex(token, "machineId")
    mac_machine_id = generate_hashed_64_hex(token, "macMachineId")

    now = time.time() if now is None else now
    timestamp = int(now * 1000 // 1_000_000)
    # Leading bytes repeat the low 16 bits; this is the layout clients send
    data = bytearray(
        [
            (timestamp >> 8) & 0xFF,
            timestamp & 0xFF,
            (timestamp >> 24) & 0xFF,
            (timestamp >> 16) & 0xFF,
            (timestamp >> 8) & 0xFF,
            timestamp & 0xFF,
        ]
    )
    encoded = base64.b64encode(bytes(obfuscate_bytes(data))).decode("ascii")
    return f"{encoded}{machine_id}/{mac_machine_id}"


class CursorClient:
    """
    Issues chat and model-listing calls against the upstream.

    Args:
        proxy: Outbound proxy URL, or None for a direct connection
        http_client: Shared client to use instead of creating one
    """

    def __init__(
        self,
        proxy: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.proxy = proxy
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            proxy=proxy,
            timeout=httpx.Timeout(READ_TIMEOUT, connect=CONNECT_TIMEOUT),
        )
        if proxy:
            lib_logger.info(f"Routing upstream calls through proxy {proxy}")

    async def close(self) -> None:
        if not self._owns_client:
            return
        if not self.http_client.is_closed:
            try:
                await self.http_client.aclose()
            except Exception as exc:
                lib_logger.warning(f"Error closing HTTP client: {exc}")

    def _common_headers(self, token: str, checksum: Optional[str]) -> Dict[str, str]:
        return {
            "authorization": f"Bearer {token}",
            "connect-protocol-version": "1",
            "user-agent": USER_AGENT,
            "x-amzn-trace-id": f"Root={uuid.uuid4()}",
            "x-client-key": generate_hashed_64_hex(token),
            "x-cursor-checksum": checksum or generate_cursor_checksum(token),
            "x-cursor-client-version": CLIENT_VERSION,
            "x-cursor-config-version": str(uuid.uuid4()),
            "x-cursor-timezone": CLIENT_TIMEZONE,
            "x-ghost-mode": "true",
            "x-request-id": str(uuid.uuid4()),
            "x-session-id": str(uuid.uuid5(uuid.NAMESPACE_DNS, token)),
        }

    def chat_headers(self, token: str, checksum: Optional[str] = None) -> Dict[str, str]:
        headers = self._common_headers(token, checksum)
        headers.update(
            {
                "connect-accept-encoding": "gzip",
                "connect-content-encoding": "gzip",
                "content-type": "application/connect+proto",
            }
        )
        return headers

    def models_headers(self, token: str, checksum: Optional[str] = None) -> Dict[str, str]:
        headers = self._common_headers(token, checksum)
        headers.update({"accept-encoding": "gzip", "content-type": "application/proto"})
        return headers

    async def stream_chat(
        self, token: str, body: bytes, checksum: Optional[str] = None
    ) -> httpx.Response:
        """
        Send an encoded chat frame and return the response unread.

        The caller owns the returned response and must close it.
        """
        request = self.http_client.build_request(
            "POST", CHAT_URL, content=body, headers=self.chat_headers(token, checksum)
        )
        return await self.http_client.send(request, stream=True)

    async def available_models(
        self, token: str, checksum: Optional[str] = None
    ) -> List[str]:
        """
        Fetch the names of the models the token may use.

        Raises:
            UpstreamStatusError: If the upstream answers with a non-200 status
            FrameCodecError: If the response body cannot be decoded
        """
        response = await self.http_client.post(
            MODELS_URL, headers=self.models_headers(token, checksum)
        )
        if response.status_code != 200:
            raise UpstreamStatusError(
                response.status_code, response.content, response.reason_phrase
            )
        return decode_available_models(response.content)
