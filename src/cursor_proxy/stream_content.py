import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from cursor_rotator.frame_codec import DecodedFragment

THINKING_START = "<thinking>"
THINKING_END = "</thinking>"


def new_response_id() -> str:
    return f"chatcmpl-{uuid.uuid4()}"


@dataclass
class ChatContentAssembler:
    """
    Turns decoded fragments into chat-completion content.

    Reasoning text is wrapped in ``<thinking>`` tags; the closing tag is
    emitted before the first answer text that follows it.
    """

    response_id: str = field(default_factory=new_response_id)
    model: str | None = None
    created: int = field(default_factory=lambda: int(time.time()))
    thinking_started: bool = False
    thinking_closed: bool = False
    content: list[str] = field(default_factory=list)

    def ingest(self, fragment: DecodedFragment) -> str:
        parts = []
        if fragment.thinking and not self.thinking_started:
            parts.append(THINKING_START + "\n")
            self.thinking_started = True
        parts.append(fragment.thinking)
        if self.thinking_started and not self.thinking_closed and fragment.text:
            parts.append("\n" + THINKING_END + "\n")
            self.thinking_closed = True
        parts.append(fragment.text)

        text = "".join(parts)
        if text:
            self.content.append(text)
        return text

    def build_chunk(self, content: str) -> dict[str, Any]:
        return {
            "id": self.response_id,
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": self.model,
            "choices": [{"index": 0, "delta": {"content": content}}],
        }

    def build_completion(self) -> dict[str, Any]:
        return {
            "id": self.response_id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": "".join(self.content)},
                    "finish_reason": "stop",
                }
            ],
            "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
        }


def sse_event(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


SSE_DONE = "data: [DONE]\n\n"
