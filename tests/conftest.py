import gzip
import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cursor_rotator.credential_store import CredentialStore
from cursor_rotator.frame_codec import encode_frame
from cursor_rotator.protocol import StreamUnifiedChatWithToolsResponse


@pytest.fixture(scope="session", autouse=True)
def failure_log_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    log_dir = tmp_path_factory.mktemp("logs")
    os.environ["FAILURE_LOG_DIR"] = str(log_dir)
    return log_dir


@pytest.fixture
def make_response_frame():
    def _make(text: str = "", thinking: str = "", compressed: bool = False) -> bytes:
        response = StreamUnifiedChatWithToolsResponse()
        if text:
            response.message.content = text
        if thinking:
            response.message.thinking.content = thinking
        payload = response.SerializeToString()
        if compressed:
            payload = gzip.compress(payload)
        return encode_frame(payload, compressed=compressed)

    return _make


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> CredentialStore:
    credential_store = CredentialStore(tmp_path / "auth_cookies.json")
    await credential_store.load()
    return credential_store
