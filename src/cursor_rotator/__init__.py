from .api_key_store import ApiKeyRecord, ApiKeyStore
from .config import Settings, load_settings
from .credential_pool import CredentialPool
from .credential_store import CredentialRecord, CredentialStore
from .error_handler import (
    AttemptCeilingError,
    FrameCodecError,
    NoCredentialError,
    StoreImportError,
    UpstreamStatusError,
)
from .frame_codec import (
    DecodedFragment,
    FrameStreamDecoder,
    build_request_frame,
    decode_frame_stream,
)
from .recovery import RecoveryTask
from .retry import PeekedResponse, RetryOrchestrator
from .rotation import CredentialSelector
from .upstream import CursorClient

__all__ = [
    "ApiKeyRecord",
    "ApiKeyStore",
    "Settings",
    "load_settings",
    "CredentialPool",
    "CredentialRecord",
    "CredentialStore",
    "CredentialSelector",
    "RetryOrchestrator",
    "PeekedResponse",
    "CursorClient",
    "RecoveryTask",
    "DecodedFragment",
    "FrameStreamDecoder",
    "build_request_frame",
    "decode_frame_stream",
    # Errors
    "AttemptCeilingError",
    "FrameCodecError",
    "NoCredentialError",
    "StoreImportError",
    "UpstreamStatusError",
]
