import logging
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

# Add the 'src' directory to the Python path to allow running this file directly
sys.path.append(str(Path(__file__).resolve().parent.parent))

from cursor_rotator import (
    ApiKeyStore,
    CredentialPool,
    CredentialSelector,
    CredentialStore,
    CursorClient,
    FrameStreamDecoder,
    PeekedResponse,
    RecoveryTask,
    RetryOrchestrator,
    Settings,
    build_request_frame,
    load_settings,
)
from cursor_rotator.error_handler import (
    FrameCodecError,
    NoCredentialError,
    is_timeout_error,
    mask_credential,
)
from cursor_proxy.auth import (
    api_key_header,
    get_cursor_client,
    get_orchestrator,
    get_pool,
    get_auth_token,
    get_recovery,
    get_settings,
    get_store,
    verify_api_key,
    verify_api_key_without_usage,
)
from cursor_proxy.routers import admin_router, keys_router
from cursor_proxy.security_config import get_cors_settings, validate_security_settings
from cursor_proxy.stream_content import SSE_DONE, ChatContentAssembler, sse_event

# Configure logging
logging.basicConfig(level=logging.INFO)

# Load environment variables from .env file
load_dotenv()

# Attempts allowed to fail with an error before the request gives up
MAX_CHAT_ATTEMPTS = 20

NO_CREDENTIAL_MESSAGE = (
    "No authentication token provided. Configure AUTH_COOKIE, register a "
    "credential, or send the session token in the Authorization header."
)
MID_STREAM_RATE_LIMIT_MESSAGE = (
    "The upstream rate limited this credential mid-response. "
    "It has been rotated out; please retry the request."
)


# --- Lifespan Management ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the credential store, selector and upstream client for the app's lifetime."""
    settings = load_settings()
    validate_security_settings(settings)

    store = CredentialStore(
        settings.store_path,
        rate_limit_enabled=settings.rate_limit_enabled,
        privileged_mode=settings.privileged_mode,
    )
    await store.load()
    key_store = ApiKeyStore(settings.api_key_store_path)
    await key_store.load()
    pool = CredentialPool(settings.env_credentials)
    pool.attach(store)

    selector = CredentialSelector(
        rotation_enabled=settings.rotation_enabled,
        rotation_interval=settings.rotation_interval,
        rate_limit_enabled=settings.rate_limit_enabled,
    )
    client = CursorClient(proxy=settings.upstream_proxy)
    recovery = RecoveryTask(store, client, interval=settings.recovery_interval)

    app.state.settings = settings
    app.state.credential_store = store
    app.state.api_key_store = key_store
    app.state.credential_pool = pool
    app.state.orchestrator = RetryOrchestrator(
        selector, store, rate_limit_enabled=settings.rate_limit_enabled
    )
    app.state.cursor_client = client
    app.state.recovery = recovery

    if settings.recovery_interval > 0:
        recovery.start()
    logging.info(
        f"Credential broker ready: {len(pool)} pooled credentials, "
        f"rotation {'on' if settings.rotation_enabled else 'off'}, "
        f"rate-limit enforcement {'on' if settings.rate_limit_enabled else 'off'}"
    )
    yield
    await recovery.stop()
    await client.close()
    await key_store.save()
    logging.info("Credential broker stopped.")


# --- FastAPI App Setup ---
app = FastAPI(lifespan=lifespan)
cors_settings = get_cors_settings()
if cors_settings.allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_settings.allow_origins,
        allow_credentials=cors_settings.allow_credentials,
        allow_methods=cors_settings.allow_methods,
        allow_headers=cors_settings.allow_headers,
    )
app.include_router(admin_router)
app.include_router(keys_router)


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _terminal_error_response(e: Exception) -> JSONResponse:
    if isinstance(e, NoCredentialError):
        return _error_response(401, str(e))
    if is_timeout_error(e):
        return _error_response(408, "Server response timeout")
    return _error_response(500, f"Internal server error: {e}")


async def _record_usage(store: CredentialStore, token: str | None) -> None:
    record = store.find_by_token(token)
    if record is not None:
        await store.record_usage(record.id)


async def _handle_mid_stream_rate_limit(
    orchestrator: RetryOrchestrator, raw: str, token: str | None
) -> None:
    logging.warning(f"Credential {mask_credential(token)} rate limited mid-response")
    await orchestrator.ban(token)
    orchestrator.selector.mark_failed(raw, token)


async def _stream_chat(
    response: PeekedResponse,
    assembler: ChatContentAssembler,
    orchestrator: RetryOrchestrator,
    raw: str,
    recovery: RecoveryTask,
    rate_limit_enabled: bool,
) -> AsyncGenerator[str, None]:
    decoder = FrameStreamDecoder()
    first = True
    try:
        async for chunk in response.aiter_bytes():
            fragment = decoder.feed(chunk)
            if fragment.is_rate_limited and rate_limit_enabled and not first:
                await _handle_mid_stream_rate_limit(orchestrator, raw, response.token)
                yield sse_event(assembler.build_chunk(MID_STREAM_RATE_LIMIT_MESSAGE))
                break
            first = False
            content = assembler.ingest(fragment)
            if content:
                yield sse_event(assembler.build_chunk(content))
    except Exception as e:
        logging.error(f"Stream error: {e}")
        message = "Server response timeout" if is_timeout_error(e) else "Stream processing error"
        yield sse_event({"error": message})
    finally:
        await response.aclose()

    yield SSE_DONE
    recovery.schedule()


@app.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    auth: str | None = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
    store: CredentialStore = Depends(get_store),
    pool: CredentialPool = Depends(get_pool),
    orchestrator: RetryOrchestrator = Depends(get_orchestrator),
    client: CursorClient = Depends(get_cursor_client),
    recovery: RecoveryTask = Depends(get_recovery),
    _=Depends(verify_api_key),
):
    """
    OpenAI-compatible chat endpoint backed by the rotating credential pool.
    Handles both streaming and non-streaming responses.
    """
    try:
        data = await request.json()
    except ValueError:
        return _error_response(400, "Request body must be JSON.")

    model = data.get("model")
    messages = data.get("messages")
    is_streaming = bool(data.get("stream", False))
    if not isinstance(messages, list) or not messages:
        return _error_response(400, "Invalid request. messages must be a non-empty array.")

    raw = get_auth_token(auth, pool, settings)
    if not raw:
        return _error_response(401, NO_CREDENTIAL_MESSAGE)

    try:
        body = build_request_frame(messages, model or "")
    except FrameCodecError as e:
        return _error_response(400, str(e))

    checksum = request.headers.get("x-cursor-checksum")

    async def attempt(token: str):
        return await client.stream_chat(token, body, checksum)

    try:
        response = await orchestrator.run_with_retry(attempt, MAX_CHAT_ATTEMPTS, raw)
    except Exception as e:
        logging.error(f"Request failed after all retries: {e}")
        return _terminal_error_response(e)

    await _record_usage(store, response.token)
    assembler = ChatContentAssembler(model=model)

    if is_streaming:
        return StreamingResponse(
            _stream_chat(
                response, assembler, orchestrator, raw, recovery, settings.rate_limit_enabled
            ),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    decoder = FrameStreamDecoder()
    first = True
    try:
        async for chunk in response.aiter_bytes():
            fragment = decoder.feed(chunk)
            if fragment.is_rate_limited and settings.rate_limit_enabled and not first:
                await _handle_mid_stream_rate_limit(orchestrator, raw, response.token)
                return _error_response(429, MID_STREAM_RATE_LIMIT_MESSAGE)
            first = False
            assembler.ingest(fragment)
    except Exception as e:
        logging.error(f"Failed reading upstream response: {e}")
        return _terminal_error_response(e)
    finally:
        await response.aclose()

    recovery.schedule()
    return assembler.build_completion()


@app.get("/")
def read_root():
    return {"Status": "Cursor credential broker is running"}


@app.get("/v1/models")
async def list_models(
    request: Request,
    auth: str | None = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
    pool: CredentialPool = Depends(get_pool),
    orchestrator: RetryOrchestrator = Depends(get_orchestrator),
    client: CursorClient = Depends(get_cursor_client),
    _=Depends(verify_api_key_without_usage),
) -> Any:
    """Returns the models the pooled credentials may use."""
    raw = get_auth_token(auth, pool, settings)
    if not raw:
        return _error_response(401, NO_CREDENTIAL_MESSAGE)

    checksum = request.headers.get("x-cursor-checksum")

    async def attempt(token: str):
        return await client.available_models(token, checksum)

    try:
        names = await orchestrator.run_with_retry(attempt, MAX_CHAT_ATTEMPTS, raw)
    except Exception as e:
        logging.error(f"Model listing failed: {e}")
        return _terminal_error_response(e)

    created = int(time.time())
    return {
        "object": "list",
        "data": [
            {"id": name, "created": created, "object": "model", "owned_by": "cursor"}
            for name in names
        ],
    }


def run() -> None:
    import uvicorn

    uvicorn.run("cursor_proxy.main:app", host="0.0.0.0", port=load_settings().port, reload=False)


if __name__ == "__main__":
    run()
