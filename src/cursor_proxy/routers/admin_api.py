from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.responses import Response
from pydantic import BaseModel

from cursor_proxy.auth import get_recovery, get_store, require_admin
from cursor_rotator import CredentialRecord, CredentialStore, RecoveryTask
from cursor_rotator.error_handler import StoreImportError, mask_credential

router = APIRouter(
    prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)]
)


class CredentialItem(BaseModel):
    id: str
    name: str
    value: str
    description: str
    kind: str
    enabled: bool
    rate_limited: bool
    rate_limited_at: datetime | None
    next_retry_at: datetime | None
    usage_count: int
    last_used_at: datetime | None
    created_at: datetime


class CredentialListResponse(BaseModel):
    credentials: list[CredentialItem]


class CreateCredentialRequest(BaseModel):
    name: str = ""
    value: str
    description: str = ""
    kind: Literal["normal", "premium"] = "normal"


class UpdateCredentialRequest(BaseModel):
    name: str | None = None
    value: str | None = None
    description: str | None = None
    kind: Literal["normal", "premium"] | None = None
    enabled: bool | None = None


class StatsResponse(BaseModel):
    total: int
    enabled: int
    rate_limited: int
    available: int
    normal: int
    premium: int


class ImportResponse(BaseModel):
    imported: int


def _serialize_credential(record: CredentialRecord, reveal: bool = False) -> CredentialItem:
    return CredentialItem(
        id=record.id,
        name=record.name,
        value=record.value if reveal else mask_credential(record.value, style="full"),
        description=record.description,
        kind=record.kind,
        enabled=record.enabled,
        rate_limited=record.rate_limited,
        rate_limited_at=record.rate_limited_at,
        next_retry_at=record.next_retry_at,
        usage_count=record.usage_count,
        last_used_at=record.last_used_at,
        created_at=record.created_at,
    )


def _require_credential(store: CredentialStore, credential_id: str) -> CredentialRecord:
    record = store.get(credential_id)
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credential not found",
        )
    return record


@router.get("/credentials", response_model=CredentialListResponse)
async def admin_list_credentials(
    store: CredentialStore = Depends(get_store),
) -> CredentialListResponse:
    records = sorted(store.list(), key=lambda record: record.created_at)
    return CredentialListResponse(
        credentials=[_serialize_credential(record) for record in records]
    )


@router.post("/credentials", response_model=CredentialItem)
async def admin_create_credential(
    payload: CreateCredentialRequest,
    store: CredentialStore = Depends(get_store),
) -> CredentialItem:
    value = payload.value.strip()
    if not value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Credential value cannot be empty",
        )

    if any(record.value == value for record in store.list()):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Credential already registered",
        )

    record = await store.create(
        payload.name, value, description=payload.description, kind=payload.kind
    )
    return _serialize_credential(record)


@router.get("/credentials/{id}", response_model=CredentialItem)
async def admin_get_credential(
    id: str,
    store: CredentialStore = Depends(get_store),
) -> CredentialItem:
    return _serialize_credential(_require_credential(store, id), reveal=True)


@router.patch("/credentials/{id}", response_model=CredentialItem)
async def admin_update_credential(
    id: str,
    payload: UpdateCredentialRequest,
    store: CredentialStore = Depends(get_store),
) -> CredentialItem:
    _require_credential(store, id)
    changes = payload.model_dump(exclude_none=True)
    try:
        record = await store.update(id, **changes)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _serialize_credential(record)


@router.delete("/credentials/{id}")
async def admin_delete_credential(
    id: str,
    store: CredentialStore = Depends(get_store),
) -> dict[str, bool]:
    if not await store.delete(id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credential not found",
        )
    return {"ok": True}


@router.delete("/credentials")
async def admin_clear_credentials(
    store: CredentialStore = Depends(get_store),
) -> dict[str, bool]:
    await store.clear_all()
    return {"ok": True}


@router.post("/credentials/{id}/disable")
async def admin_disable_credential(
    id: str,
    store: CredentialStore = Depends(get_store),
) -> dict[str, bool]:
    record = _require_credential(store, id)
    if record.enabled:
        await store.update(id, enabled=False)
    return {"ok": True}


@router.post("/credentials/{id}/enable")
async def admin_enable_credential(
    id: str,
    store: CredentialStore = Depends(get_store),
) -> dict[str, bool]:
    record = _require_credential(store, id)
    if not record.enabled:
        await store.update(id, enabled=True)
    return {"ok": True}


@router.post("/credentials/{id}/clear-rate-limit")
async def admin_clear_rate_limit(
    id: str,
    store: CredentialStore = Depends(get_store),
) -> dict[str, bool]:
    _require_credential(store, id)
    await store.clear_rate_limit(id)
    return {"ok": True}


@router.get("/stats", response_model=StatsResponse)
async def admin_stats(store: CredentialStore = Depends(get_store)) -> StatsResponse:
    return StatsResponse(**store.stats())


@router.get("/export")
async def admin_export(store: CredentialStore = Depends(get_store)) -> Response:
    return Response(
        content=store.export_json(),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="auth_cookies.json"'},
    )


@router.post("/import", response_model=ImportResponse)
async def admin_import(
    document: Any = Body(...),
    store: CredentialStore = Depends(get_store),
) -> ImportResponse:
    try:
        imported = await store.import_json(document)
    except StoreImportError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ImportResponse(imported=imported)


@router.post("/recovery/run")
async def admin_run_recovery(
    recovery: RecoveryTask = Depends(get_recovery),
) -> dict[str, Any]:
    return await recovery.run_once()
