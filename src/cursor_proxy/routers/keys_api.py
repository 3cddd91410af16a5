from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.responses import Response
from pydantic import BaseModel

from cursor_proxy.auth import get_key_store, require_admin
from cursor_rotator import ApiKeyRecord, ApiKeyStore
from cursor_rotator.error_handler import StoreImportError

router = APIRouter(
    prefix="/api/admin", tags=["api-keys"], dependencies=[Depends(require_admin)]
)


class ApiKeyItem(BaseModel):
    id: str
    name: str
    description: str
    api_key: str
    enabled: bool
    exempt_from_rate_limit: bool
    total_requests: int
    last_used_at: datetime | None
    created_at: datetime


class ApiKeyDetail(ApiKeyItem):
    daily_usage: dict[str, int]


class ApiKeyListResponse(BaseModel):
    keys: list[ApiKeyItem]


class CreateApiKeyRequest(BaseModel):
    name: str
    description: str = ""


class UpdateApiKeyRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    enabled: bool | None = None
    exempt_from_rate_limit: bool | None = None


class ApiKeyStatsResponse(BaseModel):
    total_keys: int
    enabled_keys: int
    total_requests: int
    today_requests: int


class ImportResponse(BaseModel):
    imported: int


def _serialize_key(record: ApiKeyRecord) -> ApiKeyItem:
    return ApiKeyItem(
        id=record.id,
        name=record.name,
        description=record.description,
        api_key=record.api_key,
        enabled=record.enabled,
        exempt_from_rate_limit=record.exempt_from_rate_limit,
        total_requests=record.total_requests,
        last_used_at=record.last_used_at,
        created_at=record.created_at,
    )


def _require_key(key_store: ApiKeyStore, key_id: str) -> ApiKeyRecord:
    record = key_store.get(key_id)
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="API key not found",
        )
    return record


@router.get("/keys", response_model=ApiKeyListResponse)
async def admin_list_keys(
    key_store: ApiKeyStore = Depends(get_key_store),
) -> ApiKeyListResponse:
    records = sorted(key_store.list(), key=lambda record: record.created_at)
    return ApiKeyListResponse(keys=[_serialize_key(record) for record in records])


@router.post("/keys", response_model=ApiKeyItem)
async def admin_create_key(
    payload: CreateApiKeyRequest,
    key_store: ApiKeyStore = Depends(get_key_store),
) -> ApiKeyItem:
    try:
        record = await key_store.create(payload.name, payload.description)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _serialize_key(record)


@router.get("/keys/stats", response_model=ApiKeyStatsResponse)
async def admin_key_stats(
    key_store: ApiKeyStore = Depends(get_key_store),
) -> ApiKeyStatsResponse:
    return ApiKeyStatsResponse(**key_store.stats())


@router.get("/keys/export")
async def admin_export_keys(
    key_store: ApiKeyStore = Depends(get_key_store),
) -> Response:
    return Response(
        content=key_store.export_json(),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="api_keys.json"'},
    )


@router.post("/keys/import", response_model=ImportResponse)
async def admin_import_keys(
    document: Any = Body(...),
    key_store: ApiKeyStore = Depends(get_key_store),
) -> ImportResponse:
    try:
        imported = await key_store.import_json(document)
    except StoreImportError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ImportResponse(imported=imported)


@router.get("/keys/{id}", response_model=ApiKeyDetail)
async def admin_get_key(
    id: str,
    key_store: ApiKeyStore = Depends(get_key_store),
) -> ApiKeyDetail:
    record = _require_key(key_store, id)
    return ApiKeyDetail(
        **_serialize_key(record).model_dump(),
        daily_usage=dict(sorted(record.daily_usage.items())),
    )


@router.patch("/keys/{id}", response_model=ApiKeyItem)
async def admin_update_key(
    id: str,
    payload: UpdateApiKeyRequest,
    key_store: ApiKeyStore = Depends(get_key_store),
) -> ApiKeyItem:
    _require_key(key_store, id)
    changes = payload.model_dump(exclude_none=True)
    try:
        record = await key_store.update(id, **changes)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _serialize_key(record)


@router.delete("/keys/{id}")
async def admin_delete_key(
    id: str,
    key_store: ApiKeyStore = Depends(get_key_store),
) -> dict[str, bool]:
    if not await key_store.delete(id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="API key not found",
        )
    return {"ok": True}


@router.post("/keys/{id}/toggle-rate-limit")
async def admin_toggle_key_rate_limit(
    id: str,
    key_store: ApiKeyStore = Depends(get_key_store),
) -> dict[str, bool]:
    exempt = await key_store.toggle_rate_limit_exemption(id)
    if exempt is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="API key not found",
        )
    return {"exempt_from_rate_limit": exempt}
