"""Admin endpoints for providers, pooled API keys, models and settings."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from chatdesk.core.config import load_config
from chatdesk.core.encryption import mask_secret
from chatdesk.core.exceptions import ProviderAuthError, ProviderUnavailableError
from chatdesk.providers.registry import registry
from chatdesk.router import quota, selector, usage
from chatdesk.storage import call_logs, catalog, credentials
from chatdesk.storage.models import ApiKey
from chatdesk.telemetry.events import list_recent_events, record_event

router = APIRouter(prefix="/admin")
logger = logging.getLogger("chatdesk.admin")


class KeyCreate(BaseModel):
    api_key: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    priority: int = 0
    daily_limit: int | None = None
    minute_limit: int | None = None
    daily_token_limit: int | None = None
    minute_token_limit: int | None = None


class KeyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    is_active: bool | None = None
    priority: int | None = None
    daily_limit: int | None = Field(default=None, ge=0)
    minute_limit: int | None = Field(default=None, ge=0)
    daily_token_limit: int | None = Field(default=None, ge=0)
    minute_token_limit: int | None = Field(default=None, ge=0)


class ModelUpdate(BaseModel):
    is_active: bool


class SettingsUpdate(BaseModel):
    default_model: str | None = None
    enable_rag: bool | None = None
    enable_long_term_memory: bool | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _preview(key: ApiKey) -> str:
    try:
        return mask_secret(credentials.reveal_secret(key))
    except ValueError:
        return "***"


def _serialize_key(key: ApiKey, now: datetime) -> dict[str, Any]:
    tz = load_config().quota.tzinfo
    effective = quota.effective_usage(key, now, tz)
    return {
        "id": key.id,
        "provider_id": key.provider_id,
        "name": key.name,
        "description": key.description,
        "key_preview": _preview(key),
        "is_active": key.is_active,
        "is_rate_limited": quota.is_rate_limited(key, now, tz),
        "rate_limited_at": _iso(key.rate_limited_at),
        "priority": key.priority,
        "daily_limit": key.daily_limit,
        "daily_used": effective.daily_requests,
        "minute_limit": key.minute_limit,
        "minute_used": effective.minute_requests,
        "daily_token_limit": key.daily_token_limit,
        "daily_token_used": effective.daily_tokens,
        "minute_token_limit": key.minute_token_limit,
        "minute_token_used": effective.minute_tokens,
        "has_headroom": quota.has_headroom(key, now, tz),
        "last_used_at": _iso(key.last_used_at),
        "last_reset_at": _iso(key.last_reset_at),
        "created_at": _iso(key.created_at),
    }


@router.get("/providers")
def list_providers() -> dict:
    now = quota.utcnow()
    data = []
    for provider in catalog.list_providers():
        summary = selector.pool_summary(provider.name, now=now)
        data.append(
            {
                "id": provider.id,
                "name": provider.name,
                "display_name": provider.display_name,
                "color": provider.color,
                "is_active": provider.is_active,
                "priority": provider.priority,
                "configured": load_config().provider(provider.name) is not None,
                "usable_keys": summary.usable_keys,
                "remaining_requests": summary.remaining_requests,
                "remaining_tokens": summary.remaining_tokens,
            }
        )
    return {"providers": data}


@router.get("/providers/{provider_name}/keys")
def list_provider_keys(provider_name: str) -> dict:
    if catalog.get_provider(provider_name) is None:
        raise HTTPException(status_code=404, detail="Provider not found")
    now = quota.utcnow()
    keys = credentials.list_provider_keys(provider_name)
    return {"keys": [_serialize_key(key, now) for key in keys]}


@router.post("/providers/{provider_name}/keys", status_code=201)
async def add_provider_key(provider_name: str, payload: KeyCreate) -> dict:
    provider = catalog.get_provider(provider_name)
    provider_config = load_config().provider(provider_name)
    if provider is None or provider_config is None:
        raise HTTPException(status_code=404, detail="Provider not configured")

    secret = payload.api_key.strip()
    adapter = registry.get_adapter(provider_name)
    try:
        await adapter.validate_api_key(secret)
    except ProviderAuthError as exc:
        record_event(
            "key_validation_failed",
            "WARNING",
            provider=provider_name,
            message="Credential validation failed: invalid API key",
            meta={"source": "admin_keys"},
        )
        raise HTTPException(status_code=400, detail="Invalid API key") from exc
    except ProviderUnavailableError as exc:
        record_event(
            "key_validation_failed",
            "WARNING",
            provider=provider_name,
            message=exc.message,
            meta={"source": "admin_keys"},
        )
        raise HTTPException(
            status_code=503, detail=f"Provider verification failed: {exc.message}"
        ) from exc

    defaults = provider_config.default_limits
    fields = payload.model_dump(exclude_unset=True, exclude={"api_key"})
    key = credentials.create_key(
        provider.id,
        secret=secret,
        name=payload.name,
        description=payload.description,
        priority=payload.priority,
        daily_limit=fields.get("daily_limit", defaults.daily),
        minute_limit=fields.get("minute_limit", defaults.minute),
        daily_token_limit=fields.get("daily_token_limit", defaults.daily_tokens),
        minute_token_limit=fields.get("minute_token_limit", defaults.minute_tokens),
    )
    logger.info(
        "API key added",
        extra={"event": "key_created", "provider": provider_name, "api_key_id": key.id},
    )
    record_event(
        "key_created",
        "INFO",
        provider=provider_name,
        api_key_id=key.id,
        message="API key saved via admin",
    )
    return _serialize_key(key, quota.utcnow())


@router.patch("/keys/{key_id}")
def update_key(key_id: int, payload: KeyUpdate) -> dict:
    fields = payload.model_dump(exclude_unset=True)
    # Limits accept null (unlimited); the other columns are not nullable.
    for name in ("name", "is_active", "priority"):
        if name in fields and fields[name] is None:
            del fields[name]
    key = credentials.update_key(key_id, **fields)
    if key is None:
        raise HTTPException(status_code=404, detail="API key not found")
    record_event(
        "key_updated",
        "INFO",
        api_key_id=key_id,
        meta={"fields": sorted(fields)},
    )
    return _serialize_key(key, quota.utcnow())


@router.post("/keys/{key_id}/clear-rate-limit")
def clear_rate_limit(key_id: int) -> dict:
    if not usage.clear_rate_limit(key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    key = credentials.get_key(key_id)
    if key is None:
        raise HTTPException(status_code=404, detail="API key not found")
    return _serialize_key(key, quota.utcnow())


@router.delete("/keys/{key_id}")
def delete_key(key_id: int) -> dict:
    removed = credentials.delete_key(key_id)
    if removed:
        record_event("key_deleted", "INFO", api_key_id=key_id)
    return {"status": "ok", "deleted": removed}


@router.patch("/models/{model_id}")
def update_model(model_id: int, payload: ModelUpdate) -> dict:
    model = catalog.set_model_active(model_id, payload.is_active)
    if model is None:
        raise HTTPException(status_code=404, detail="Model not found")
    return {"id": model.id, "name": model.name, "is_active": model.is_active}


@router.get("/settings")
def read_settings() -> dict:
    return catalog.get_settings()


@router.put("/settings")
def write_settings(payload: SettingsUpdate) -> dict:
    values = payload.model_dump(exclude_unset=True)
    default_model = values.get("default_model")
    if default_model:
        resolved = catalog.resolve_model(default_model)
        if resolved is None or resolved.model_name != default_model:
            raise HTTPException(status_code=400, detail="Default model is not an active model")
    return catalog.update_settings(**values)


@router.get("/events")
def list_events(limit: int = 25, kind: str | None = None, provider: str | None = None) -> dict:
    """Return recent audit events for the admin console."""
    limit_value = max(1, min(limit, 100))
    return {"events": list_recent_events(limit=limit_value, kind=kind, provider=provider)}


@router.get("/error-logs")
def list_error_logs(limit: int = 100, error_type: str | None = None) -> dict:
    limit_value = max(1, min(limit, 500))
    return {"logs": call_logs.list_error_logs(limit=limit_value, error_type=error_type)}


@router.get("/usage-logs")
def list_usage_logs(limit: int = 100) -> dict:
    limit_value = max(1, min(limit, 500))
    return {"logs": call_logs.list_call_logs(limit=limit_value)}
