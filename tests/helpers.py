"""Shared builders for the test suite."""

from __future__ import annotations

from datetime import datetime, timezone

from chatdesk.core.config import AppConfig, KeyLimits, ModelEntry, ProviderConfig, QuotaSettings
from chatdesk.storage import credentials
from chatdesk.storage.database import session_scope
from chatdesk.storage.models import AiModel, AiProvider, ApiKey

# A fixed mid-afternoon instant keeps day and minute windows predictable.
NOW = datetime(2026, 3, 10, 14, 0, 30, tzinfo=timezone.utc)
UTC_POLICY = QuotaSettings(timezone="UTC")


def add_provider(name: str, models: tuple[str, ...] = (), priority: int = 100) -> int:
    with session_scope() as session:
        provider = AiProvider(
            name=name, display_name=name.title(), priority=priority, is_active=True
        )
        session.add(provider)
        session.flush()
        for model in models:
            session.add(
                AiModel(provider_id=provider.id, name=model, display_name=model, is_active=True)
            )
        return provider.id


def add_key(provider_id: int, name: str = "key", *, now: datetime = NOW, **fields) -> ApiKey:
    """Create a key at ``now`` and then force any counter/flag columns directly."""
    limits = {
        field: fields.pop(field)
        for field in ("daily_limit", "minute_limit", "daily_token_limit", "minute_token_limit")
        if field in fields
    }
    priority = fields.pop("priority", 0)
    key = credentials.create_key(
        provider_id,
        name=name,
        secret=f"sk-{name}-0123456789",
        priority=priority,
        now=now,
        **limits,
    )
    if fields:
        credentials.set_fields(key.id, **fields)
    return credentials.get_key(key.id)


def provider_config(name: str = "demo", adapter: str = "openai", **overrides) -> ProviderConfig:
    values = {
        "name": name,
        "display_name": name.title(),
        "adapter": adapter,
        "base_url": "https://api.example.test/v1",
        "default_limits": KeyLimits(daily=100, minute=10),
        "models": [ModelEntry(name=f"{name}-model")],
    }
    values.update(overrides)
    return ProviderConfig(**values)


def app_config(*providers: ProviderConfig, **overrides) -> AppConfig:
    values = {
        "providers": list(providers) or [provider_config()],
        "quota": UTC_POLICY,
    }
    values.update(overrides)
    return AppConfig(**values)
