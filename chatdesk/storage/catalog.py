"""Provider/model catalog and system settings storage helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, cast

from sqlalchemy import select

from chatdesk.core.config import AppConfig

from .database import session_scope
from .models import AiModel, AiProvider, SystemSettings

logger = logging.getLogger("chatdesk.catalog")

SETTINGS_ID = "system"
EDITABLE_SETTINGS = frozenset({"default_model", "enable_rag", "enable_long_term_memory"})


@dataclass(frozen=True)
class ResolvedModel:
    model_id: int
    model_name: str
    display_name: str
    provider_name: str


def sync_catalog(config: AppConfig) -> None:
    """Insert configured providers and models that are not stored yet.

    Existing rows are left alone so administrator changes (activation,
    priority) survive restarts.
    """
    with session_scope() as session:
        for provider_cfg in config.providers:
            provider = session.scalar(
                select(AiProvider).where(AiProvider.name == provider_cfg.name)
            )
            if provider is None:
                provider = AiProvider(
                    name=provider_cfg.name,
                    display_name=provider_cfg.display_name,
                    color=provider_cfg.color,
                    priority=provider_cfg.priority,
                    is_active=True,
                )
                session.add(provider)
                session.flush()
                logger.info(
                    "Provider registered",
                    extra={"event": "provider_seeded", "provider": provider_cfg.name},
                )

            for model_cfg in provider_cfg.models:
                exists = session.scalar(select(AiModel.id).where(AiModel.name == model_cfg.name))
                if exists is not None:
                    continue
                session.add(
                    AiModel(
                        provider_id=provider.id,
                        name=model_cfg.name,
                        display_name=model_cfg.display_name or model_cfg.name,
                        description=model_cfg.description,
                        is_active=model_cfg.active,
                    )
                )

        if session.get(SystemSettings, SETTINGS_ID) is None:
            session.add(SystemSettings(id=SETTINGS_ID, default_model=config.default_model))


def list_providers() -> list[AiProvider]:
    stmt = select(AiProvider).order_by(AiProvider.priority, AiProvider.name)
    with session_scope() as session:
        return cast(list[AiProvider], list(session.scalars(stmt).all()))


def get_provider(name: str) -> AiProvider | None:
    with session_scope() as session:
        return session.scalar(select(AiProvider).where(AiProvider.name == name))


def list_active_models() -> list[dict[str, Any]]:
    """Active models of active providers, in provider priority order."""
    stmt = (
        select(AiModel, AiProvider)
        .join(AiProvider, AiProvider.id == AiModel.provider_id)
        .where(AiModel.is_active.is_(True))
        .where(AiProvider.is_active.is_(True))
        .order_by(AiProvider.priority, AiModel.id)
    )
    with session_scope() as session:
        rows = session.execute(stmt).all()
        return [
            {
                "id": model.id,
                "name": model.name,
                "display_name": model.display_name,
                "description": model.description,
                "provider": provider.name,
                "provider_display_name": provider.display_name,
                "color": provider.color,
            }
            for model, provider in rows
        ]


def _active_model(session, model_name: str) -> ResolvedModel | None:
    stmt = (
        select(AiModel, AiProvider)
        .join(AiProvider, AiProvider.id == AiModel.provider_id)
        .where(AiModel.name == model_name)
        .where(AiModel.is_active.is_(True))
        .where(AiProvider.is_active.is_(True))
    )
    row = session.execute(stmt).first()
    if row is None:
        return None
    model, provider = row
    return ResolvedModel(model.id, model.name, model.display_name, provider.name)


def resolve_model(model_name: str | None) -> ResolvedModel | None:
    """Map a requested model to its provider.

    Falls back to the configured default model and then to the first active
    model; returns None when no active model exists at all.
    """
    with session_scope() as session:
        if model_name:
            resolved = _active_model(session, model_name)
            if resolved is not None:
                return resolved
            logger.info(
                "Requested model unavailable, falling back",
                extra={"event": "model_fallback", "model": model_name},
            )

        settings = session.get(SystemSettings, SETTINGS_ID)
        default_model = settings.default_model if settings else None
        if default_model and default_model != model_name:
            resolved = _active_model(session, default_model)
            if resolved is not None:
                return resolved

        stmt = (
            select(AiModel, AiProvider)
            .join(AiProvider, AiProvider.id == AiModel.provider_id)
            .where(AiModel.is_active.is_(True))
            .where(AiProvider.is_active.is_(True))
            .order_by(AiProvider.priority, AiModel.id)
        )
        row = session.execute(stmt).first()
        if row is None:
            return None
        model, provider = row
        return ResolvedModel(model.id, model.name, model.display_name, provider.name)


def set_model_active(model_id: int, is_active: bool) -> AiModel | None:
    with session_scope() as session:
        model = session.get(AiModel, model_id)
        if model is None:
            return None
        model.is_active = is_active
        session.flush()
        return model


def get_settings() -> dict[str, Any]:
    with session_scope() as session:
        settings = session.get(SystemSettings, SETTINGS_ID)
        if settings is None:
            settings = SystemSettings(
                id=SETTINGS_ID, enable_rag=False, enable_long_term_memory=True
            )
            session.add(settings)
            session.flush()
        return {
            "default_model": settings.default_model,
            "enable_rag": bool(settings.enable_rag),
            "enable_long_term_memory": bool(settings.enable_long_term_memory),
        }


def update_settings(**values: Any) -> dict[str, Any]:
    unknown = set(values) - EDITABLE_SETTINGS
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
    get_settings()
    with session_scope() as session:
        settings = session.get(SystemSettings, SETTINGS_ID)
        for field, value in values.items():
            setattr(settings, field, value)
    return get_settings()


__all__ = [
    "ResolvedModel",
    "get_provider",
    "get_settings",
    "list_active_models",
    "list_providers",
    "resolve_model",
    "set_model_active",
    "sync_catalog",
    "update_settings",
]
