"""Application configuration loading utilities."""

from __future__ import annotations

import os
import pathlib
from datetime import tzinfo
from functools import lru_cache
from typing import Dict, List, Literal
from zoneinfo import ZoneInfo

import yaml
from pydantic import BaseModel, Field

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR.parent / "config" / "providers.yaml"

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a friendly and helpful AI assistant. Answer in the language the user writes in. "
    "Use Markdown for formatting."
)


class KeyLimits(BaseModel):
    """Default per-key limits applied when an administrator adds a key."""

    daily: int | None = 1500
    minute: int | None = 15
    daily_tokens: int | None = None
    minute_tokens: int | None = None


class ModelEntry(BaseModel):
    name: str
    display_name: str | None = None
    description: str | None = None
    active: bool = True


class ProviderConfig(BaseModel):
    name: str
    display_name: str
    adapter: Literal["gemini", "openai"] = "openai"
    priority: int = Field(default=100)
    color: str | None = None
    base_url: str
    chat_path: str = "/chat/completions"
    models_path: str = "/models"
    auth_header: str = "Authorization"
    auth_prefix: str = "Bearer "
    extra_headers: Dict[str, str] = Field(default_factory=dict)
    grounding: bool = False
    timeout_seconds: float = 60.0
    default_limits: KeyLimits = Field(default_factory=KeyLimits)
    models: List[ModelEntry] = Field(default_factory=list)


class QuotaSettings(BaseModel):
    timezone: str | None = None
    strict_limits: bool = False

    @property
    def tzinfo(self) -> tzinfo | None:
        """Timezone whose local midnight starts a daily window (None = host local time)."""
        return ZoneInfo(self.timezone) if self.timezone else None


class AppConfig(BaseModel):
    providers: List[ProviderConfig]
    default_model: str | None = None
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    history_limit: int = 20
    quota: QuotaSettings = Field(default_factory=QuotaSettings)

    def provider(self, name: str) -> ProviderConfig | None:
        return next((item for item in self.providers if item.name == name), None)


def _config_path() -> pathlib.Path:
    configured = os.getenv("CHATDESK_CONFIG")
    return pathlib.Path(configured) if configured else DEFAULT_CONFIG_PATH


@lru_cache(maxsize=1)
def load_config(path: pathlib.Path | None = None) -> AppConfig:
    """Load provider and quota configuration from YAML."""
    config_path = path or _config_path()
    raw = yaml.safe_load(config_path.read_text())
    return AppConfig(**raw)
