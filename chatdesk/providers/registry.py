"""Provider registry and adapter factory."""

from __future__ import annotations

from typing import Dict, Type

from chatdesk.core.config import load_config
from chatdesk.core.exceptions import ProviderUnavailableError

from .base import ProviderAdapter
from .gemini import GeminiProvider
from .openai_compat import OpenAICompatibleProvider


class ProviderRegistry:
    _adapter_map: Dict[str, Type[ProviderAdapter]] = {
        "gemini": GeminiProvider,
        "openai": OpenAICompatibleProvider,
    }

    def __init__(self) -> None:
        self._instances: Dict[str, ProviderAdapter] = {}

    def get_adapter(self, provider_name: str) -> ProviderAdapter:
        if provider_name in self._instances:
            return self._instances[provider_name]

        provider_config = load_config().provider(provider_name)
        if provider_config is None:
            raise ProviderUnavailableError(provider_name, message="Provider not configured")

        adapter_cls = self._adapter_map.get(provider_config.adapter)
        if adapter_cls is None:
            raise ProviderUnavailableError(provider_name, message="Adapter not implemented")

        adapter = adapter_cls(provider_config)
        self._instances[provider_name] = adapter
        return adapter

    def reset(self) -> None:
        self._instances.clear()


registry = ProviderRegistry()
