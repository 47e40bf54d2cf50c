from __future__ import annotations

import logging
from collections.abc import Callable

from flemma.config.model import ProviderSettings
from flemma.errors import ConfigError
from flemma.tools.ids import validate_plain_name
from flemma.tools.registry import ToolRegistry

from .anthropic import AnthropicAdapter
from .base import ProviderAdapter
from .openai import OpenAIAdapter
from .vertex import VertexAdapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[ProviderSettings, ToolRegistry], ProviderAdapter]


class ProviderRegistry:
    def __init__(self) -> None:
        self._factories: dict[str, AdapterFactory] = {}

    def register(self, name: str, factory: AdapterFactory) -> None:
        validate_plain_name(name, "provider")
        self._factories[name] = factory

    def unregister(self, name: str) -> bool:
        return self._factories.pop(name, None) is not None

    def has(self, name: str) -> bool:
        return name in self._factories

    def names(self) -> list[str]:
        return sorted(self._factories)

    def clear(self) -> None:
        self._factories.clear()

    def create(self, settings: ProviderSettings, tools: ToolRegistry | None = None) -> ProviderAdapter:
        factory = self._factories.get(settings.name)
        if factory is None:
            raise ConfigError(
                f"unknown provider {settings.name!r} (known: {', '.join(self.names())})",
                path="provider.name",
            )
        adapter = factory(settings, tools if tools is not None else ToolRegistry())
        logger.debug("provider_created", extra={"provider": settings.name, "model": settings.model})
        return adapter


def install_default_providers(registry: ProviderRegistry) -> None:
    registry.register(AnthropicAdapter.name, AnthropicAdapter)
    registry.register(OpenAIAdapter.name, OpenAIAdapter)
    registry.register(VertexAdapter.name, VertexAdapter)


def default_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    install_default_providers(registry)
    return registry
