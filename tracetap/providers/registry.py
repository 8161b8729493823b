"""
Provider Registry

Maps an inbound request to an adapter. Resolution order:
1. `x-tracetap-provider` header naming a registered prefix
2. first path segment (`/anthropic/v1/chat/completions`), stripped before forwarding
3. the default OpenAI adapter, path untouched
"""

from __future__ import annotations
import logging
import re
from typing import Optional, Dict, List, Any, Tuple

from tracetap.core.config import Config
from tracetap.core.models import ParsedRequest
from tracetap.providers.base import BaseProvider
from tracetap.providers.openai import OpenAIProvider
from tracetap.providers.ollama import OllamaProvider
from tracetap.providers.anthropic import AnthropicProvider
from tracetap.providers.gemini import GeminiProvider
from tracetap.providers.cohere import CohereProvider
from tracetap.providers.azure import AzureOpenAIProvider
from tracetap.providers.compatible import compatible_providers
from tracetap.providers.passthrough import AnthropicPassthrough, GeminiPassthrough, OpenAIPassthrough

logger = logging.getLogger("tracetap.providers")

PROVIDER_HEADER = "x-tracetap-provider"
PREFIX_PATTERN = re.compile(r"^/([^/]+)(/.*)?$")


class ProviderRegistry:
    """Prefix -> adapter table with a default adapter."""

    def __init__(self, default: Optional[BaseProvider] = None):
        self.default = default or OpenAIProvider()
        self._providers: Dict[str, BaseProvider] = {}

    @classmethod
    def from_config(cls, cfg: Config) -> "ProviderRegistry":
        """The standard adapter set, configured from `cfg`."""
        registry = cls()
        registry.register("ollama", OllamaProvider(cfg.ollama_host, cfg.ollama_port))
        registry.register("anthropic", AnthropicProvider())
        registry.register("gemini", GeminiProvider())
        registry.register("cohere", CohereProvider())
        registry.register(
            "azure",
            AzureOpenAIProvider(
                resource=cfg.azure_resource,
                api_version=cfg.azure_api_version,
                deployment_map=cfg.azure_deployments,
            ),
        )
        for prefix, provider in compatible_providers().items():
            registry.register(prefix, provider)
        registry.register("anthropic-passthrough", AnthropicPassthrough())
        registry.register("gemini-passthrough", GeminiPassthrough())
        registry.register("openai-passthrough", OpenAIPassthrough())
        return registry

    def register(self, prefix: str, provider: BaseProvider) -> None:
        if prefix in self._providers:
            logger.warning(f"Replacing provider registered under '{prefix}'")
        self._providers[prefix] = provider

    def get(self, prefix: str) -> Optional[BaseProvider]:
        return self._providers.get(prefix)

    def __contains__(self, prefix: str) -> bool:
        return prefix in self._providers

    def resolve(self, request: ParsedRequest) -> Tuple[BaseProvider, ParsedRequest]:
        """
        Pick the adapter for `request`.

        Returns the adapter and the request as it should be forwarded (with
        the provider prefix removed from the path when one was matched).
        """
        override = request.headers.get(PROVIDER_HEADER)
        if override:
            provider = self._providers.get(override.strip().lower())
            if provider is not None:
                return provider, request
            logger.warning(f"Unknown provider in {PROVIDER_HEADER} header: {override}")

        match = PREFIX_PATTERN.match(request.path)
        if match and match.group(1) in self._providers:
            clean_path = match.group(2) or "/"
            return self._providers[match.group(1)], request.with_path(clean_path)

        return self.default, request

    def list(self) -> List[Dict[str, Any]]:
        """Registered providers for the /api/providers listing."""
        providers = [{
            "name": self.default.name,
            "display_name": self.default.display_name,
            "prefix": "/v1/*",
            "default": True,
        }]
        for prefix, provider in self._providers.items():
            providers.append({
                "name": prefix,
                "display_name": provider.display_name,
                "prefix": f"/{prefix}/v1/*",
                "default": False,
            })
        return providers
