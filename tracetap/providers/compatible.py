"""
OpenAI-compatible providers.

Hosted services that speak the OpenAI wire format on a different host or
base path: Groq, Mistral, Together, Perplexity and OpenRouter.
"""

from __future__ import annotations
from typing import Optional, Dict

from tracetap.core.models import ParsedRequest
from tracetap.providers.openai import OpenAIProvider


class OpenAICompatibleProvider(OpenAIProvider):
    """An OpenAI-shaped API on another host."""

    def __init__(
        self,
        name: str,
        hostname: str,
        display_name: Optional[str] = None,
        port: int = 443,
        base_path: str = "",
        extra_headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(hostname=hostname, port=port, base_path=base_path)
        self.name = name
        self.display_name = display_name or name
        self.extra_headers = dict(extra_headers or {})

    def transform_request_headers(
        self,
        headers: Dict[str, str],
        request: Optional[ParsedRequest] = None,
    ) -> Dict[str, str]:
        result = super().transform_request_headers(headers, request)
        result.update(self.extra_headers)
        return result


def compatible_providers() -> Dict[str, OpenAICompatibleProvider]:
    """The preconfigured OpenAI-compatible services, keyed by path prefix."""
    return {
        "groq": OpenAICompatibleProvider("groq", "api.groq.com", "Groq", base_path="/openai"),
        "mistral": OpenAICompatibleProvider("mistral", "api.mistral.ai", "Mistral AI"),
        "together": OpenAICompatibleProvider("together", "api.together.xyz", "Together AI"),
        "perplexity": OpenAICompatibleProvider("perplexity", "api.perplexity.ai", "Perplexity"),
        "openrouter": OpenAICompatibleProvider("openrouter", "openrouter.ai", "OpenRouter", base_path="/api"),
    }
