"""
Provider adapters.

One adapter per upstream API, all sharing the BaseProvider contract, plus
the registry that picks one for each inbound request.
"""

from tracetap.providers.base import BaseProvider, StreamState
from tracetap.providers.openai import OpenAIProvider
from tracetap.providers.ollama import OllamaProvider
from tracetap.providers.anthropic import AnthropicProvider
from tracetap.providers.gemini import GeminiProvider
from tracetap.providers.cohere import CohereProvider
from tracetap.providers.azure import AzureOpenAIProvider
from tracetap.providers.compatible import OpenAICompatibleProvider, compatible_providers
from tracetap.providers.passthrough import (
    PassthroughProvider,
    AnthropicPassthrough,
    GeminiPassthrough,
    OpenAIPassthrough,
)
from tracetap.providers.registry import ProviderRegistry

__all__ = [
    "BaseProvider",
    "StreamState",
    "OpenAIProvider",
    "OllamaProvider",
    "AnthropicProvider",
    "GeminiProvider",
    "CohereProvider",
    "AzureOpenAIProvider",
    "OpenAICompatibleProvider",
    "compatible_providers",
    "PassthroughProvider",
    "AnthropicPassthrough",
    "GeminiPassthrough",
    "OpenAIPassthrough",
    "ProviderRegistry",
]
