from __future__ import annotations

import pytest

from tracetap.core.config import Config
from tracetap.core.models import ParsedRequest, Usage
from tracetap.providers import (
    AnthropicPassthrough,
    AnthropicProvider,
    AzureOpenAIProvider,
    CohereProvider,
    GeminiPassthrough,
    GeminiProvider,
    OllamaProvider,
    OpenAIPassthrough,
    OpenAIProvider,
    ProviderRegistry,
    compatible_providers,
)


def chat_request(path="/v1/chat/completions", headers=None, **body):
    body.setdefault("model", "gpt-4o")
    body.setdefault("messages", [{"role": "user", "content": "hi"}])
    return ParsedRequest("POST", path, headers or {}, body)


ANTHROPIC_RESPONSE = {
    "id": "msg_1",
    "type": "message",
    "model": "claude-3-5-sonnet-latest",
    "content": [{"type": "text", "text": "Hello"}],
    "stop_reason": "end_turn",
    "usage": {"input_tokens": 10, "output_tokens": 5},
}


# -----------------------------------------------------------------------------
# OpenAI and friends
# -----------------------------------------------------------------------------

def test_openai_target_keeps_path_and_query():
    request = chat_request()
    request.query = "api-version=1"
    target = OpenAIProvider().resolve_target(request)

    assert target.url == "https://api.openai.com/v1/chat/completions?api-version=1"


def test_openai_headers_forward_authorization_only():
    headers = OpenAIProvider().transform_request_headers(
        {"authorization": "Bearer sk-test", "cookie": "a=b"}
    )

    assert headers == {"Content-Type": "application/json", "Authorization": "Bearer sk-test"}


def test_openai_normalize_reads_usage_and_content():
    body = {
        "id": "chatcmpl-1",
        "model": "gpt-4o-2024-08-06",
        "choices": [{"message": {"role": "assistant", "content": "Hi"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6},
    }
    normalized = OpenAIProvider().normalize_response(body, chat_request())

    assert normalized.data is body
    assert normalized.model == "gpt-4o-2024-08-06"
    assert normalized.content == "Hi"
    assert normalized.usage == Usage(4, 2, 6)


def test_openai_responses_api_normalize():
    body = {
        "model": "gpt-4o",
        "output": [{"type": "message", "content": [{"type": "output_text", "text": "Done"}]}],
        "usage": {"input_tokens": 3, "output_tokens": 1},
    }
    normalized = OpenAIProvider().normalize_response(body, chat_request("/v1/responses"))

    assert normalized.content == "Done"
    assert normalized.usage.total_tokens == 4


def test_ollama_uses_plain_http_and_drops_credentials():
    provider = OllamaProvider("gpu-box", 11434)

    target = provider.resolve_target(chat_request())
    headers = provider.transform_request_headers({"authorization": "Bearer nope"})

    assert target.url == "http://gpu-box:11434/v1/chat/completions"
    assert headers == {"Content-Type": "application/json"}


def test_compatible_provider_base_path():
    groq = compatible_providers()["groq"]

    assert groq.resolve_target(chat_request()).url == "https://api.groq.com/openai/v1/chat/completions"
    assert groq.name == "groq"


# -----------------------------------------------------------------------------
# Anthropic
# -----------------------------------------------------------------------------

def test_anthropic_target_maps_chat_completions_to_messages():
    target = AnthropicProvider().resolve_target(chat_request())

    assert target.url == "https://api.anthropic.com/v1/messages"


def test_anthropic_headers_move_bearer_to_api_key():
    headers = AnthropicProvider().transform_request_headers({"authorization": "Bearer sk-ant"})

    assert headers["x-api-key"] == "sk-ant"
    assert headers["anthropic-version"] == "2023-06-01"
    assert "Authorization" not in headers


def test_anthropic_body_lifts_system_and_defaults_max_tokens():
    body = {
        "model": "claude-3-5-sonnet-latest",
        "messages": [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ],
        "stop": "END",
    }
    transformed = AnthropicProvider().transform_request_body(body)

    assert transformed["system"] == "be brief"
    assert transformed["messages"] == [{"role": "user", "content": "hi"}]
    assert transformed["max_tokens"] == 4096
    assert transformed["stop_sequences"] == ["END"]


def test_anthropic_normalize_maps_to_chat_completion():
    request = chat_request(model="claude-3-5-sonnet-latest")
    normalized = AnthropicProvider().normalize_response(ANTHROPIC_RESPONSE, request)

    choice = normalized.data["choices"][0]
    assert choice["message"]["content"] == "Hello"
    assert choice["finish_reason"] == "stop"
    assert normalized.usage == Usage(10, 5, 15)
    assert normalized.data["usage"]["total_tokens"] == 15


def test_anthropic_normalize_is_idempotent():
    provider = AnthropicProvider()
    request = chat_request(model="claude-3-5-sonnet-latest")

    assert provider.normalize_response(ANTHROPIC_RESPONSE, request) == provider.normalize_response(
        ANTHROPIC_RESPONSE, request
    )


@pytest.mark.parametrize("body", [
    {"type": "error", "error": {"type": "overloaded_error", "message": "busy"}},
    "upstream exploded",
    None,
])
def test_error_bodies_pass_through_unchanged(body):
    normalized = AnthropicProvider().normalize_response(body, chat_request(model="claude-3-haiku"))

    assert normalized.data == body
    assert normalized.usage is None
    assert normalized.model == "claude-3-haiku"


# -----------------------------------------------------------------------------
# Gemini
# -----------------------------------------------------------------------------

def test_gemini_target_derives_endpoint_and_escapes_key():
    request = chat_request(
        headers={"x-goog-api-key": "k 1"},
        model="gemini-1.5-pro",
        stream=True,
    )
    target = GeminiProvider().resolve_target(request)

    assert target.hostname == "generativelanguage.googleapis.com"
    assert target.path == "/v1beta/models/gemini-1.5-pro:streamGenerateContent?key=k%201"


def test_gemini_target_without_key_has_no_query():
    target = GeminiProvider().resolve_target(chat_request(model="gemini-1.5-pro"))

    assert target.path == "/v1beta/models/gemini-1.5-pro:generateContent"


def test_gemini_native_path_sends_a_single_key():
    request = ParsedRequest(
        "POST",
        "/v1beta/models/gemini-1.5-pro:streamGenerateContent",
        {"x-goog-api-key": "new"},
        {"contents": []},
        query="alt=sse&key=old",
    )

    target = GeminiProvider().resolve_target(request)

    assert target.path == "/v1beta/models/gemini-1.5-pro:streamGenerateContent?alt=sse&key=new"


def test_gemini_query_key_is_kept_without_header():
    request = ParsedRequest(
        "POST",
        "/v1beta/models/gemini-1.5-pro:generateContent",
        {},
        {"contents": []},
        query="key=a%2Fb&key=ignored",
    )

    target = GeminiProvider().resolve_target(request)

    assert target.path == "/v1beta/models/gemini-1.5-pro:generateContent?key=a%2Fb"


def test_gemini_headers_never_carry_the_key():
    headers = GeminiProvider().transform_request_headers({"x-goog-api-key": "secret"})

    assert headers == {"Content-Type": "application/json"}


def test_gemini_body_transform():
    body = {
        "model": "gemini-1.5-pro",
        "messages": [
            {"role": "system", "content": "rules"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ],
        "max_tokens": 100,
        "temperature": 0.2,
    }
    transformed = GeminiProvider().transform_request_body(body)

    assert transformed["systemInstruction"] == {"parts": [{"text": "rules"}]}
    assert [c["role"] for c in transformed["contents"]] == ["user", "model"]
    assert transformed["generationConfig"] == {"maxOutputTokens": 100, "temperature": 0.2}


def test_gemini_native_body_is_left_alone():
    body = {"contents": [{"role": "user", "parts": [{"text": "hi"}]}]}

    assert GeminiProvider().transform_request_body(body) is body


def test_gemini_normalize():
    body = {
        "candidates": [{"content": {"parts": [{"text": "Hi"}]}, "finishReason": "STOP"}],
        "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 2, "totalTokenCount": 5},
    }
    normalized = GeminiProvider().normalize_response(body, chat_request(model="gemini-1.5-pro"))

    assert normalized.data["id"] == "gemini-gemini-1.5-pro"
    assert normalized.data["choices"][0]["finish_reason"] == "stop"
    assert normalized.content == "Hi"
    assert normalized.usage == Usage(3, 2, 5)


def test_gemini_streaming_detected_from_native_path():
    request = ParsedRequest("POST", "/v1beta/models/gemini-1.5-pro:streamGenerateContent", {}, {})

    assert GeminiProvider().is_streaming_request(request)
    assert GeminiProvider().extract_model(request) == "gemini-1.5-pro"


# -----------------------------------------------------------------------------
# Cohere and Azure
# -----------------------------------------------------------------------------

def test_cohere_target_and_body():
    provider = CohereProvider()
    request = chat_request(model="command-r", top_p=0.9, stop=["x"])

    assert provider.resolve_target(request).url == "https://api.cohere.com/v2/chat"
    transformed = provider.transform_request_body(request.body)
    assert transformed["p"] == 0.9
    assert transformed["stop_sequences"] == ["x"]
    assert "top_p" not in transformed


def test_cohere_normalize_reads_nested_tokens():
    body = {
        "id": "c1",
        "message": {"role": "assistant", "content": [{"type": "text", "text": "Yo"}]},
        "finish_reason": "COMPLETE",
        "usage": {"tokens": {"input_tokens": 4, "output_tokens": 6}},
    }
    normalized = CohereProvider().normalize_response(body, chat_request(model="command-r"))

    assert normalized.content == "Yo"
    assert normalized.usage == Usage(4, 6, 10)
    assert normalized.data["choices"][0]["finish_reason"] == "stop"


def test_azure_target_uses_deployment_map():
    provider = AzureOpenAIProvider(resource="myres", deployment_map={"GPT_4O": "prod-4o"})
    target = provider.resolve_target(chat_request(model="gpt-4o"))

    assert target.hostname == "myres.openai.azure.com"
    assert target.path == "/openai/deployments/prod-4o/chat/completions?api-version=2024-02-01"


def test_azure_deployment_fallback_and_resource_header():
    provider = AzureOpenAIProvider()
    request = chat_request(headers={"x-azure-resource": "other"}, model="gpt-3.5-turbo")
    target = provider.resolve_target(request)

    assert target.hostname == "other.openai.azure.com"
    assert target.path.startswith("/openai/deployments/gpt-35-turbo/")


def test_azure_headers_use_api_key():
    headers = AzureOpenAIProvider().transform_request_headers({"authorization": "Bearer az-key"})

    assert headers == {"Content-Type": "application/json", "api-key": "az-key"}


# -----------------------------------------------------------------------------
# Passthrough
# -----------------------------------------------------------------------------

def test_anthropic_passthrough_keeps_native_bodies():
    provider = AnthropicPassthrough()
    request = ParsedRequest("POST", "/v1/messages", {"x-api-key": "sk-ant"}, {"model": "claude-3-haiku"})
    body = {**ANTHROPIC_RESPONSE, "usage": {"input_tokens": 10, "output_tokens": 5, "cache_read_input_tokens": 7}}

    normalized = provider.normalize_response(body, request)

    assert provider.transform_request_body(request.body) is request.body
    assert provider.resolve_target(request).url == "https://api.anthropic.com/v1/messages"
    assert normalized.data is body
    assert normalized.content == "Hello"
    assert normalized.usage.total_tokens == 15
    assert normalized.usage.extra == {"cache_read_input_tokens": 7}


def test_gemini_passthrough_appends_key():
    request = ParsedRequest(
        "POST",
        "/v1beta/models/gemini-1.5-flash:generateContent",
        {"x-goog-api-key": "abc"},
        {"contents": []},
    )
    provider = GeminiPassthrough()

    assert provider.resolve_target(request).path == "/v1beta/models/gemini-1.5-flash:generateContent?key=abc"
    assert provider.identify_model(request, {}) == "gemini-1.5-flash"


def test_openai_passthrough_content_and_auth():
    provider = OpenAIPassthrough()
    body = {"model": "gpt-4o", "output_text": "plain", "usage": {"input_tokens": 1, "output_tokens": 1}}

    normalized = provider.normalize_response(body, chat_request("/v1/responses"))

    assert provider.transform_request_headers({"authorization": "Bearer sk"})["Authorization"] == "Bearer sk"
    assert normalized.content == "plain"
    assert normalized.usage.total_tokens == 2


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

@pytest.fixture
def registry():
    return ProviderRegistry.from_config(Config())


def test_registry_strips_prefix(registry):
    provider, forwarded = registry.resolve(chat_request("/anthropic/v1/chat/completions"))

    assert isinstance(provider, AnthropicProvider)
    assert forwarded.path == "/v1/chat/completions"


def test_registry_bare_prefix_forwards_root(registry):
    _, forwarded = registry.resolve(ParsedRequest("GET", "/ollama"))

    assert forwarded.path == "/"


def test_registry_default_keeps_path(registry):
    provider, forwarded = registry.resolve(chat_request("/v1/chat/completions"))

    assert provider is registry.default
    assert forwarded.path == "/v1/chat/completions"


def test_registry_unknown_prefix_goes_to_default(registry):
    provider, forwarded = registry.resolve(ParsedRequest("POST", "/unknown/v1/x"))

    assert provider is registry.default
    assert forwarded.path == "/unknown/v1/x"


def test_registry_header_override_wins(registry):
    request = chat_request(headers={"X-Tracetap-Provider": "Ollama"})
    provider, forwarded = registry.resolve(request)

    assert isinstance(provider, OllamaProvider)
    assert forwarded.path == "/v1/chat/completions"


def test_registry_unknown_override_falls_back_to_path(registry):
    request = chat_request("/cohere/v1/chat/completions", headers={"x-tracetap-provider": "nope"})
    provider, _ = registry.resolve(request)

    assert isinstance(provider, CohereProvider)


def test_registry_list(registry):
    listing = registry.list()

    assert listing[0] == {"name": "openai", "display_name": "OpenAI", "prefix": "/v1/*", "default": True}
    by_name = {p["name"]: p for p in listing}
    assert by_name["anthropic"]["prefix"] == "/anthropic/v1/*"
    assert "gemini-passthrough" in by_name
    assert "groq" in registry
