"""
Passthrough providers.

For clients that already speak a provider's native API (CLI tools using
Anthropic's /v1/messages, Gemini's :generateContent and so on):
- the request body is forwarded as-is
- the response body is returned as-is
- usage, model and content are still extracted for the span
"""

from __future__ import annotations
from typing import Optional, Dict, Any, Union
from urllib.parse import quote

from tracetap.core.models import ParsedRequest, TargetDescriptor, NormalizedResponse, StreamChunk, Usage
from tracetap.providers.base import BaseProvider, StreamState, bearer_token, dig
from tracetap.providers.openai import OpenAIProvider, with_query
from tracetap.providers.anthropic import AnthropicProvider, anthropic_usage, _text_of
from tracetap.providers.gemini import GeminiProvider, candidate_text, extract_api_key, gemini_usage


class PassthroughProvider(BaseProvider):
    """
    Forwards bodies untouched. Streaming and usage parsing are delegated to
    the native adapter for the same upstream.
    """

    name = "passthrough"
    display_name = "Passthrough"
    native: BaseProvider = OpenAIProvider()

    def __init__(self, target_host: str, target_port: int = 443, protocol: str = "https"):
        self.target_host = target_host
        self.target_port = target_port
        self.protocol = protocol

    def resolve_target(self, request: ParsedRequest) -> TargetDescriptor:
        return TargetDescriptor(
            self.target_host,
            self.target_port,
            with_query(request.path, request.query),
            self.protocol,
        )

    def transform_request_body(self, body: Any, request: Optional[ParsedRequest] = None) -> Any:
        return body

    def extract_usage(self, body: Any) -> Optional[Usage]:
        if not isinstance(body, dict):
            return None
        return Usage.from_openai(body.get("usage"))

    def extract_content(self, body: Any) -> str:
        return self.native.normalize_response(body, ParsedRequest("POST", "/")).content

    def identify_model(self, request: ParsedRequest, body: Any) -> Optional[str]:
        if isinstance(body, dict) and body.get("model"):
            return body["model"]
        return request.model or "unknown"

    def normalize_response(self, body: Any, request: ParsedRequest) -> NormalizedResponse:
        if not isinstance(body, dict) or body.get("error"):
            return NormalizedResponse(data=body, usage=None, model=request.model)
        return NormalizedResponse(
            data=body,
            usage=self.extract_usage(body),
            model=self.identify_model(request, body),
            content=self.extract_content(body),
        )

    def is_streaming_request(self, request: ParsedRequest) -> bool:
        return self.native.is_streaming_request(request)

    def parse_stream_chunk(self, chunk: str) -> StreamChunk:
        return self.native.parse_stream_chunk(chunk)

    def merge_usage(self, previous: Optional[Usage], latest: Optional[Usage]) -> Optional[Usage]:
        return self.native.merge_usage(previous, latest)

    def step(self, state: StreamState, chunk: Union[bytes, str]) -> StreamState:
        return self.native.step(state, chunk)

    def finish(self, state: StreamState) -> StreamState:
        return self.native.finish(state)

    def assemble_streaming_response(
        self,
        content: str,
        usage: Optional[Usage],
        request: ParsedRequest,
        trace_id: str,
    ) -> Dict[str, Any]:
        return self.native.assemble_streaming_response(content, usage, request, trace_id)


class AnthropicPassthrough(PassthroughProvider):
    """Native Anthropic /v1/messages traffic."""

    name = "anthropic-passthrough"
    display_name = "Anthropic (Passthrough)"
    native = AnthropicProvider()

    def __init__(self):
        super().__init__("api.anthropic.com")

    def transform_request_headers(
        self,
        headers: Dict[str, str],
        request: Optional[ParsedRequest] = None,
    ) -> Dict[str, str]:
        return self.native.transform_request_headers(headers, request)

    def extract_usage(self, body: Any) -> Optional[Usage]:
        return anthropic_usage(body.get("usage")) if isinstance(body, dict) else None

    def extract_content(self, body: Any) -> str:
        return _text_of(body.get("content"))

    def identify_model(self, request: ParsedRequest, body: Any) -> Optional[str]:
        return body.get("model") or request.model or "claude-unknown"


class GeminiPassthrough(PassthroughProvider):
    """Native Gemini traffic; the key still moves into the query string."""

    name = "gemini-passthrough"
    display_name = "Google Gemini (Passthrough)"
    native = GeminiProvider()

    def __init__(self):
        super().__init__("generativelanguage.googleapis.com")

    def resolve_target(self, request: ParsedRequest) -> TargetDescriptor:
        target = super().resolve_target(request)
        api_key = extract_api_key(request.headers)
        if not api_key:
            return target
        return TargetDescriptor(target.hostname, target.port, with_query(target.path, f"key={quote(api_key, safe='')}"), target.protocol)

    def transform_request_headers(
        self,
        headers: Dict[str, str],
        request: Optional[ParsedRequest] = None,
    ) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def extract_usage(self, body: Any) -> Optional[Usage]:
        return gemini_usage(body.get("usageMetadata")) if isinstance(body, dict) else None

    def extract_content(self, body: Any) -> str:
        return candidate_text(body)

    def identify_model(self, request: ParsedRequest, body: Any) -> Optional[str]:
        return body.get("modelVersion") or self.native.extract_model(request) or "gemini-unknown"


class OpenAIPassthrough(PassthroughProvider):
    """Native OpenAI traffic forwarded without normalization."""

    name = "openai-passthrough"
    display_name = "OpenAI (Passthrough)"
    native = OpenAIProvider()

    def __init__(self):
        super().__init__("api.openai.com")

    def transform_request_headers(
        self,
        headers: Dict[str, str],
        request: Optional[ParsedRequest] = None,
    ) -> Dict[str, str]:
        result = {"Content-Type": "application/json"}
        token = bearer_token(headers)
        if token:
            result["Authorization"] = f"Bearer {token}"
        return result

    def extract_content(self, body: Any) -> str:
        content = dig(body, "choices", 0, "message", "content")
        if isinstance(content, str):
            return content
        return body.get("output_text") or ""
