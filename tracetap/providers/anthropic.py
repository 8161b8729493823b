"""
Anthropic Claude provider.

Maps OpenAI-style chat requests onto the Messages API and back, and reads
Anthropic's event-typed SSE stream.
"""

from __future__ import annotations
from typing import Optional, Dict, Any

from tracetap.core.models import ParsedRequest, TargetDescriptor, NormalizedResponse, StreamChunk, Usage
from tracetap.providers.base import BaseProvider, as_list, bearer_token, dig, loads_or_none, sse_fields
from tracetap.providers.openai import with_query

FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}

# Native Messages API fields copied through untouched
NATIVE_FIELDS = ("top_k", "tools", "tool_choice", "metadata", "stop_sequences", "thinking")


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return "" if content is None else str(content)


def anthropic_usage(usage: Any) -> Optional[Usage]:
    if not isinstance(usage, dict):
        return None
    prompt = usage.get("input_tokens") or usage.get("prompt_tokens") or 0
    completion = usage.get("output_tokens") or usage.get("completion_tokens") or 0
    extra = {
        key: usage[key]
        for key in ("cache_creation_input_tokens", "cache_read_input_tokens")
        if usage.get(key)
    }
    return Usage.of(prompt, completion, **extra)


class AnthropicProvider(BaseProvider):
    """Anthropic Messages API."""

    name = "anthropic"
    display_name = "Anthropic Claude"

    def __init__(self, hostname: str = "api.anthropic.com", api_version: str = "2023-06-01"):
        self.hostname = hostname
        self.api_version = api_version

    def resolve_target(self, request: ParsedRequest) -> TargetDescriptor:
        path = request.path
        if path in ("/v1/chat/completions", "/chat/completions"):
            path = "/v1/messages"
        return TargetDescriptor(self.hostname, 443, with_query(path, request.query), "https")

    def transform_request_headers(
        self,
        headers: Dict[str, str],
        request: Optional[ParsedRequest] = None,
    ) -> Dict[str, str]:
        result = {
            "Content-Type": "application/json",
            "anthropic-version": headers.get("anthropic-version") or self.api_version,
        }
        api_key = headers.get("x-api-key") or bearer_token(headers)
        if api_key:
            result["x-api-key"] = api_key
        if headers.get("anthropic-beta"):
            result["anthropic-beta"] = headers["anthropic-beta"]
        return result

    def transform_request_body(self, body: Any, request: Optional[ParsedRequest] = None) -> Any:
        if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
            return body

        transformed: Dict[str, Any] = {
            "model": body.get("model"),
            "max_tokens": body.get("max_tokens") or 4096,  # Required by Anthropic
            "stream": bool(body.get("stream")),
        }

        messages = [m for m in body["messages"] if isinstance(m, dict)]
        system_parts = [_text_of(m.get("content")) for m in messages if m.get("role") == "system"]
        if body.get("system"):
            system_parts.insert(0, _text_of(body["system"]))
        if system_parts:
            transformed["system"] = "\n".join(system_parts)

        transformed["messages"] = [
            {
                "role": "assistant" if m.get("role") == "assistant" else "user",
                "content": m.get("content"),
            }
            for m in messages
            if m.get("role") != "system"
        ]

        if body.get("temperature") is not None:
            transformed["temperature"] = body["temperature"]
        if body.get("top_p") is not None:
            transformed["top_p"] = body["top_p"]
        for key in NATIVE_FIELDS:
            if body.get(key) is not None:
                transformed[key] = body[key]
        if body.get("stop"):
            transformed["stop_sequences"] = as_list(body["stop"])

        return transformed

    def normalize_response(self, body: Any, request: ParsedRequest) -> NormalizedResponse:
        if not isinstance(body, dict) or body.get("error") or body.get("type") == "error":
            return NormalizedResponse(data=body, usage=None, model=request.model)

        content = _text_of(body.get("content"))
        usage = anthropic_usage(body.get("usage")) or Usage()
        model = body.get("model") or request.model
        stop_reason = body.get("stop_reason")

        normalized = {
            "id": body.get("id"),
            "object": "chat.completion",
            "model": model,
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": FINISH_REASONS.get(stop_reason, stop_reason),
            }],
            "usage": usage.to_dict(),
        }
        return NormalizedResponse(data=normalized, usage=usage, model=model, content=content)

    def parse_stream_chunk(self, chunk: str) -> StreamChunk:
        parts = []
        usage: Optional[Usage] = None
        done = False

        for field_name, value in sse_fields(chunk):
            if field_name == "event":
                if value == "message_stop":
                    done = True
                continue
            payload = loads_or_none(value) if value else None
            if not isinstance(payload, dict):
                continue

            event_type = payload.get("type")
            if event_type == "content_block_delta":
                if dig(payload, "delta", "type") == "text_delta":
                    parts.append(dig(payload, "delta", "text", default=""))
            elif event_type == "message_start":
                usage = self.merge_usage(usage, anthropic_usage(dig(payload, "message", "usage")))
            elif event_type == "message_delta":
                usage = self.merge_usage(usage, anthropic_usage(payload.get("usage")))
            elif event_type == "message_stop":
                done = True

        return StreamChunk("".join(parts), usage, done)

    def merge_usage(self, previous: Optional[Usage], latest: Optional[Usage]) -> Optional[Usage]:
        """
        message_start carries the input count and message_delta the running
        output count; keep whichever side each one reports.
        """
        if latest is None:
            return previous
        if previous is None:
            return latest
        prompt = latest.prompt_tokens or previous.prompt_tokens
        completion = latest.completion_tokens or previous.completion_tokens
        return Usage.of(prompt, completion, prompt + completion, **{**previous.extra, **latest.extra})
