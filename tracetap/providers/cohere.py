"""
Cohere v2 Chat API provider.

Key differences from OpenAI:
- Endpoint: POST /v2/chat
- Usage nested under usage.tokens (or usage.billed_units)
- Assistant content is a list of {type: "text", text: ...} parts
- Finish reasons: COMPLETE, STOP_SEQUENCE, MAX_TOKENS, TOOL_CALL
- Streaming events: message-start, content-delta, message-end
"""

from __future__ import annotations
from typing import Optional, Dict, Any

from tracetap.core.models import ParsedRequest, TargetDescriptor, NormalizedResponse, StreamChunk, Usage
from tracetap.providers.base import BaseProvider, as_list, dig, loads_or_none, sse_fields
from tracetap.providers.openai import with_query

FINISH_REASONS = {
    "COMPLETE": "stop",
    "STOP_SEQUENCE": "stop",
    "MAX_TOKENS": "length",
    "TOOL_CALL": "tool_calls",
    "ERROR": "content_filter",
    "TIMEOUT": "content_filter",
}


def cohere_usage(usage: Any) -> Optional[Usage]:
    if not isinstance(usage, dict):
        return None
    if "prompt_tokens" in usage:
        return Usage.from_openai(usage)
    tokens = usage.get("tokens") or {}
    billed = usage.get("billed_units") or {}
    prompt = tokens.get("input_tokens") or billed.get("input_tokens") or 0
    completion = tokens.get("output_tokens") or billed.get("output_tokens") or 0
    return Usage.of(prompt, completion, prompt + completion)


def message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            c.get("text") or "" for c in content
            if isinstance(c, dict) and c.get("type") == "text"
        )
    return ""


class CohereProvider(BaseProvider):
    """Cohere v2 chat."""

    name = "cohere"
    display_name = "Cohere"

    def __init__(self, hostname: str = "api.cohere.com"):
        self.hostname = hostname

    def resolve_target(self, request: ParsedRequest) -> TargetDescriptor:
        path = request.path
        if path in ("/v1/chat/completions", "/chat/completions"):
            path = "/v2/chat"
        return TargetDescriptor(self.hostname, 443, with_query(path, request.query), "https")

    def transform_request_headers(
        self,
        headers: Dict[str, str],
        request: Optional[ParsedRequest] = None,
    ) -> Dict[str, str]:
        result = super().transform_request_headers(headers, request)
        result["X-Client-Name"] = "tracetap-proxy"
        return result

    def transform_request_body(self, body: Any, request: Optional[ParsedRequest] = None) -> Any:
        if not isinstance(body, dict):
            return body

        transformed: Dict[str, Any] = {
            "model": body.get("model"),
            "messages": body.get("messages"),
            "stream": bool(body.get("stream")),
        }
        if body.get("max_tokens"):
            transformed["max_tokens"] = body["max_tokens"]
        if body.get("temperature") is not None:
            transformed["temperature"] = body["temperature"]
        if body.get("top_p") is not None:
            transformed["p"] = body["top_p"]
        for key in ("frequency_penalty", "presence_penalty", "seed", "tools"):
            if body.get(key) is not None:
                transformed[key] = body[key]
        if body.get("stop"):
            transformed["stop_sequences"] = as_list(body["stop"])
        return transformed

    def normalize_response(self, body: Any, request: ParsedRequest) -> NormalizedResponse:
        if not isinstance(body, dict) or body.get("error"):
            return NormalizedResponse(data=body, usage=None, model=request.model)

        content = message_text(dig(body, "message", "content"))
        usage = cohere_usage(body.get("usage")) or Usage()
        model = request.model or "command"

        normalized = {
            "id": body.get("id") or f"cohere-{model}",
            "object": "chat.completion",
            "model": model,
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": FINISH_REASONS.get(body.get("finish_reason"), "stop"),
            }],
            "usage": usage.to_dict(),
        }
        return NormalizedResponse(data=normalized, usage=usage, model=model, content=content)

    def parse_stream_chunk(self, chunk: str) -> StreamChunk:
        parts = []
        usage: Optional[Usage] = None
        done = False

        for field_name, value in sse_fields(chunk):
            if field_name != "data":
                continue
            if value == "[DONE]":
                done = True
                continue
            payload = loads_or_none(value)
            if not isinstance(payload, dict):
                continue

            event_type = payload.get("type")
            if event_type == "content-delta":
                content = dig(payload, "delta", "message", "content")
                if isinstance(content, dict):
                    parts.append(content.get("text") or "")
                else:
                    parts.append(message_text(content))
            elif event_type == "message-end":
                done = True
                usage = cohere_usage(dig(payload, "delta", "usage")) or usage

        return StreamChunk("".join(parts), usage, done)

    def assemble_streaming_response(
        self,
        content: str,
        usage: Optional[Usage],
        request: ParsedRequest,
        trace_id: str,
    ) -> Dict[str, Any]:
        response = super().assemble_streaming_response(content, usage, request, trace_id)
        response["model"] = request.model or "command"
        return response
