"""
OpenAI provider - the reference adapter.

Handles both Chat Completions (/v1/chat/completions) and the Responses API
(/v1/responses). Its response shape is the normalization target for every
other adapter.
"""

from __future__ import annotations
from typing import Optional, Dict, Any

from tracetap.core.models import ParsedRequest, TargetDescriptor, NormalizedResponse, StreamChunk, Usage
from tracetap.providers.base import BaseProvider, dig, loads_or_none, sse_fields

RESPONSES_DONE_EVENTS = ("response.done", "response.completed", "done")


def with_query(path: str, query: str) -> str:
    if not query:
        return path
    return f"{path}{'&' if '?' in path else '?'}{query}"


class OpenAIProvider(BaseProvider):
    """OpenAI over HTTPS; also the default adapter."""

    name = "openai"
    display_name = "OpenAI"

    def __init__(self, hostname: str = "api.openai.com", port: int = 443, base_path: str = ""):
        self.hostname = hostname
        self.port = port
        self.base_path = base_path

    def resolve_target(self, request: ParsedRequest) -> TargetDescriptor:
        return TargetDescriptor(
            hostname=self.hostname,
            port=self.port,
            path=with_query(self.base_path + request.path, request.query),
            protocol="https",
        )

    @staticmethod
    def is_responses_api(request: ParsedRequest) -> bool:
        return "/responses" in request.path

    def normalize_response(self, body: Any, request: ParsedRequest) -> NormalizedResponse:
        if self.is_responses_api(request):
            return self._normalize_responses_api(body, request)
        return super().normalize_response(body, request)

    def _normalize_responses_api(self, body: Any, request: ParsedRequest) -> NormalizedResponse:
        if not isinstance(body, dict) or body.get("error"):
            return NormalizedResponse(data=body, usage=None, model=request.model)

        text = []
        for item in body.get("output") or []:
            if not isinstance(item, dict) or item.get("type") != "message":
                continue
            for part in item.get("content") or []:
                if isinstance(part, dict) and part.get("type") == "output_text":
                    text.append(part.get("text") or "")
        content = "".join(text)
        if not content and isinstance(body.get("output_text"), str):
            content = body["output_text"]

        usage = body.get("usage") or {}
        return NormalizedResponse(
            data=body,
            usage=Usage.of(usage.get("input_tokens"), usage.get("output_tokens"), usage.get("total_tokens")),
            model=body.get("model") or request.model or "unknown",
            content=content,
        )

    def parse_stream_chunk(self, chunk: str) -> StreamChunk:
        parts = []
        usage: Optional[Usage] = None
        done = False

        for field_name, value in sse_fields(chunk):
            if field_name == "event":
                if value in RESPONSES_DONE_EVENTS:
                    done = True
                continue
            if value == "[DONE]":
                done = True
                continue
            payload = loads_or_none(value)
            if not isinstance(payload, dict):
                continue

            # Chat Completions
            delta = dig(payload, "choices", 0, "delta", "content")
            if isinstance(delta, str):
                parts.append(delta)
            if isinstance(payload.get("usage"), dict):
                usage = Usage.from_openai(payload["usage"])

            # Responses API
            event_type = payload.get("type")
            if event_type == "response.output_text.delta" and isinstance(payload.get("delta"), str):
                parts.append(payload["delta"])
            elif event_type in ("response.done", "response.completed"):
                response_usage = dig(payload, "response", "usage")
                if isinstance(response_usage, dict):
                    usage = Usage.from_openai(response_usage)
                done = True

        return StreamChunk("".join(parts), usage, done)

    def assemble_streaming_response(
        self,
        content: str,
        usage: Optional[Usage],
        request: ParsedRequest,
        trace_id: str,
    ) -> Dict[str, Any]:
        if not self.is_responses_api(request):
            return super().assemble_streaming_response(content, usage, request, trace_id)
        return {
            "id": trace_id,
            "object": "response",
            "model": request.model,
            "output": [{
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": content}],
            }],
            "output_text": content,
            "usage": usage.to_dict() if usage else None,
            "_streaming": True,
        }
