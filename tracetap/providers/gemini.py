"""
Google Gemini provider.

Key differences from OpenAI:
- API key travels as a `key` query parameter
- Endpoint derived from the model: /v1beta/models/{model}:generateContent
- Request shape uses contents / systemInstruction / generationConfig
- Response shape uses candidates / usageMetadata
- Streams arrive either as a JSON array of objects or as SSE `data:` lines
"""

from __future__ import annotations
import json
from dataclasses import replace
from typing import Optional, Dict, Any, List
from urllib.parse import quote, unquote

from tracetap.core.models import ParsedRequest, TargetDescriptor, NormalizedResponse, StreamChunk, Usage
from tracetap.providers.base import (
    BaseProvider,
    StreamState,
    RECORD_ERRORS,
    as_list,
    bearer_token,
    decode_complete,
    dig,
    loads_or_none,
    logger,
)
from tracetap.providers.openai import with_query

DEFAULT_MODEL = "gemini-2.0-flash"

FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
}

# Characters between top-level objects of a streamed JSON array
ARRAY_FILLER = " \t\r\n,[]"


def gemini_usage(metadata: Any) -> Optional[Usage]:
    if not isinstance(metadata, dict):
        return None
    return Usage.of(
        metadata.get("promptTokenCount"),
        metadata.get("candidatesTokenCount"),
        metadata.get("totalTokenCount"),
    )


def candidate_text(payload: Dict[str, Any]) -> str:
    parts = dig(payload, "candidates", 0, "content", "parts", default=[])
    return "".join(p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))


def read_payload(payload: Any) -> StreamChunk:
    """Content, usage and completion flag of one streamed Gemini object."""
    if not isinstance(payload, dict):
        return StreamChunk()
    return StreamChunk(
        content=candidate_text(payload),
        usage=gemini_usage(payload.get("usageMetadata")),
        done=bool(dig(payload, "candidates", 0, "finishReason")),
    )


def object_end(text: str, start: int) -> Optional[int]:
    """Index just past the bracket group opening at `start`, or None while it is still open."""
    depth = 0
    in_string = escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def extract_api_key(headers: Dict[str, str]) -> Optional[str]:
    return headers.get("x-goog-api-key") or bearer_token(headers)


def split_query_key(query: Optional[str]):
    """(query without any `key=` params, the first key value found there)."""
    kept, key = [], None
    for param in (query or "").split("&"):
        if not param:
            continue
        if param.startswith("key="):
            key = key or unquote(param[len("key="):])
            continue
        kept.append(param)
    return "&".join(kept), key


class GeminiProvider(BaseProvider):
    """Google Generative Language API."""

    name = "gemini"
    display_name = "Google Gemini"

    def __init__(self, hostname: str = "generativelanguage.googleapis.com", api_version: str = "v1beta"):
        self.hostname = hostname
        self.api_version = api_version

    def resolve_target(self, request: ParsedRequest) -> TargetDescriptor:
        query, query_key = split_query_key(request.query)
        if "/models/" in request.path and ":" in request.path:
            # Already a native Gemini path
            path = with_query(request.path, query)
        else:
            model = (request.model or DEFAULT_MODEL).replace("models/", "", 1)
            action = "streamGenerateContent" if request.wants_stream else "generateContent"
            path = f"/{self.api_version}/models/{model}:{action}"

        # A header key wins over one already in the query; exactly one is sent
        api_key = extract_api_key(request.headers) or query_key
        if api_key:
            path = with_query(path, f"key={quote(api_key, safe='')}")
        return TargetDescriptor(self.hostname, 443, path, "https")

    def transform_request_headers(
        self,
        headers: Dict[str, str],
        request: Optional[ParsedRequest] = None,
    ) -> Dict[str, str]:
        # The key moves into the query string
        result = {"Content-Type": "application/json"}
        if headers.get("authorization") and not extract_api_key(headers):
            result["Authorization"] = headers["authorization"]
        return result

    def transform_request_body(self, body: Any, request: Optional[ParsedRequest] = None) -> Any:
        if not isinstance(body, dict) or "contents" in body:
            return body

        transformed: Dict[str, Any] = {}
        messages = [m for m in body.get("messages") or [] if isinstance(m, dict)]
        if messages:
            system = [m.get("content") for m in messages if m.get("role") == "system"]
            if system:
                transformed["systemInstruction"] = {
                    "parts": [{"text": "\n".join(s if isinstance(s, str) else json.dumps(s) for s in system)}],
                }
            transformed["contents"] = [
                {
                    "role": "model" if m.get("role") == "assistant" else "user",
                    "parts": [{
                        "text": m["content"] if isinstance(m.get("content"), str) else json.dumps(m.get("content")),
                    }],
                }
                for m in messages
                if m.get("role") != "system"
            ]

        generation_config: Dict[str, Any] = {}
        if body.get("max_tokens"):
            generation_config["maxOutputTokens"] = body["max_tokens"]
        if body.get("temperature") is not None:
            generation_config["temperature"] = body["temperature"]
        if body.get("top_p") is not None:
            generation_config["topP"] = body["top_p"]
        if body.get("stop"):
            generation_config["stopSequences"] = as_list(body["stop"])
        if generation_config:
            transformed["generationConfig"] = generation_config

        return transformed

    def is_streaming_request(self, request: ParsedRequest) -> bool:
        return request.wants_stream or ":streamGenerateContent" in request.path

    def extract_model(self, request: ParsedRequest, body: Any = None) -> Optional[str]:
        if request.model:
            return request.model
        if "/models/" in request.path:
            return request.path.split("/models/", 1)[1].split(":", 1)[0]
        if isinstance(body, dict) and body.get("modelVersion"):
            return body["modelVersion"]
        return "gemini"

    def normalize_response(self, body: Any, request: ParsedRequest) -> NormalizedResponse:
        if not isinstance(body, dict) or body.get("error"):
            return NormalizedResponse(data=body, usage=None, model=request.model)

        content = candidate_text(body)
        reason = dig(body, "candidates", 0, "finishReason")
        finish_reason = FINISH_REASONS.get(reason, reason.lower() if isinstance(reason, str) else "stop")
        usage = gemini_usage(body.get("usageMetadata")) or Usage()
        model = self.extract_model(request, body)

        normalized = {
            "id": body.get("responseId") or f"gemini-{model}",
            "object": "chat.completion",
            "model": model,
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }],
            "usage": usage.to_dict(),
        }
        return NormalizedResponse(data=normalized, usage=usage, model=model, content=content)

    def parse_stream_chunk(self, chunk: str) -> StreamChunk:
        parts = []
        usage: Optional[Usage] = None
        done = False

        for line in chunk.split("\n"):
            stripped = line.strip()
            if stripped.startswith("data:"):
                value = stripped[5:].strip()
                if value == "[DONE]":
                    done = True
                    continue
                payload = loads_or_none(value)
            elif stripped[:1] in ("[", "{", ","):
                payload = loads_or_none(stripped.strip("[],").strip())
            else:
                continue

            parsed = read_payload(payload)
            parts.append(parsed.content)
            usage = parsed.usage or usage
            done = done or parsed.done

        return StreamChunk("".join(parts), usage, done)

    # -------------------------------------------------------------------------
    # Streaming fold - JSON array framing
    # -------------------------------------------------------------------------

    def step(self, state: StreamState, chunk) -> StreamState:
        data = chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)
        buffered = state.pending + data
        if buffered.lstrip()[:1] in (b"[", b"{", b",", b"]"):
            return self._fold_objects(replace(state, chunks=state.chunks + 1), buffered, final=False)
        return super().step(state, chunk)

    def finish(self, state: StreamState) -> StreamState:
        if state.pending.lstrip()[:1] in (b"[", b"{", b",", b"]"):
            return self._fold_objects(state, state.pending, final=True)
        return super().finish(state)

    def _fold_objects(self, state: StreamState, buffered: bytes, final: bool) -> StreamState:
        """
        Pull every complete top-level object out of a JSON-array stream.

        Pretty-printed arrays spread one object over many lines, so records
        are found with raw_decode rather than by line. A malformed object
        whose brackets are closed is skipped at once; only one that is still
        open stays pending. At end of stream an unparseable record is skipped
        up to the next object start.
        """
        text, leftover = decode_complete(buffered)
        decoder = json.JSONDecoder()
        chunks: List[StreamChunk] = []
        pos = 0

        while True:
            while pos < len(text) and text[pos] in ARRAY_FILLER:
                pos += 1
            if pos >= len(text):
                break
            try:
                payload, pos = decoder.raw_decode(text, pos)
            except ValueError:
                if text[pos] != "{":
                    nxt = text.find("{", pos)
                    if nxt >= 0:
                        logger.debug(f"{self.name}: skipped stray stream data")
                        pos = nxt
                        continue
                    if not final:
                        break
                else:
                    end = object_end(text, pos)
                    if end is not None:
                        logger.debug(f"{self.name}: skipped malformed stream object")
                        pos = end
                        continue
                if not final:
                    break
                resume = text.find("\n{", pos + 1)
                if resume < 0:
                    resume = text.find(",{", pos + 1)
                if resume < 0:
                    logger.debug(f"{self.name}: dropped trailing stream data")
                    pos = len(text)
                    break
                pos = resume + 1
                continue
            try:
                chunks.append(read_payload(payload))
            except RECORD_ERRORS:
                continue

        pending = b"" if final else text[pos:].encode("utf-8") + leftover
        usage = state.usage
        for parsed in chunks:
            usage = self.merge_usage(usage, parsed.usage)
        return replace(
            state,
            content=state.content + "".join(c.content for c in chunks),
            usage=usage,
            done=state.done or any(c.done for c in chunks),
            pending=pending,
        )

    def assemble_streaming_response(
        self,
        content: str,
        usage: Optional[Usage],
        request: ParsedRequest,
        trace_id: str,
    ) -> Dict[str, Any]:
        response = super().assemble_streaming_response(content, usage, request, trace_id)
        response["model"] = self.extract_model(request)
        return response
