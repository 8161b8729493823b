"""
Provider Adapter Base

Every upstream provider is described by one adapter object with the same
contract:

- resolve_target(request)            -> TargetDescriptor
- transform_request_headers(headers) -> upstream headers
- transform_request_body(body)       -> upstream body
- normalize_response(body, request)  -> NormalizedResponse
- parse_stream_chunk(text)           -> StreamChunk

Adapters hold configuration only and no per-call state, so one instance can
serve concurrent requests.

The streaming fold (`step` / `finish`) wraps `parse_stream_chunk` with a
line buffer: a record split across two network chunks is only parsed once
it is complete.
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, replace
from typing import Optional, Dict, Any, Iterator, Tuple, Union

from tracetap.core.models import (
    ParsedRequest,
    TargetDescriptor,
    NormalizedResponse,
    StreamChunk,
    Usage,
)

logger = logging.getLogger("tracetap.providers")

# Failures a single malformed stream record can raise while being read
RECORD_ERRORS = (ValueError, TypeError, AttributeError, KeyError, IndexError)


# =============================================================================
# HELPERS
# =============================================================================

def dig(data: Any, *path: Union[str, int], default: Any = None) -> Any:
    """Walk nested dicts/lists, returning `default` on any missing step."""
    current = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or not -len(current) <= key < len(current):
                return default
            current = current[key]
        else:
            if not isinstance(current, dict) or key not in current:
                return default
            current = current[key]
    return default if current is None else current


def loads_or_none(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def sse_fields(text: str) -> Iterator[Tuple[str, str]]:
    """Yield (field, value) for each `event:` / `data:` line in an SSE slice."""
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped.startswith("event:"):
            yield "event", stripped[6:].strip()
        elif stripped.startswith("data:"):
            yield "data", stripped[5:].strip()


def bearer_token(headers: Dict[str, str]) -> Optional[str]:
    """The token part of an `Authorization: Bearer ...` header."""
    auth = headers.get("authorization")
    if not auth:
        return None
    if auth[:7].lower() == "bearer ":
        return auth[7:].strip()
    return auth


def as_list(value: Any) -> list:
    return value if isinstance(value, list) else [value]


def decode_complete(data: bytes) -> Tuple[str, bytes]:
    """Decode the longest valid UTF-8 prefix, returning leftover bytes.

    Only a multi-byte character cut at the very end is held back; invalid
    bytes elsewhere are replaced.
    """
    for cut in range(0, min(3, len(data)) + 1):
        head = data[:len(data) - cut]
        try:
            return head.decode("utf-8"), data[len(data) - cut:]
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace"), b""


# =============================================================================
# STREAM STATE
# =============================================================================

@dataclass(frozen=True)
class StreamState:
    """Accumulator for one streamed upstream response."""
    content: str = ""
    usage: Optional[Usage] = None
    done: bool = False
    pending: bytes = b""
    chunks: int = 0


# =============================================================================
# BASE PROVIDER
# =============================================================================

class BaseProvider:
    """
    Base adapter. Defaults follow the OpenAI chat-completions wire format,
    which is also the canonical shape every other adapter normalizes into.
    """

    name = "base"
    display_name = "Base Provider"

    def resolve_target(self, request: ParsedRequest) -> TargetDescriptor:
        raise NotImplementedError(f"{self.__class__.__name__} must implement resolve_target()")

    def transform_request_headers(
        self,
        headers: Dict[str, str],
        request: Optional[ParsedRequest] = None,
    ) -> Dict[str, str]:
        result = {"Content-Type": "application/json"}
        if headers.get("authorization"):
            result["Authorization"] = headers["authorization"]
        return result

    def transform_request_body(self, body: Any, request: Optional[ParsedRequest] = None) -> Any:
        return body

    def normalize_response(self, body: Any, request: ParsedRequest) -> NormalizedResponse:
        if not isinstance(body, dict) or body.get("error"):
            return NormalizedResponse(data=body, usage=None, model=request.model)
        content = dig(body, "choices", 0, "message", "content", default="")
        return NormalizedResponse(
            data=body,
            usage=Usage.from_openai(body.get("usage")),
            model=body.get("model") or request.model or "unknown",
            content=content if isinstance(content, str) else "",
        )

    def parse_stream_chunk(self, chunk: str) -> StreamChunk:
        """Chat-completions SSE: `data: {...}` lines ending with `data: [DONE]`."""
        parts = []
        usage = None
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
            delta = dig(payload, "choices", 0, "delta", "content")
            if isinstance(delta, str):
                parts.append(delta)
            if isinstance(payload.get("usage"), dict):
                usage = Usage.from_openai(payload["usage"])

        return StreamChunk("".join(parts), usage, done)

    def merge_usage(self, previous: Optional[Usage], latest: Optional[Usage]) -> Optional[Usage]:
        """Combine the running usage snapshot with a newly seen one."""
        return latest if latest is not None else previous

    def is_streaming_request(self, request: ParsedRequest) -> bool:
        return request.wants_stream

    def assemble_streaming_response(
        self,
        content: str,
        usage: Optional[Usage],
        request: ParsedRequest,
        trace_id: str,
    ) -> Dict[str, Any]:
        """Rebuild a non-streamed response body from accumulated stream content."""
        return {
            "id": trace_id,
            "object": "chat.completion",
            "model": request.model,
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }],
            "usage": usage.to_dict() if usage else None,
            "_streaming": True,
        }

    def extract_model(self, request: ParsedRequest, body: Any = None) -> Optional[str]:
        if isinstance(body, dict) and body.get("model"):
            return body["model"]
        return request.model

    # -------------------------------------------------------------------------
    # Streaming fold
    # -------------------------------------------------------------------------

    def step(self, state: StreamState, chunk: Union[bytes, str]) -> StreamState:
        """Fold one raw chunk into the stream state. Never raises."""
        data = chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)
        buffered = state.pending + data
        complete, sep, pending = buffered.rpartition(b"\n")
        state = replace(state, chunks=state.chunks + 1)
        if not sep:
            return replace(state, pending=buffered)
        text = complete.decode("utf-8", errors="replace")
        return self._apply(replace(state, pending=pending), text)

    def finish(self, state: StreamState) -> StreamState:
        """Parse whatever is left in the buffer once the stream has ended."""
        if not state.pending.strip():
            return replace(state, pending=b"")
        text = state.pending.decode("utf-8", errors="replace")
        return self._apply(replace(state, pending=b""), text)

    def _apply(self, state: StreamState, text: str) -> StreamState:
        try:
            parsed = self.parse_stream_chunk(text)
        except RECORD_ERRORS as e:
            logger.debug(f"{self.name}: dropped unparseable stream slice: {e}")
            return state
        return replace(
            state,
            content=state.content + (parsed.content or ""),
            usage=self.merge_usage(state.usage, parsed.usage),
            done=state.done or parsed.done,
        )

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "display_name": self.display_name}
