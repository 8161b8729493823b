"""
LLM Proxy Gateway

Forwards application LLM calls to the real provider and records each one as
a span.

How it works:
1. The application points its SDK base URL at the collector
   (`http://localhost:8080/v1` for OpenAI, `/anthropic/v1` for Anthropic, ...)
2. The registry picks the provider adapter from the path prefix or the
   `x-tracetap-provider` header
3. The adapter rewrites target, headers and body for the upstream
4. The response is relayed back; usage, model and cost go into a span

Example client setup:
    client = OpenAI(
        api_key="sk-...",                       # forwarded to the provider
        base_url="http://localhost:8080/v1",
        default_headers={"x-trace-id": run_id}, # optional grouping
    )

Streams are relayed chunk by chunk. A copy of each chunk is folded through
the adapter's stream parser, and the span is written when the stream ends,
fails or is cancelled.
"""

from __future__ import annotations
import json
import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, AsyncGenerator, AsyncIterator, Callable

import httpx

from tracetap.core.models import NormalizedResponse, ParsedRequest, Span, SpanKind, TargetDescriptor, new_id
from tracetap.core.pricing import PricingTable
from tracetap.core.storage import TelemetryStore
from tracetap.providers.base import RECORD_ERRORS, BaseProvider, StreamState
from tracetap.providers.registry import ProviderRegistry

logger = logging.getLogger("tracetap.proxy")

TRACE_ID_HEADER = "x-trace-id"
PARENT_ID_HEADER = "x-parent-id"
TAGS_HEADER = "x-tracetap-tags"

SENSITIVE_HEADERS = {"authorization", "x-api-key", "api-key", "x-goog-api-key"}
REDACTED = "[REDACTED]"

# Not relayed from upstream: the server recomputes framing for the body it sends
HOP_BY_HOP_HEADERS = {
    "connection",
    "content-encoding",
    "content-length",
    "keep-alive",
    "transfer-encoding",
}

ERROR_TEXT_LIMIT = 500


def sanitize_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Copy of `headers` with credentials masked."""
    return {k: REDACTED if k.lower() in SENSITIVE_HEADERS else v for k, v in headers.items()}


def relay_headers(headers: httpx.Headers) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}


def parse_tags(value: Optional[str]) -> list:
    if not value:
        return []
    return [tag.strip() for tag in value.split(",") if tag.strip()]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class PreparedCall:
    """Everything needed to send one upstream request."""
    provider: BaseProvider
    request: ParsedRequest
    target: TargetDescriptor
    headers: Dict[str, str]
    content: Optional[bytes]
    streaming: bool = False


@dataclass
class ProxyResponse:
    """Proxy response to return to the caller."""
    status_code: int
    headers: Dict[str, str]
    body: bytes
    span: Span

    @property
    def trace_id(self) -> str:
        return self.span.trace_id


@dataclass
class ProxyStream:
    """An open upstream stream. Iterate `body` to relay it."""
    status_code: int
    headers: Dict[str, str]
    body: AsyncIterator[bytes]
    span: Span = field(repr=False)


# =============================================================================
# GATEWAY
# =============================================================================

class LLMProxyGateway:
    """
    The LLM Proxy Gateway.

    Holds the shared HTTP client. Per-call state lives in locals and in the
    span being built, so one instance serves concurrent requests.
    """

    def __init__(
        self,
        store: TelemetryStore,
        registry: ProviderRegistry,
        pricing: PricingTable,
        client: Optional[httpx.AsyncClient] = None,
        on_span: Optional[Callable[[Span], None]] = None,
        log_content: bool = True,
        timeout_seconds: float = 300.0,
    ):
        self.store = store
        self.registry = registry
        self.pricing = pricing
        self.on_span = on_span
        self.log_content = log_content
        self.timeout_seconds = timeout_seconds

        # HTTP client - created lazily unless injected
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
            self._owns_client = True
        return self._client

    async def close(self):
        """Close the HTTP client if this gateway created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Preparation
    # -------------------------------------------------------------------------

    def prepare(self, request: ParsedRequest) -> PreparedCall:
        """Resolve adapter and build the upstream target, headers and body."""
        provider, forwarded = self.registry.resolve(request)
        body = provider.transform_request_body(forwarded.body, forwarded)

        content: Optional[bytes] = None
        if forwarded.method.upper() not in ("GET", "HEAD"):
            if body is not None:
                content = json.dumps(body).encode("utf-8")
            elif forwarded.raw_body:
                content = forwarded.raw_body

        return PreparedCall(
            provider=provider,
            request=forwarded,
            target=provider.resolve_target(forwarded),
            headers=provider.transform_request_headers(forwarded.headers, forwarded),
            content=content,
            streaming=provider.is_streaming_request(forwarded),
        )

    def is_streaming(self, request: ParsedRequest) -> bool:
        provider, forwarded = self.registry.resolve(request)
        return provider.is_streaming_request(forwarded)

    def _start_span(self, call: PreparedCall) -> Span:
        headers = call.request.headers
        span_id = new_id()
        return Span(
            id=span_id,
            trace_id=headers.get(TRACE_ID_HEADER) or span_id,
            parent_id=headers.get(PARENT_ID_HEADER) or None,
            span_type=SpanKind.LLM,
            span_name=f"{call.provider.name} {call.request.path}",
            provider=call.provider.name,
            model=call.provider.extract_model(call.request),
            request_method=call.request.method,
            request_path=call.request.path,
            request_headers=sanitize_headers(headers),
            request_body=call.request.body if self.log_content else {},
            tags=parse_tags(headers.get(TAGS_HEADER)),
            input=self._prompt_of(call.request),
            service_name="proxy",
            attributes={"streaming": call.streaming, "upstream_url": call.target.url.split("?", 1)[0]},
        )

    def _prompt_of(self, request: ParsedRequest) -> Any:
        if not self.log_content or not isinstance(request.body, dict):
            return None
        return request.body.get("messages") or request.body.get("contents") or request.body.get("input")

    def _record(self, span: Span, started: float) -> None:
        """Finish timing, price the call and store the span."""
        span.duration_ms = int((time.monotonic() - started) * 1000)
        if span.total_tokens:
            span.estimated_cost = self.pricing.calculate_cost(span.model, span.prompt_tokens, span.completion_tokens)
        self.store.insert_span(span)

        logger.info(
            f"{span.provider} {span.model or 'unknown'} status={span.status} "
            f"tokens={span.total_tokens} cost=${span.estimated_cost:.6f} {span.duration_ms}ms"
        )
        if self.on_span:
            try:
                self.on_span(span)
            except Exception as e:
                logger.warning(f"on_span callback failed: {e}")

    def _record_transport_failure(self, span: Span, started: float, error: Exception) -> "ProviderError":
        span.status = ProviderError.status_code
        span.response_status = ProviderError.status_code
        span.error = f"{type(error).__name__}: {error}"
        self._record(span, started)
        return ProviderError(f"Provider error: {error}")

    # -------------------------------------------------------------------------
    # Non-streamed calls
    # -------------------------------------------------------------------------

    async def proxy_request(self, request: ParsedRequest) -> ProxyResponse:
        """
        Proxy a request to the LLM provider.

        1. Resolve adapter and rewrite the request
        2. Forward to the provider
        3. Normalize the response and read usage
        4. Store the span
        5. Return the (normalized) response

        Upstream HTTP errors are relayed, not raised.
        """
        call = self.prepare(request)
        span = self._start_span(call)
        started = time.monotonic()

        try:
            client = await self._get_client()
            response = await client.request(
                method=call.request.method,
                url=call.target.url,
                headers=call.headers,
                content=call.content,
            )
        except httpx.HTTPError as e:
            raise self._record_transport_failure(span, started, e) from e

        span.status = response.status_code
        span.response_status = response.status_code
        span.response_headers = relay_headers(response.headers)

        try:
            raw = response.json()
        except ValueError:
            raw = None

        body = response.content
        if raw is not None:
            try:
                normalized = call.provider.normalize_response(raw, call.request)
            except RECORD_ERRORS as e:
                logger.warning(f"{call.provider.name}: could not normalize response: {e}")
                normalized = NormalizedResponse(data=raw, usage=None, model=call.request.model)
            if isinstance(normalized.model, str) and normalized.model:
                span.model = normalized.model
            span.apply_usage(normalized.usage)
            if self.log_content:
                span.response_body = normalized.data
                span.output = normalized.content or None
            if response.status_code < 400:
                body = json.dumps(normalized.data).encode("utf-8")
        elif self.log_content:
            span.response_body = {"body": response.text[:ERROR_TEXT_LIMIT]}

        if response.status_code >= 400:
            span.error = response.text[:ERROR_TEXT_LIMIT] or f"HTTP {response.status_code}"

        self._record(span, started)

        headers = span.response_headers.copy()
        if raw is not None:
            headers["content-type"] = "application/json"
        headers[TRACE_ID_HEADER] = span.trace_id
        return ProxyResponse(status_code=response.status_code, headers=headers, body=body, span=span)

    # -------------------------------------------------------------------------
    # Streamed calls
    # -------------------------------------------------------------------------

    async def open_stream(self, request: ParsedRequest) -> ProxyStream:
        """
        Start a streamed upstream call.

        Returns once upstream status and headers are known. The span is
        written when `body` is exhausted, fails or is closed early.
        """
        call = self.prepare(request)
        span = self._start_span(call)
        started = time.monotonic()

        client = await self._get_client()
        upstream = client.build_request(
            method=call.request.method,
            url=call.target.url,
            headers=call.headers,
            content=call.content,
        )
        try:
            response = await client.send(upstream, stream=True)
        except httpx.HTTPError as e:
            raise self._record_transport_failure(span, started, e) from e

        span.status = response.status_code
        span.response_status = response.status_code
        span.response_headers = relay_headers(response.headers)

        headers = span.response_headers.copy()
        headers[TRACE_ID_HEADER] = span.trace_id
        return ProxyStream(
            status_code=response.status_code,
            headers=headers,
            body=self._relay(call, span, response, started),
            span=span,
        )

    async def proxy_stream(self, request: ParsedRequest) -> AsyncGenerator[bytes, None]:
        """Proxy a streaming request, yielding upstream bytes as they arrive."""
        stream = await self.open_stream(request)
        async for chunk in stream.body:
            yield chunk

    async def _relay(
        self,
        call: PreparedCall,
        span: Span,
        response: httpx.Response,
        started: float,
    ) -> AsyncGenerator[bytes, None]:
        provider = call.provider
        state = StreamState()
        error_body = []
        completed = False
        # Chunk handed to the caller but not folded yet
        unfolded: Optional[bytes] = None

        try:
            async for chunk in response.aiter_bytes():
                unfolded = chunk
                yield chunk
                unfolded = None
                if response.status_code < 400:
                    state = provider.step(state, chunk)
                else:
                    error_body.append(chunk)
            completed = True
        except httpx.HTTPError as e:
            span.error = f"Stream interrupted: {type(e).__name__}: {e}"
            raise ProviderError(f"Provider stream failed: {e}") from e
        finally:
            await response.aclose()
            if unfolded is not None:
                if response.status_code < 400:
                    state = provider.step(state, unfolded)
                else:
                    error_body.append(unfolded)
            state = provider.finish(state)

            span.apply_usage(state.usage)
            span.attributes["chunks"] = state.chunks
            if response.status_code >= 400:
                text = b"".join(error_body).decode("utf-8", errors="replace")
                span.error = text[:ERROR_TEXT_LIMIT] or f"HTTP {response.status_code}"
                if self.log_content:
                    span.response_body = {"body": text[:ERROR_TEXT_LIMIT]}
            else:
                if not completed and not span.error:
                    span.error = "Stream closed before completion"
                if self.log_content:
                    span.response_body = provider.assemble_streaming_response(
                        state.content, state.usage, call.request, span.trace_id
                    )
                    span.output = state.content or None
            logger.debug(f"{provider.name}: stream ended after {state.chunks} chunk(s), done={state.done}")
            self._record(span, started)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class ProxyError(Exception):
    """Base proxy error."""
    status_code = 500

    def to_response(self) -> dict:
        return {
            "error": {
                "message": str(self),
                "type": self.__class__.__name__,
            }
        }


class ProviderError(ProxyError):
    """The upstream provider could not be reached."""
    status_code = 502
