"""
Tracetap Proxy Gateway API

Catch-all route that forwards LLM calls upstream:
- /v1/*              -> OpenAI (default provider)
- /{provider}/v1/*   -> any registered provider (/anthropic, /gemini, /ollama, ...)
- x-tracetap-provider header overrides the path prefix

Usage:
    curl http://localhost:8080/anthropic/v1/chat/completions \\
      -H "Authorization: Bearer sk-ant-..." \\
      -d '{"model": "claude-3-5-sonnet-latest", "messages": [...]}'

This router must be included last so the /api and OTLP routes win.
"""

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from tracetap.api.deps import get_gateway
from tracetap.core.models import ParsedRequest
from tracetap.core.proxy import LLMProxyGateway, ProxyError

logger = logging.getLogger("tracetap.gateway")
router = APIRouter(tags=["Gateway"])


async def parse_request(request: Request, path: str) -> ParsedRequest:
    """Build the adapter-facing view of an inbound request."""
    raw = await request.body()
    body = None
    if raw:
        try:
            body = json.loads(raw)
        except ValueError:
            logger.debug(f"Non-JSON body on /{path}, forwarding raw bytes")
    return ParsedRequest(
        method=request.method,
        path=f"/{path}",
        headers=dict(request.headers),
        body=body,
        query=request.url.query,
        raw_body=raw,
    )


@router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
    include_in_schema=False,
)
async def proxy(
    path: str,
    request: Request,
    gateway: LLMProxyGateway = Depends(get_gateway),
):
    """Forward a call to the resolved provider and record it as a span."""
    parsed = await parse_request(request, path)

    try:
        if gateway.is_streaming(parsed):
            stream = await gateway.open_stream(parsed)
            return StreamingResponse(
                stream.body,
                status_code=stream.status_code,
                headers=stream.headers,
            )

        result = await gateway.proxy_request(parsed)
        return Response(
            content=result.body,
            status_code=result.status_code,
            headers=result.headers,
        )
    except ProxyError as e:
        logger.warning(f"Proxy call to /{path} failed: {e}")
        return JSONResponse(e.to_response(), status_code=e.status_code)
