"""
Ollama provider - local model server with an OpenAI-compatible API.
"""

from __future__ import annotations
from typing import Optional, Dict

from tracetap.core.models import ParsedRequest, TargetDescriptor
from tracetap.providers.openai import OpenAIProvider, with_query


class OllamaProvider(OpenAIProvider):
    """Plain HTTP to a configurable host; no credentials are forwarded."""

    name = "ollama"
    display_name = "Ollama"

    def __init__(self, hostname: str = "localhost", port: int = 11434):
        super().__init__(hostname=hostname, port=port)

    def resolve_target(self, request: ParsedRequest) -> TargetDescriptor:
        return TargetDescriptor(
            hostname=self.hostname,
            port=self.port,
            path=with_query(request.path, request.query),
            protocol="http",
        )

    def transform_request_headers(
        self,
        headers: Dict[str, str],
        request: Optional[ParsedRequest] = None,
    ) -> Dict[str, str]:
        return {"Content-Type": "application/json"}
