"""
Azure OpenAI provider.

Endpoint:
    https://{resource}.openai.azure.com/openai/deployments/{deployment}{endpoint}?api-version={version}

Request and response bodies are OpenAI's; only routing and the credential
header differ.
"""

from __future__ import annotations
import re
from typing import Optional, Dict

from tracetap.core.models import ParsedRequest, TargetDescriptor
from tracetap.providers.base import bearer_token
from tracetap.providers.openai import OpenAIProvider, with_query


def deployment_key(model: str) -> str:
    """Model name as used in AZURE_DEPLOYMENT_<KEY> settings."""
    return re.sub(r"[.\-]", "_", model).upper()


class AzureOpenAIProvider(OpenAIProvider):
    """Azure-hosted OpenAI deployments."""

    name = "azure"
    display_name = "Azure OpenAI"

    def __init__(
        self,
        resource: Optional[str] = None,
        api_version: str = "2024-02-01",
        deployment_map: Optional[Dict[str, str]] = None,
        default_resource: str = "azure-openai",
    ):
        super().__init__(hostname="")
        self.resource = resource
        self.api_version = api_version
        self.default_resource = default_resource
        # Keys may be model names ("gpt-4o") or settings keys ("GPT_4O")
        self.deployment_map = dict(deployment_map or {})

    def deployment_name(self, model: str) -> str:
        """
        Map a model name to a deployment. Explicit mapping first, then the
        model itself with dots removed (gpt-3.5-turbo -> gpt-35-turbo).
        """
        if model in self.deployment_map:
            return self.deployment_map[model]
        key = deployment_key(model)
        if key in self.deployment_map:
            return self.deployment_map[key]
        return model.replace(".", "")

    def resource_name(self, headers: Dict[str, str]) -> str:
        return (
            headers.get("x-azure-resource")
            or headers.get("x-tracetap-azure-resource")
            or self.resource
            or self.default_resource
        )

    def resolve_target(self, request: ParsedRequest) -> TargetDescriptor:
        deployment = self.deployment_name(request.model or "gpt-4")
        resource = self.resource_name(request.headers)

        endpoint = request.path
        if endpoint.startswith("/v1/"):
            endpoint = endpoint[3:]

        path = f"/openai/deployments/{deployment}{endpoint}?api-version={self.api_version}"
        return TargetDescriptor(
            hostname=f"{resource}.openai.azure.com",
            port=443,
            path=with_query(path, request.query),
            protocol="https",
        )

    def transform_request_headers(
        self,
        headers: Dict[str, str],
        request: Optional[ParsedRequest] = None,
    ) -> Dict[str, str]:
        result = {"Content-Type": "application/json"}
        api_key = headers.get("api-key") or bearer_token(headers)
        if api_key:
            result["api-key"] = api_key
        return result
