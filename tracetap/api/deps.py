"""
Shared service instances for the API routers.

Created once at startup by `init_services()` and torn down by
`shutdown_services()`. Routers reach them through the `get_*` dependencies.
"""

import logging
from typing import Optional

import httpx
from fastapi import HTTPException

from tracetap.core.config import Config
from tracetap.core.pricing import PricingTable
from tracetap.core.proxy import LLMProxyGateway
from tracetap.core.storage import TelemetryStore
from tracetap.providers.registry import ProviderRegistry

logger = logging.getLogger("tracetap.api")

# Global services
_store: Optional[TelemetryStore] = None
_pricing: Optional[PricingTable] = None
_registry: Optional[ProviderRegistry] = None
_gateway: Optional[LLMProxyGateway] = None


def init_services(cfg: Config, client: Optional[httpx.AsyncClient] = None) -> LLMProxyGateway:
    """Open the store and build pricing, registry and gateway from `cfg`."""
    global _store, _pricing, _registry, _gateway

    _store = TelemetryStore(
        cfg.db_path,
        max_traces=cfg.max_traces,
        max_logs=cfg.max_logs,
        max_metrics=cfg.max_metrics,
    )
    _pricing = PricingTable.load(cfg.pricing_file)
    _registry = ProviderRegistry.from_config(cfg)
    _gateway = LLMProxyGateway(
        _store,
        _registry,
        _pricing,
        client=client,
        log_content=cfg.log_content,
        timeout_seconds=cfg.upstream_timeout_seconds,
    )
    logger.info(f"Services ready (db={cfg.db_path}, {len(_pricing)} priced models)")
    return _gateway


async def shutdown_services() -> None:
    global _store, _pricing, _registry, _gateway

    if _gateway is not None:
        await _gateway.close()
    if _store is not None:
        _store.close()
    _store = _pricing = _registry = _gateway = None


def _require(service, name: str):
    if service is None:
        raise HTTPException(503, f"{name} not initialized")
    return service


def get_store() -> TelemetryStore:
    return _require(_store, "Store")


def get_pricing() -> PricingTable:
    return _require(_pricing, "Pricing")


def get_registry() -> ProviderRegistry:
    return _require(_registry, "Provider registry")


def get_gateway() -> LLMProxyGateway:
    return _require(_gateway, "Gateway")
