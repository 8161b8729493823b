"""
Analytics API

Time-bucketed and grouped views over stored spans:
- Token trends (hourly or daily buckets, zero-filled)
- Cost by provider / by model
- Daily request, token, cost and error totals

Standard Query Params:
- days: window ending now (days <= 0 gives an empty series)
- interval: "hour" or "day" (token trends only)
"""

from __future__ import annotations
from typing import Literal

from fastapi import APIRouter, Depends, Query

from tracetap.api.deps import get_store
from tracetap.core.storage import TelemetryStore

router = APIRouter(prefix="/api/analytics", tags=["Analytics"])


@router.get("/token-trends")
async def token_trends(
    interval: Literal["hour", "day"] = Query("hour"),
    days: int = Query(1, le=365),
    store: TelemetryStore = Depends(get_store),
):
    """Prompt/completion tokens, cost and request count per bucket."""
    return {
        "interval": interval,
        "days": days,
        "trends": store.get_token_trends(interval=interval, days=days),
    }


@router.get("/cost-by-provider")
async def cost_by_provider(
    days: int = Query(30, le=365),
    store: TelemetryStore = Depends(get_store),
):
    return {"days": days, "providers": store.get_cost_by_provider(days=days)}


@router.get("/cost-by-model")
async def cost_by_model(
    days: int = Query(30, le=365),
    store: TelemetryStore = Depends(get_store),
):
    return {"days": days, "models": store.get_cost_by_model(days=days)}


@router.get("/daily")
async def daily(
    days: int = Query(30, le=365),
    store: TelemetryStore = Depends(get_store),
):
    return {"days": days, "daily": store.get_daily_stats(days=days)}
