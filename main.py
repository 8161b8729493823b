"""
Tracetap - Local LLM Observability

A single-process collector that sits between your application and its LLM
providers, and accepts OpenTelemetry exports from instrumented frameworks.

Features:
- LLM Proxy Gateway: OpenAI, Anthropic, Gemini, Cohere, Azure, Ollama and
  OpenAI-compatible hosts behind one base URL
- OTLP/HTTP JSON receivers for traces, logs and metrics
- Bounded SQLite storage with span trees and cost analytics

Run with:
    uvicorn main:app --reload

Or:
    python main.py
"""

import os
import time
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tracetap import __version__
from tracetap.core.config import config

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("tracetap")

# Import API routers
from tracetap.api import deps
from tracetap.api.otlp import router as otlp_router
from tracetap.api.traces import router as traces_router
from tracetap.api.logs import router as logs_router
from tracetap.api.metrics import router as metrics_router
from tracetap.api.analytics import router as analytics_router
from tracetap.api.gateway import router as gateway_router
from tracetap.core.storage import StorageError


# =============================================================================
# APPLICATION LIFESPAN
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("=" * 60)
    logger.info(f"Tracetap {__version__} starting")
    logger.info(f"   Environment: {config.env.value}")
    logger.info(f"   Database: {config.db_path}")
    logger.info(f"   Base URL: http://{config.host}:{config.port}/v1")
    logger.info("=" * 60)

    deps.init_services(config)
    store = deps.get_store()
    logger.info(f"Stored records: {store.counts()}")

    yield

    # Cleanup
    logger.info("Shutting down...")
    await deps.shutdown_services()


# =============================================================================
# CREATE APPLICATION
# =============================================================================

app = FastAPI(
    title="Tracetap - Local LLM Observability",
    description="""
    Proxy your LLM calls and export OpenTelemetry data to one local collector.

    ## Quick Start
    1. Point your SDK base URL at http://localhost:8080/v1
       (or /anthropic/v1, /gemini/v1, /ollama/v1, ...)
    2. Or export OTLP/HTTP JSON to http://localhost:8080/v1/traces
    3. Browse spans at /api/traces and costs at /api/analytics
    """,
    version=__version__,
    docs_url="/docs" if config.debug else None,
    redoc_url="/redoc" if config.debug else None,
    lifespan=lifespan,
)


# =============================================================================
# MIDDLEWARE
# =============================================================================

cors_origins = os.getenv("CORS_ORIGINS", "").split(",") if os.getenv("CORS_ORIGINS") else ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests."""
    start_time = time.time()

    response = await call_next(request)

    duration = time.time() - start_time
    logger.info(
        f"{request.method} {request.url.path} "
        f"- {response.status_code} ({duration*1000:.0f}ms)"
    )

    return response


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Storage failure on {request.url.path}: {exc}")
    return JSONResponse(exc.to_response(), status_code=exc.status_code)


# =============================================================================
# CORE ROUTES
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "environment": config.env.value,
        "counts": deps.get_store().counts(),
        "providers": [p["name"] for p in deps.get_registry().list()],
    }


# =============================================================================
# API ROUTES
# =============================================================================

app.include_router(otlp_router)
app.include_router(traces_router)
app.include_router(logs_router)
app.include_router(metrics_router)
app.include_router(analytics_router)

# Catch-all proxy, must stay last
app.include_router(gateway_router)


# =============================================================================
# RUN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level=config.log_level.lower(),
    )
