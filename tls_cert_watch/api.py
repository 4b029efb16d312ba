"""
FastAPI application for TLS Certificate Watch.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, PlainTextResponse

from tls_cert_watch import __version__
from tls_cert_watch.logger import get_logger
from tls_cert_watch.metrics import MetricsCollector
from tls_cert_watch.orchestrator import Orchestrator


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan handler that suppresses CancelledError during shutdown."""
    try:
        yield
    except asyncio.CancelledError:
        pass


def create_app(
    orchestrator: Orchestrator,
    metrics: MetricsCollector,
    lifespan_override: Optional[Any] = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        orchestrator: Orchestrator instance
        metrics: Metrics collector instance

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="TLS Certificate Watch",
        description="Discover hosts, inspect their TLS certificates and alert on problems",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan_override or lifespan,
    )

    logger = get_logger("api")

    @app.get("/metrics", response_class=PlainTextResponse)
    async def get_metrics() -> PlainTextResponse:
        try:
            return PlainTextResponse(
                content=metrics.get_metrics(), media_type=metrics.get_content_type()
            )
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            raise HTTPException(status_code=500, detail="Failed to generate metrics") from e

    @app.get("/healthz", response_class=JSONResponse)
    async def get_health() -> JSONResponse:
        try:
            health_status = {
                **await orchestrator.get_health_status(),
                "status": "healthy",
                "version": __version__,
            }
            return JSONResponse(content=health_status)
        except Exception as e:
            logger.error(f"Failed to get health status: {e}")
            return JSONResponse(content={"status": "error", "error": str(e)}, status_code=500)

    return app
