"""
FastAPI application: health/readiness probes and Prometheus metrics.
Domain operations are driven by the host application and the Celery workers.
"""
from fastapi import FastAPI

from marketplace.api.routes import health
from marketplace.core.logging import configure_logging
from marketplace.utils.metrics import router as metrics_router

configure_logging()

app = FastAPI(
    title="Marketplace Escrow",
    description="Escrow and subscription quota engine: probes and metrics",
    version="1.0.0",
)

app.include_router(health.router, tags=["health"])
app.include_router(metrics_router)
